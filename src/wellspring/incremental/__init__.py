"""Incremental execution: fingerprints, invalidation, and scheduling.

Modules:
- hasher: content digests for values, files, and target inputs
- store: SQLite fingerprint records, file artifacts, stored values
- files: file-target tracking
- commands: command evaluation and external capabilities
- invalidation: which targets are outdated, and why
- executor: scheduled execution of outdated targets
"""
