"""Content-addressed hashing for incremental execution.

Computes deterministic digests for target values, files, and inputs. A
target's input digest captures everything that affects its output:

1. The normalized command and declared options
2. Identity tokens of declared capabilities
3. Output digests of all direct dependencies
4. For literate targets, the document source text

Hash length: 20 hex characters (80 bits).
- 64 bits → 50% collision at ~5 billion entries (2^32)
- 80 bits → 50% collision at ~1.2 trillion entries (2^40)

Example:
    >>> digest([1, 2, 3]) == digest([1, 2, 3])
    True
    >>> digest([1, 2, 3]) == digest([1, 2, 4])
    False
"""

from __future__ import annotations

import hashlib
import pickle
import zlib
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from wellspring.planning.targets import Target

HASH_LENGTH = 20
PICKLE_PROTOCOL = 5
_CHUNK_SIZE = 1 << 20


def serialize(value: Any) -> bytes:
    """Serialize a value to the bytes that are stored and hashed.

    Raises:
        pickle.PicklingError: If the value cannot be pickled.
    """
    return pickle.dumps(value, protocol=PICKLE_PROTOCOL)


def digest_bytes(data: bytes) -> str:
    """Digest raw bytes."""
    return hashlib.sha256(data).hexdigest()[:HASH_LENGTH]


def digest_text(text: str) -> str:
    """Digest a string (UTF-8 encoded)."""
    return digest_bytes(text.encode("utf-8"))


def digest(value: Any) -> str:
    """Digest an in-memory value via its serialized bytes.

    Pickle output for sets of strings depends on hash randomization, so a
    set can digest differently across interpreter sessions. That errs
    toward re-running dependents, never toward skipping them.
    """
    return digest_bytes(serialize(value))


def digest_file(path: Path) -> str:
    """Digest file contents, streaming in 1 MiB chunks.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        OSError: If the file cannot be read.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()[:HASH_LENGTH]


def combine_digests(entries: Sequence[tuple[str, str]]) -> str:
    """Digest an ordered collection of ``(key, digest)`` pairs."""
    hasher = hashlib.sha256()
    for key, value in sorted(entries):
        hasher.update(f"{key}:{value}\n".encode())
    return hasher.hexdigest()[:HASH_LENGTH]


def compute_input_hash(
    target: Target,
    dependency_digests: Mapping[str, str],
    capability_tokens: Sequence[str] = (),
    document_hash: str | None = None,
) -> str:
    """Compute the input digest of a target.

    Args:
        target: The target definition.
        dependency_digests: Map of dependency name → output digest.
        capability_tokens: ``name==version`` identity tokens.
        document_hash: Source digest for literate targets.

    Returns:
        20-character hex hash.
    """
    hasher = hashlib.sha256()

    hasher.update(target.name.encode())
    hasher.update(target.command_hash().encode())

    for token in sorted(capability_tokens):
        hasher.update(f"cap:{token}".encode())

    for dep_name in sorted(dependency_digests):
        hasher.update(f"{dep_name}:{dependency_digests[dep_name]}".encode())

    if document_hash is not None:
        hasher.update(f"doc:{document_hash}".encode())

    return hasher.hexdigest()[:HASH_LENGTH]


def target_seed(name: str) -> int:
    """Deterministic pseudo-random seed for a target."""
    return zlib.crc32(name.encode("utf-8"))
