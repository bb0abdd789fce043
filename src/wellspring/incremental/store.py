"""SQLite-backed fingerprint store for incremental execution.

Holds one fingerprint record per target, the file artifacts of file targets,
run history, and the pickled values of value targets.

Storage layout under the store root (default `.wellspring/`):
- `meta.db`: records, file artifacts, runs
- `objects/<target>.pkl`: stored values

Writes are atomic per target: a record and its file artifacts are replaced
in one transaction under a lock, and value objects are written to a
temporary file and renamed into place.

Example:
    >>> store = FingerprintStore(Path(".wellspring"))
    >>> len(store.save_value("a", 1))
    20
    >>> store.load_value("a")
    1
"""

from __future__ import annotations

import json
import os
import pickle
import shutil
import sqlite3
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from wellspring.foundation.errors import StoreError
from wellspring.incremental.hasher import digest_bytes, serialize


class TargetStatus(Enum):
    """Outcome recorded for a target."""

    OK = "ok"
    """Command completed; output digest is trustworthy."""

    ERROR = "error"
    """Command raised."""

    CANCELLED = "cancelled"
    """Not run because an upstream target failed."""


@dataclass(frozen=True, slots=True)
class FileArtifact:
    """One tracked path of a file target.

    Attributes:
        path: Path as the command returned it.
        content_hash: Digest of the file contents.
        mtime_ns: Modification time when hashed.
        size: Size in bytes when hashed.
    """

    path: str
    content_hash: str
    mtime_ns: int | None = None
    size: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "mtime_ns": self.mtime_ns,
            "size": self.size,
        }


@dataclass(frozen=True, slots=True)
class FingerprintRecord:
    """Persisted fingerprint of a target's last run.

    Attributes:
        target_name: The target this record is for.
        kind: Target kind tag.
        format: Target format tag.
        command_hash: Hash of the normalized command and options.
        input_digest: Hash of everything that fed the run.
        output_digest: Hash of the produced value or files (ok only).
        dependency_digests: Upstream output digests seen at run time.
        capabilities: Capability identity tokens seen at run time.
        document_hash: Literate document source hash.
        seed: Pseudo-random seed used for the run.
        status: Run outcome.
        error_message: Failure message (error/cancelled only).
        warnings: Warnings raised while the command ran.
        timestamp: Unix time the record was written.
        execution_time_ms: Time the command took.
        skip_count: Times the target was found up to date.
    """

    target_name: str
    kind: str
    format: str
    command_hash: str
    input_digest: str
    status: TargetStatus
    output_digest: str | None = None
    dependency_digests: dict[str, str] = field(default_factory=dict)
    capabilities: tuple[str, ...] = ()
    document_hash: str | None = None
    seed: int | None = None
    error_message: str | None = None
    warnings: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)
    execution_time_ms: float = 0
    skip_count: int = 0

    @property
    def is_ok(self) -> bool:
        """Whether the output digest can be trusted."""
        return self.status is TargetStatus.OK

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.target_name,
            "kind": self.kind,
            "format": self.format,
            "command_hash": self.command_hash,
            "input_digest": self.input_digest,
            "output_digest": self.output_digest,
            "dependency_digests": dict(self.dependency_digests),
            "capabilities": list(self.capabilities),
            "document_hash": self.document_hash,
            "seed": self.seed,
            "status": self.status.value,
            "error": self.error_message,
            "warnings": list(self.warnings),
            "timestamp": self.timestamp,
            "execution_time_ms": self.execution_time_ms,
            "skip_count": self.skip_count,
        }


class FingerprintStore:
    """Persistent metadata and value store.

    Provides:
    - Atomic per-target record upserts
    - File artifact tracking for file targets
    - Pickled value storage for value targets
    - Run history and statistics
    """

    SCHEMA_VERSION = 1

    # fmt: off
    SCHEMA = """
    CREATE TABLE IF NOT EXISTS targets (
        name TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        format TEXT NOT NULL,
        command_hash TEXT NOT NULL,
        input_digest TEXT NOT NULL,
        output_digest TEXT,
        dependency_digests TEXT NOT NULL DEFAULT '{}',
        capabilities TEXT NOT NULL DEFAULT '[]',
        document_hash TEXT,
        seed INTEGER,
        status TEXT NOT NULL CHECK (status IN ('ok', 'error', 'cancelled')),
        error TEXT,
        warnings TEXT NOT NULL DEFAULT '[]',
        executed_at REAL NOT NULL,
        execution_time_ms REAL DEFAULT 0,
        skip_count INTEGER DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_targets_status ON targets(status);

    CREATE TABLE IF NOT EXISTS files (
        target_name TEXT NOT NULL,
        path TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        mtime_ns INTEGER,
        size INTEGER,
        PRIMARY KEY (target_name, path)
    );

    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        started_at REAL NOT NULL,
        finished_at REAL,
        total_targets INTEGER,
        executed INTEGER,
        up_to_date INTEGER,
        failed INTEGER,
        cancelled INTEGER,
        status TEXT CHECK (status IN ('running', 'completed', 'failed'))
    );

    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """
    # fmt: on

    def __init__(self, root: Path) -> None:
        """Open (creating if needed) the store at ``root``.

        Args:
            root: Store directory.
        """
        self.root = Path(root).absolute()
        self.objects_dir = self.root / "objects"
        self.objects_dir.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.root / "meta.db"), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(self.SCHEMA)
        self._conn.commit()
        self._lock = threading.RLock()

        self._set_metadata("schema_version", str(self.SCHEMA_VERSION))

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> FingerprintStore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on exception."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _set_metadata(self, key: str, value: str) -> None:
        with self.transaction():
            self._conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value)
            )

    # =========================================================================
    # Records
    # =========================================================================

    def get(self, name: str) -> FingerprintRecord | None:
        """Get the record for a target, or None if it never ran."""
        rows = self._query("SELECT * FROM targets WHERE name = ?", (name,))
        return _row_to_record(rows[0]) if rows else None

    def list_records(self) -> list[FingerprintRecord]:
        """All records, oldest first."""
        rows = self._query("SELECT * FROM targets ORDER BY executed_at, name")
        return [_row_to_record(row) for row in rows]

    def put_record(
        self,
        record: FingerprintRecord,
        files: list[FileArtifact] | None = None,
    ) -> None:
        """Upsert a record, replacing its file artifacts when given.

        The skip count of an existing record is preserved.
        """
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO targets (
                    name, kind, format, command_hash, input_digest, output_digest,
                    dependency_digests, capabilities, document_hash, seed, status,
                    error, warnings, executed_at, execution_time_ms, skip_count
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT(name) DO UPDATE SET
                    kind = excluded.kind,
                    format = excluded.format,
                    command_hash = excluded.command_hash,
                    input_digest = excluded.input_digest,
                    output_digest = excluded.output_digest,
                    dependency_digests = excluded.dependency_digests,
                    capabilities = excluded.capabilities,
                    document_hash = excluded.document_hash,
                    seed = excluded.seed,
                    status = excluded.status,
                    error = excluded.error,
                    warnings = excluded.warnings,
                    executed_at = excluded.executed_at,
                    execution_time_ms = excluded.execution_time_ms
                """,
                (
                    record.target_name,
                    record.kind,
                    record.format,
                    record.command_hash,
                    record.input_digest,
                    record.output_digest,
                    json.dumps(record.dependency_digests, sort_keys=True),
                    json.dumps(list(record.capabilities)),
                    record.document_hash,
                    record.seed,
                    record.status.value,
                    record.error_message,
                    json.dumps(list(record.warnings)),
                    record.timestamp,
                    record.execution_time_ms,
                ),
            )
            if files is not None:
                self._conn.execute(
                    "DELETE FROM files WHERE target_name = ?", (record.target_name,)
                )
                self._conn.executemany(
                    """
                    INSERT INTO files (target_name, path, content_hash, mtime_ns, size)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (record.target_name, f.path, f.content_hash, f.mtime_ns, f.size)
                        for f in files
                    ],
                )

    def record_skip(self, name: str) -> None:
        """Count a run in which the target was up to date."""
        with self.transaction():
            self._conn.execute(
                "UPDATE targets SET skip_count = skip_count + 1 WHERE name = ?", (name,)
            )

    def get_files(self, name: str) -> list[FileArtifact]:
        """Tracked file artifacts of a target."""
        rows = self._query(
            "SELECT * FROM files WHERE target_name = ? ORDER BY path", (name,)
        )
        return [
            FileArtifact(
                path=row["path"],
                content_hash=row["content_hash"],
                mtime_ns=row["mtime_ns"],
                size=row["size"],
            )
            for row in rows
        ]

    def update_file_stats(self, name: str, artifact: FileArtifact) -> None:
        """Refresh the mtime/size of an artifact whose content is unchanged."""
        with self.transaction():
            self._conn.execute(
                """
                UPDATE files SET mtime_ns = ?, size = ?
                WHERE target_name = ? AND path = ? AND content_hash = ?
                """,
                (artifact.mtime_ns, artifact.size, name, artifact.path, artifact.content_hash),
            )

    def delete(self, name: str) -> bool:
        """Delete a target's record, files, and stored value.

        Returns:
            True if a record existed.
        """
        with self.transaction():
            self._conn.execute("DELETE FROM files WHERE target_name = ?", (name,))
            cursor = self._conn.execute("DELETE FROM targets WHERE name = ?", (name,))
            existed = cursor.rowcount > 0
        self._object_path(name).unlink(missing_ok=True)
        return existed

    def clear(self) -> None:
        """Delete every record, file artifact row, run, and stored value."""
        with self.transaction():
            self._conn.execute("DELETE FROM targets")
            self._conn.execute("DELETE FROM files")
            self._conn.execute("DELETE FROM runs")
        shutil.rmtree(self.objects_dir, ignore_errors=True)
        self.objects_dir.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Values
    # =========================================================================

    def _object_path(self, name: str) -> Path:
        return self.objects_dir / f"{name}.pkl"

    def save_value(self, name: str, value: Any) -> str:
        """Persist a target's value.

        Returns:
            Output digest of the serialized value.

        Raises:
            pickle.PicklingError: If the value cannot be pickled.
        """
        data = serialize(value)
        fd, tmp = tempfile.mkstemp(dir=self.objects_dir, prefix=f".{name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, self._object_path(name))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return digest_bytes(data)

    def has_value(self, name: str) -> bool:
        """Whether a stored value exists for the target."""
        return self._object_path(name).exists()

    def load_value(self, name: str) -> Any:
        """Load a target's stored value.

        Raises:
            StoreError: If no value is stored for the target.
        """
        path = self._object_path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise StoreError(f"No stored result for target '{name}'") from e
        return pickle.loads(data)

    # =========================================================================
    # Runs
    # =========================================================================

    def start_run(self, run_id: str, total_targets: int) -> None:
        """Record the start of a run."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO runs (
                    id, started_at, total_targets, executed, up_to_date, failed,
                    cancelled, status
                )
                VALUES (?, ?, ?, 0, 0, 0, 0, 'running')
                """,
                (run_id, time.time(), total_targets),
            )

    def finish_run(
        self,
        run_id: str,
        executed: int,
        up_to_date: int,
        failed: int,
        cancelled: int,
    ) -> None:
        """Record the end of a run."""
        status = "failed" if failed else "completed"
        with self.transaction():
            self._conn.execute(
                """
                UPDATE runs SET
                    finished_at = ?, executed = ?, up_to_date = ?,
                    failed = ?, cancelled = ?, status = ?
                WHERE id = ?
                """,
                (time.time(), executed, up_to_date, failed, cancelled, status, run_id),
            )

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        """Run details, or None if unknown."""
        rows = self._query("SELECT * FROM runs WHERE id = ?", (run_id,))
        return dict(rows[0]) if rows else None

    def latest_run(self) -> dict[str, Any] | None:
        """Most recently started run."""
        rows = self._query("SELECT * FROM runs ORDER BY started_at DESC LIMIT 1")
        return dict(rows[0]) if rows else None

    def get_stats(self) -> dict[str, Any]:
        """Store statistics.

        Returns:
            Dict with by_status counts, total_targets, total_skips,
            avg_execution_time_ms.
        """
        stats: dict[str, Any] = {}

        rows = self._query("SELECT status, COUNT(*) AS count FROM targets GROUP BY status")
        stats["by_status"] = {row["status"]: row["count"] for row in rows}
        stats["total_targets"] = sum(stats["by_status"].values())

        row = self._query("SELECT SUM(skip_count) AS total_skips FROM targets")[0]
        stats["total_skips"] = row["total_skips"] or 0

        row = self._query(
            "SELECT AVG(execution_time_ms) AS avg_time FROM targets WHERE status = 'ok'"
        )[0]
        stats["avg_execution_time_ms"] = row["avg_time"] or 0

        return stats


def _row_to_record(row: sqlite3.Row) -> FingerprintRecord:
    return FingerprintRecord(
        target_name=row["name"],
        kind=row["kind"],
        format=row["format"],
        command_hash=row["command_hash"],
        input_digest=row["input_digest"],
        output_digest=row["output_digest"],
        dependency_digests=json.loads(row["dependency_digests"]),
        capabilities=tuple(json.loads(row["capabilities"])),
        document_hash=row["document_hash"],
        seed=row["seed"],
        status=TargetStatus(row["status"]),
        error_message=row["error"],
        warnings=tuple(json.loads(row["warnings"])),
        timestamp=row["executed_at"],
        execution_time_ms=row["execution_time_ms"],
        skip_count=row["skip_count"],
    )
