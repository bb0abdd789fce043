"""Tracking of file-valued targets.

A file target's command writes files as a side effect and returns the
path(s) it wrote. The tracker hashes each path after the command completes
and stores the whole set as one atomic unit: any path changing, shrinking,
or disappearing invalidates the target, and the next run repairs it by
re-running the producing command.

Content is the ground truth. When ``trust_mtime`` is on, a path whose
recorded mtime and size both match is not rehashed.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wellspring.foundation.errors import ArtifactError
from wellspring.incremental.hasher import combine_digests, digest_file
from wellspring.incremental.store import FileArtifact, FingerprintStore

if TYPE_CHECKING:
    from wellspring.planning.targets import Target

logger = logging.getLogger(__name__)


def coerce_paths(target_name: str, value: Any) -> list[str]:
    """Normalize a file command's return value to a list of path strings.

    Accepts a single path (``str`` or ``os.PathLike``) or an iterable of
    paths. Duplicates are dropped, first occurrence wins.

    Raises:
        ArtifactError: If the value is not a path or a collection of paths.
    """
    if isinstance(value, (str, os.PathLike)):
        items: Iterable[Any] = [value]
    elif isinstance(value, Iterable) and not isinstance(value, (bytes, dict)):
        items = value
    else:
        raise ArtifactError(
            target_name, f"file target must return a path or paths, got {type(value).__name__}"
        )

    paths: list[str] = []
    for item in items:
        if not isinstance(item, (str, os.PathLike)):
            raise ArtifactError(
                target_name, f"file target returned a non-path item: {item!r}"
            )
        path = Path(item).as_posix()
        if path not in paths:
            paths.append(path)

    if not paths:
        raise ArtifactError(target_name, "file target returned no paths")
    return paths


class FileTargetTracker:
    """Hash and check the artifacts of file targets.

    Example:
        >>> tracker = FileTargetTracker(store, root=Path("."))
        >>> artifacts = tracker.materialize(target, "out.txt")
        >>> store.put_record(record, files=artifacts)
        >>> tracker.check(target)
        True
    """

    def __init__(
        self,
        store: FingerprintStore,
        root: Path | None = None,
        trust_mtime: bool = True,
    ) -> None:
        self.store = store
        self.root = Path(root).absolute() if root is not None else Path.cwd()
        self.trust_mtime = trust_mtime

    def resolve(self, path: str) -> Path:
        """Absolute location of a tracked path."""
        p = Path(path)
        return p if p.is_absolute() else self.root / p

    def materialize(self, target: Target, value: Any) -> list[FileArtifact]:
        """Hash the paths a file command returned.

        Raises:
            ArtifactError: If the value is not paths or any path is missing.
        """
        paths = coerce_paths(target.name, value)
        missing = [p for p in paths if not self.resolve(p).is_file()]
        if missing:
            raise ArtifactError(target.name, f"declared files are missing: {missing}")
        return [self._hash(p) for p in paths]

    def _hash(self, path: str) -> FileArtifact:
        location = self.resolve(path)
        st = location.stat()
        return FileArtifact(
            path=path,
            content_hash=digest_file(location),
            mtime_ns=st.st_mtime_ns,
            size=st.st_size,
        )

    def check(self, target: Target) -> bool:
        """Whether every tracked path of a target is unchanged.

        Deletion, truncation, and modification all count as changes.
        """
        artifacts = self.store.get_files(target.name)
        if not artifacts:
            return False

        for artifact in artifacts:
            location = self.resolve(artifact.path)
            try:
                st = location.stat()
            except FileNotFoundError:
                logger.debug("Tracked file %s of %s is missing", artifact.path, target.name)
                return False

            if (
                self.trust_mtime
                and artifact.mtime_ns is not None
                and artifact.mtime_ns == st.st_mtime_ns
                and artifact.size == st.st_size
            ):
                continue

            if digest_file(location) != artifact.content_hash:
                logger.debug("Tracked file %s of %s changed", artifact.path, target.name)
                return False

            # Touched but identical: refresh so the fast path applies next time
            self.store.update_file_stats(
                target.name,
                FileArtifact(
                    path=artifact.path,
                    content_hash=artifact.content_hash,
                    mtime_ns=st.st_mtime_ns,
                    size=st.st_size,
                ),
            )

        return True

    def remove(self, target_name: str) -> list[str]:
        """Delete the tracked files of a target from disk.

        Returns:
            Paths that were removed.
        """
        removed = []
        for artifact in self.store.get_files(target_name):
            location = self.resolve(artifact.path)
            if location.is_file():
                location.unlink()
                removed.append(artifact.path)
        return removed

    @staticmethod
    def artifacts_digest(artifacts: Iterable[FileArtifact]) -> str:
        """Output digest of an atomic artifact set."""
        return combine_digests([(a.path, a.content_hash) for a in artifacts])
