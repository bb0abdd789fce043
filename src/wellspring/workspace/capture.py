"""Failure workspaces for post-mortem debugging.

When a target fails and capture is enabled, the scheduler snapshots exactly
what the failing command saw: the upstream values bound to its free names,
the results it read through ``read_result``/``load_result``, the declared
capabilities and their versions, and the pseudo-random state it started
from. Re-running the command against a restored snapshot reproduces the
failure outside the scheduler.

Snapshots live in ``<store>/workspaces/<target>.pkl`` and are only removed
explicitly (``delete``/``purge``).

Example:
    >>> snapshot = WorkspaceCapturer(store_dir / "workspaces").load("model")
    >>> snapshot.reproduce()
    Traceback (most recent call last):
    ...
    ValueError: singular matrix
"""

from __future__ import annotations

import logging
import pickle
import random
import time
import traceback
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wellspring.foundation.errors import CaptureWarning, StoreError
from wellspring.incremental.commands import (
    CapabilityResolver,
    build_namespace,
    evaluate_source,
)
from wellspring.incremental.hasher import PICKLE_PROTOCOL
from wellspring.literate.document import Fragment, parse_blocks

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkspaceSnapshot:
    """Reproduction environment of a failed target.

    Attributes:
        target_name: The target that failed.
        command: Command source (code and file targets).
        document: Document source (literate targets).
        bindings: Free names of the command bound to upstream values.
        results: Values the command read through result primitives.
        capabilities: Capability declaration → version at failure time.
        random_state: ``random.getstate()`` just before the command ran.
        seed: Seed the target ran with.
        error_type: Exception class name.
        error_message: Exception message.
        traceback: Formatted traceback.
        warnings: Problems hit while capturing.
        captured_at: Unix time of capture.
    """

    target_name: str
    command: str | None
    document: str | None = None
    bindings: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, str] = field(default_factory=dict)
    random_state: Any = None
    seed: int | None = None
    error_type: str = ""
    error_message: str = ""
    traceback: str = ""
    warnings: list[str] = field(default_factory=list)
    captured_at: float = field(default_factory=time.time)

    def namespace(self, resolver: CapabilityResolver | None = None) -> dict[str, Any]:
        """Evaluation namespace equivalent to the one the command failed in."""
        resolver = resolver or CapabilityResolver()
        bound: dict[str, Any] = {}
        for capability in resolver.resolve_all(self.capabilities):
            recorded = self.capabilities.get(capability.declaration)
            if recorded and recorded != capability.version:
                logger.warning(
                    "Capability %s is now %s (snapshot has %s)",
                    capability.declaration,
                    capability.version,
                    recorded,
                )
            if capability.available:
                bound[capability.binding] = capability.module
        bound.update(self.bindings)

        def read_result(name: str) -> Any:
            if name in self.results:
                return self.results[name]
            if name in self.bindings:
                return self.bindings[name]
            raise StoreError(f"Workspace for '{self.target_name}' has no result '{name}'")

        return build_namespace(bound, read_result, f"wellspring.workspace.{self.target_name}")

    def restore_random_state(self) -> None:
        if self.random_state is not None:
            random.setstate(self.random_state)

    def reproduce(self) -> Any:
        """Re-run the failing command against the captured environment.

        Raises:
            Exception: The failure, when it reproduces.
        """
        namespace = self.namespace()
        self.restore_random_state()
        filename = f"<workspace {self.target_name}>"

        if self.command is not None:
            return evaluate_source(self.command, namespace, filename=filename)

        value = None
        for block in parse_blocks(self.document or ""):
            if isinstance(block, Fragment) and block.evaluate:
                value = evaluate_source(block.source, namespace, filename=filename)
        return value

    def summary(self) -> dict[str, Any]:
        """JSON-serializable overview."""
        return {
            "target": self.target_name,
            "error_type": self.error_type,
            "error": self.error_message,
            "bindings": sorted(self.bindings),
            "results": sorted(self.results),
            "capabilities": dict(self.capabilities),
            "seed": self.seed,
            "warnings": list(self.warnings),
            "captured_at": self.captured_at,
        }


def _picklable(name: str, values: dict[str, Any], problems: list[str], target: str) -> dict:
    kept = {}
    for key, value in values.items():
        try:
            pickle.dumps(value, protocol=PICKLE_PROTOCOL)
        except Exception as e:
            message = f"cannot snapshot {name} '{key}' of '{target}': {type(e).__name__}: {e}"
            problems.append(message)
            logger.warning(message)
            warnings.warn(message, CaptureWarning, stacklevel=3)
            continue
        kept[key] = value
    return kept


class WorkspaceCapturer:
    """Write, read, and delete workspace snapshots."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).absolute()

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}.pkl"

    def capture(
        self,
        target_name: str,
        *,
        command: str | None,
        document: str | None = None,
        bindings: dict[str, Any],
        results: dict[str, Any],
        capabilities: dict[str, str],
        random_state: Any,
        seed: int | None,
        error: BaseException,
    ) -> WorkspaceSnapshot:
        """Snapshot a failing target.

        Values that cannot be pickled are left out with a ``CaptureWarning``;
        the snapshot is still written.
        """
        problems: list[str] = []
        snapshot = WorkspaceSnapshot(
            target_name=target_name,
            command=command,
            document=document,
            bindings=_picklable("binding", bindings, problems, target_name),
            results=_picklable("result", results, problems, target_name),
            capabilities=dict(capabilities),
            random_state=random_state,
            seed=seed,
            error_type=type(error).__name__,
            error_message=str(error),
            traceback="".join(traceback.format_exception(error)),
            warnings=problems,
        )

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(target_name).write_bytes(
                pickle.dumps(snapshot, protocol=PICKLE_PROTOCOL)
            )
        except OSError as e:
            message = f"cannot write workspace for '{target_name}': {e}"
            snapshot.warnings.append(message)
            logger.warning(message)
            warnings.warn(message, CaptureWarning, stacklevel=2)
        else:
            logger.info("Captured workspace for %s", target_name)

        return snapshot

    def load(self, name: str) -> WorkspaceSnapshot:
        """Read a snapshot.

        Raises:
            StoreError: If no workspace exists for the target.
        """
        try:
            data = self._path(name).read_bytes()
        except FileNotFoundError as e:
            raise StoreError(f"No workspace for target '{name}'") from e
        return pickle.loads(data)

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def list(self) -> list[str]:
        """Names of targets with a workspace."""
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.pkl"))

    def delete(self, name: str) -> bool:
        path = self._path(name)
        if path.exists():
            path.unlink()
            return True
        return False

    def purge(self) -> int:
        """Delete every workspace.

        Returns:
            Number of workspaces removed.
        """
        names = self.list()
        for name in names:
            self._path(name).unlink(missing_ok=True)
        return len(names)
