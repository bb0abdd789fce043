"""Front end for Wellspring pipelines.

``Pipeline`` ties a registry to its fingerprint store, file tracker, and
workspace capturer, and exposes the user-facing operations: run, inspect,
read results, query metadata, reset, and open failure workspaces.

Example:
    >>> with Pipeline([
    ...     target("a", "1"),
    ...     target("b", "a + 1"),
    ... ], store_path=tmp / ".wellspring") as pipeline:
    ...     report = pipeline.run()
    ...     pipeline.read_result("b")
    2
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from wellspring.config import WellspringConfig, get_config
from wellspring.foundation.errors import StoreError
from wellspring.incremental.executor import IncrementalExecutor, RunReport, file_value
from wellspring.incremental.files import FileTargetTracker
from wellspring.incremental.invalidation import InvalidationPlan
from wellspring.incremental.store import FingerprintRecord, FingerprintStore
from wellspring.planning import registry as registry_module
from wellspring.planning.graph import PipelineGraph
from wellspring.planning.registry import TargetRegistry
from wellspring.planning.targets import PipelineOptions, Target
from wellspring.workspace.capture import WorkspaceCapturer, WorkspaceSnapshot

logger = logging.getLogger(__name__)

METADATA_FIELDS = (
    "name",
    "kind",
    "format",
    "status",
    "command_hash",
    "input_digest",
    "output_digest",
    "dependency_digests",
    "capabilities",
    "document_hash",
    "seed",
    "error",
    "warnings",
    "timestamp",
    "execution_time_ms",
    "skip_count",
)

PipelineSource = TargetRegistry | str | Path | Iterable[Target | Mapping[str, Any]]


def _caller_globals(depth: int = 2) -> dict[str, Any]:
    return sys._getframe(depth).f_globals


class Pipeline:
    """A loaded pipeline bound to its store."""

    def __init__(
        self,
        source: PipelineSource,
        *,
        store_path: str | Path | None = None,
        config: WellspringConfig | None = None,
        options: PipelineOptions | None = None,
        root: Path | None = None,
        capture_workspaces: bool | None = None,
        max_workers: int | None = None,
        trust_mtime: bool | None = None,
    ) -> None:
        """Load a pipeline and open its store.

        Args:
            source: A registry, a YAML pipeline file, or target definitions.
            store_path: Store root (default: from config).
            config: Configuration (default: ``get_config()``).
            options: Pipeline-wide options for target definitions.
            root: Directory relative paths resolve against (default: cwd,
                or the pipeline file's directory).
            capture_workspaces: Override workspace capture.
            max_workers: Override concurrent targets per wave.
            trust_mtime: Override the file mtime fast path.

        Raises:
            SpecError: If the definitions cannot be installed.
        """
        self.config = config or get_config()
        self.registry = self._load(source, options, root)

        self.store_path = Path(store_path) if store_path is not None else self.config.store_path
        self.store = FingerprintStore(self.store_path)
        self.tracker = FileTargetTracker(
            self.store,
            root=self.registry.root,
            trust_mtime=self.config.files.trust_mtime if trust_mtime is None else trust_mtime,
        )
        self.capturer = WorkspaceCapturer(self.store_path / self.config.workspace.directory)

        if capture_workspaces is not None:
            self.capture_workspaces = capture_workspaces
        elif self.registry.options.capture_workspaces is not None:
            self.capture_workspaces = self.registry.options.capture_workspaces
        else:
            self.capture_workspaces = self.config.workspace.capture

        self.max_workers = max_workers or self.config.execution.max_workers

    @staticmethod
    def _load(
        source: PipelineSource, options: PipelineOptions | None, root: Path | None
    ) -> TargetRegistry:
        if isinstance(source, TargetRegistry):
            return source
        if isinstance(source, (str, Path)):
            return registry_module.load_file(Path(source))
        return registry_module.load(source, options=options, root=root)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> Pipeline:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def executor(self) -> IncrementalExecutor:
        return IncrementalExecutor(
            self.registry,
            self.store,
            tracker=self.tracker,
            capturer=self.capturer if self.capture_workspaces else None,
            max_workers=self.max_workers,
        )

    # =========================================================================
    # Running
    # =========================================================================

    async def run_async(
        self,
        force: Iterable[str] = (),
        on_progress: Callable[[str], None] | None = None,
    ) -> RunReport:
        """Execute every outdated target."""
        return await self.executor().execute(force=force, on_progress=on_progress)

    def run(
        self,
        force: Iterable[str] = (),
        on_progress: Callable[[str], None] | None = None,
    ) -> RunReport:
        """Execute every outdated target.

        Args:
            force: Targets to re-execute regardless of fingerprints.
            on_progress: Optional progress callback.
        """
        unknown = set(force) - set(self.registry.targets)
        if unknown:
            raise KeyError(f"Unknown targets: {sorted(unknown)}")
        return asyncio.run(self.run_async(force=force, on_progress=on_progress))

    def plan(self, force: Iterable[str] = ()) -> InvalidationPlan:
        """Decide what the next run executes, without running anything."""
        return self.executor().plan(force)

    def outdated(self) -> list[str]:
        """Outdated targets, in topological order."""
        return self.plan().to_execute

    # =========================================================================
    # Inspection
    # =========================================================================

    def inspect_graph(self) -> PipelineGraph:
        """The dependency graph."""
        return self.registry.graph

    def statuses(self) -> dict[str, str]:
        """Per-target status for display: up_to_date, outdated, error, cancelled."""
        plan = self.plan()
        statuses = {}
        for name in plan.order:
            record = self.store.get(name)
            if record is not None and not record.is_ok:
                statuses[name] = record.status.value
            elif plan.decisions[name].outdated:
                statuses[name] = "outdated"
            else:
                statuses[name] = "up_to_date"
        return statuses

    def _record(self, name: str) -> FingerprintRecord:
        if name not in self.registry.targets:
            raise StoreError(f"Unknown target '{name}'")
        record = self.store.get(name)
        if record is None:
            raise StoreError(f"Target '{name}' has not run")
        if not record.is_ok:
            raise StoreError(
                f"Target '{name}' has no current result (last status: {record.status.value})"
            )
        return record

    def read_result(self, name: str) -> Any:
        """Result of the target's last successful run.

        File and literate targets return their tracked path(s).

        Raises:
            StoreError: If the target is unknown or has no current result.
        """
        self._record(name)
        target = self.registry.targets[name]
        if target.is_file:
            return file_value([a.path for a in self.store.get_files(name)])
        return self.store.load_value(name)

    def load_result(self, name: str, namespace: dict[str, Any] | None = None) -> Any:
        """Bind a target's result to its name in ``namespace``.

        Binds into the caller's globals when no namespace is given.
        """
        value = self.read_result(name)
        if namespace is None:
            namespace = _caller_globals()
        namespace[name] = value
        return value

    def metadata(self, *fields: str, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Fingerprint records of targets that have run.

        Args:
            *fields: Fields to include (default: all). ``name`` is always
                included.
            names: Restrict to these targets.

        Raises:
            ValueError: If a field is unknown.
        """
        unknown = set(fields) - set(METADATA_FIELDS)
        if unknown:
            raise ValueError(f"Unknown metadata fields: {sorted(unknown)}")

        wanted = set(names) if names is not None else None
        rows = []
        for name in self.registry.graph.topological_sort():
            if wanted is not None and name not in wanted:
                continue
            record = self.store.get(name)
            if record is None:
                continue
            row = record.to_dict()
            if fields:
                row = {key: row[key] for key in ("name", *fields) if key in row}
            rows.append(row)
        return rows

    # =========================================================================
    # Maintenance
    # =========================================================================

    def reset(self) -> None:
        """Clear all fingerprints, stored values, and tracked files.

        Failure workspaces are kept; see ``purge_workspaces``.
        """
        for record in self.store.list_records():
            removed = self.tracker.remove(record.target_name)
            if removed:
                logger.debug("Removed %s files of %s", len(removed), record.target_name)
        self.store.clear()
        logger.info("Reset store at %s", self.store_path)

    def open_workspace(
        self, name: str, namespace: dict[str, Any] | None = None
    ) -> WorkspaceSnapshot:
        """Restore a failed target's workspace into ``namespace``.

        Binds the captured values, capabilities, and result primitives into
        the caller's globals when no namespace is given, and restores the
        pseudo-random state the command started from.

        Raises:
            StoreError: If no workspace exists for the target.
        """
        snapshot = self.capturer.load(name)
        if namespace is None:
            namespace = _caller_globals()
        restored = snapshot.namespace()
        restored.pop("__builtins__", None)
        restored.pop("__name__", None)
        namespace.update(restored)
        snapshot.restore_random_state()
        return snapshot

    def list_workspaces(self) -> list[str]:
        return self.capturer.list()

    def purge_workspaces(self) -> int:
        """Delete every failure workspace.

        Returns:
            Number of workspaces removed.
        """
        return self.capturer.purge()
