"""Incremental executor for Wellspring pipelines.

Executes the outdated targets of a registry in topological waves, skipping
everything the invalidation engine found up to date.

Each executed target:
1. Binds its upstream values (from this run, else from the store)
2. Seeds ``random`` with the target's deterministic seed
3. Evaluates its command (or renders its document), recording warnings
4. Persists its value or file artifacts and writes an ``ok`` record

Waves run with the registry root as working directory, so relative paths
in commands agree with the file tracker.

A failing target is recorded ``error`` and, when enabled, its workspace is
captured before the failure leaves the scheduler. Its descendants are not
run; they are recorded ``cancelled``. Independent branches keep going: a
run never aborts on a target failure.

Within a wave up to ``max_workers`` targets run in worker threads. The
default is one, i.e. sequential. Seeding, warning capture, and stdout
redirection for literate renders are process-global, so those guarantees
only hold per target when ``max_workers`` is 1.

Example:
    >>> executor = IncrementalExecutor(registry, store)
    >>> report = await executor.execute()
    >>> report.completed
    ['a', 'b', 'c']
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import threading
import time
import uuid
import warnings
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from wellspring.foundation.errors import SkippedDueToUpstreamFailure, TargetError
from wellspring.incremental.commands import (
    CapabilityResolver,
    build_namespace,
    evaluate_source,
)
from wellspring.incremental.files import FileTargetTracker
from wellspring.incremental.hasher import compute_input_hash, target_seed
from wellspring.incremental.invalidation import InvalidationEngine, InvalidationPlan
from wellspring.incremental.store import (
    FileArtifact,
    FingerprintRecord,
    FingerprintStore,
    TargetStatus,
)
from wellspring.planning.targets import Target, TargetKind

if TYPE_CHECKING:
    from wellspring.planning.registry import TargetRegistry
    from wellspring.workspace.capture import WorkspaceCapturer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunReport:
    """Result of one pipeline run.

    Attributes:
        completed: Targets executed successfully, in completion order.
        failed: Targets whose command raised, with error messages.
        cancelled: Targets not run, mapped to the failed ancestor.
        up_to_date: Targets skipped because nothing feeding them changed.
        warnings: Warnings raised by executed targets.
        run_id: Unique identifier for this run.
        duration_ms: Total run time.
    """

    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: dict[str, str] = field(default_factory=dict)
    up_to_date: list[str] = field(default_factory=list)
    warnings: dict[str, list[str]] = field(default_factory=dict)
    run_id: str = ""
    duration_ms: float = 0

    @property
    def success(self) -> bool:
        """Whether every outdated target completed."""
        return not self.failed and not self.cancelled

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "run_id": self.run_id,
            "success": self.success,
            "completed": list(self.completed),
            "failed": dict(self.failed),
            "cancelled": dict(self.cancelled),
            "up_to_date": list(self.up_to_date),
            "warnings": {k: list(v) for k, v in self.warnings.items()},
            "duration_ms": self.duration_ms,
        }


def file_value(paths: list[str]) -> str | list[str]:
    """Value a file target presents to its dependents."""
    return paths[0] if len(paths) == 1 else list(paths)


def _error_message(error: BaseException) -> str:
    if isinstance(error, TargetError):
        cause = error.cause
        if isinstance(cause, BaseException):
            return f"{type(cause).__name__}: {cause}"
        return str(cause)
    return f"{type(error).__name__}: {error}"


@dataclass(slots=True)
class _Context:
    """What a single target saw while running, for records and workspaces."""

    bindings: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, str] = field(default_factory=dict)
    random_state: Any = None
    warnings: list[str] = field(default_factory=list)


class IncrementalExecutor:
    """Execute outdated targets of a registry.

    Example:
        >>> executor = IncrementalExecutor(registry, store, max_workers=4)
        >>> plan = executor.plan()
        >>> print(f"Will execute {len(plan.to_execute)}")
        >>> report = await executor.execute(plan)
    """

    def __init__(
        self,
        registry: TargetRegistry,
        store: FingerprintStore,
        tracker: FileTargetTracker | None = None,
        capabilities: CapabilityResolver | None = None,
        capturer: WorkspaceCapturer | None = None,
        max_workers: int = 1,
    ) -> None:
        """Initialize executor.

        Args:
            registry: Installed pipeline.
            store: Fingerprint store.
            tracker: File tracker (default: rooted at the registry root).
            capabilities: Capability resolver shared for the run.
            capturer: Workspace capturer; None disables capture.
            max_workers: Targets run concurrently within a wave.
        """
        self.registry = registry
        self.store = store
        self.tracker = tracker or FileTargetTracker(store, root=registry.root)
        self.capabilities = capabilities or CapabilityResolver()
        self.capturer = capturer
        self.max_workers = max(1, max_workers)
        self.engine = InvalidationEngine(registry, store, self.tracker, self.capabilities)

        self._values: dict[str, Any] = {}
        self._values_lock = threading.Lock()

    def plan(self, force: Iterable[str] = ()) -> InvalidationPlan:
        """Decide which targets the next run executes."""
        return self.engine.plan(force)

    # =========================================================================
    # Values
    # =========================================================================

    def read_value(self, name: str) -> Any:
        """Current value of an upstream target.

        Raises:
            StoreError: If a value target has no stored value.
        """
        with self._values_lock:
            if name in self._values:
                return self._values[name]

        target = self.registry.targets[name]
        if target.is_file:
            value = file_value([a.path for a in self.store.get_files(name)])
        else:
            value = self.store.load_value(name)

        with self._values_lock:
            self._values.setdefault(name, value)
        return value

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        plan: InvalidationPlan | None = None,
        force: Iterable[str] = (),
        on_progress: Callable[[str], None] | None = None,
    ) -> RunReport:
        """Run every outdated target.

        Args:
            plan: Precomputed plan (default: plan now).
            force: Targets to re-execute regardless of fingerprints.
            on_progress: Optional progress callback.

        Returns:
            RunReport with completed, failed, cancelled, up-to-date targets.
        """
        start_time = time.time()
        run_id = str(uuid.uuid4())[:8]
        plan = plan or self.plan(force)
        to_execute = set(plan.to_execute)
        self._values.clear()

        self.store.start_run(run_id, len(plan.order))
        report = RunReport(run_id=run_id)

        for name in plan.up_to_date:
            report.up_to_date.append(name)
            self.store.record_skip(name)

        if on_progress:
            on_progress(
                f"Incremental: {len(plan.up_to_date)} up to date, "
                f"{len(to_execute)} to execute"
            )

        # Commands see relative paths the way the tracker resolves them
        with contextlib.chdir(self.tracker.root):
            await self._run_waves(to_execute, report, on_progress)

        report.duration_ms = (time.time() - start_time) * 1000
        self.store.finish_run(
            run_id,
            executed=len(report.completed),
            up_to_date=len(report.up_to_date),
            failed=len(report.failed),
            cancelled=len(report.cancelled),
        )

        logger.info(
            "Run %s: %d completed, %d failed, %d cancelled, %d up to date",
            run_id,
            len(report.completed),
            len(report.failed),
            len(report.cancelled),
            len(report.up_to_date),
        )
        return report

    async def _run_waves(
        self,
        to_execute: set[str],
        report: RunReport,
        on_progress: Callable[[str], None] | None,
    ) -> None:
        # Failed or cancelled target -> the failed ancestor to blame
        broken: dict[str, str] = {}
        semaphore = asyncio.Semaphore(self.max_workers)

        for wave_num, wave in enumerate(self.registry.graph.execution_waves()):
            runnable: list[str] = []
            for name in wave:
                if name not in to_execute:
                    continue
                ancestor = self._failed_ancestor(name, broken)
                if ancestor is not None:
                    self._cancel(name, ancestor)
                    broken[name] = ancestor
                    report.cancelled[name] = ancestor
                else:
                    runnable.append(name)

            if not runnable:
                continue

            if on_progress:
                on_progress(f"Wave {wave_num + 1}: {', '.join(runnable)}")

            outcomes = await asyncio.gather(
                *[self._run_bounded(name, semaphore) for name in runnable]
            )

            for name, (error, target_warnings) in zip(runnable, outcomes, strict=True):
                if target_warnings:
                    report.warnings[name] = target_warnings
                if error is None:
                    report.completed.append(name)
                else:
                    report.failed[name] = error
                    broken[name] = name

    def _failed_ancestor(self, name: str, broken: dict[str, str]) -> str | None:
        for dep in sorted(self.registry.graph.dependencies(name)):
            if dep in broken:
                return broken[dep]
        return None

    def _cancel(self, name: str, ancestor: str) -> None:
        target = self.registry.targets[name]
        skipped = SkippedDueToUpstreamFailure(name, ancestor)
        self.store.put_record(
            FingerprintRecord(
                target_name=name,
                kind=target.kind.value,
                format=target.format.value,
                command_hash=target.command_hash(),
                input_digest="",
                status=TargetStatus.CANCELLED,
                error_message=str(skipped),
            )
        )
        logger.info("Skipping %s: upstream target %s failed", name, ancestor)

    async def _run_bounded(
        self, name: str, semaphore: asyncio.Semaphore
    ) -> tuple[str | None, list[str]]:
        if self.max_workers == 1:
            return self.run_target(name)
        async with semaphore:
            return await asyncio.to_thread(self.run_target, name)

    def run_target(self, name: str) -> tuple[str | None, list[str]]:
        """Execute one target and persist the outcome.

        Returns:
            ``(error_message, warnings)``; the message is None on success.
        """
        target = self.registry.targets[name]
        ctx = _Context()
        seed = target_seed(name)
        start = time.perf_counter()

        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                try:
                    value, artifacts = self._evaluate(target, ctx, seed)
                finally:
                    ctx.warnings = [f"{w.category.__name__}: {w.message}" for w in caught]
            self._persist(target, ctx, seed, value, artifacts, start)
        except (Exception, SystemExit) as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            message = _error_message(e)
            self._fail(target, ctx, seed, e, message, elapsed_ms)
            return message, ctx.warnings

        logger.debug("%s completed in %.1fms", name, (time.perf_counter() - start) * 1000)
        return None, ctx.warnings

    def _evaluate(
        self, target: Target, ctx: _Context, seed: int
    ) -> tuple[Any, list[FileArtifact] | None]:
        name = target.name
        namespace_bindings: dict[str, Any] = {}

        for capability in self.capabilities.resolve_all(self.registry.packages_for(name)):
            ctx.capabilities[capability.declaration] = capability.version
            if not capability.available:
                raise TargetError(
                    name, f"capability {capability.declaration!r} is not importable: "
                    f"{capability.error}"
                )
            namespace_bindings[capability.binding] = capability.module

        if target.command is not None:
            for dep in sorted(target.command.free_names & set(self.registry.targets)):
                ctx.bindings[dep] = self.read_value(dep)
            namespace_bindings.update(ctx.bindings)

        def read_result(dep: str) -> Any:
            value = self.read_value(dep)
            ctx.results[dep] = value
            return value

        random.seed(seed)
        ctx.random_state = random.getstate()

        if target.kind is TargetKind.LITERATE:
            document = self.registry.documents[name]
            emitted = document.render(
                name,
                read_result,
                bindings=namespace_bindings,
                artifacts=[self.tracker.resolve(a) for a in target.artifacts],
            )
            paths = [self._relative(p) for p in emitted]
            return file_value(paths), self.tracker.materialize(target, paths)

        namespace = build_namespace(namespace_bindings, read_result, f"wellspring.targets.{name}")
        value = evaluate_source(target.command.source, namespace, filename=f"<target {name}>")

        if target.is_file:
            artifacts = self.tracker.materialize(target, value)
            return file_value([a.path for a in artifacts]), artifacts
        return value, None

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.tracker.root.resolve()).as_posix()
        except ValueError:
            return str(path)

    def _dependency_digests(self, name: str) -> dict[str, str]:
        digests = {}
        for dep in self.registry.graph.dependencies(name):
            record = self.store.get(dep)
            if record is not None and record.output_digest is not None:
                digests[dep] = record.output_digest
        return digests

    def _base_record(self, target: Target, ctx: _Context, seed: int) -> dict[str, Any]:
        dependency_digests = self._dependency_digests(target.name)
        tokens = self.capabilities.tokens(self.registry.packages_for(target.name))
        document = self.registry.documents.get(target.name)
        document_hash = document.source_hash if document is not None else None
        return {
            "target_name": target.name,
            "kind": target.kind.value,
            "format": target.format.value,
            "command_hash": target.command_hash(),
            "input_digest": compute_input_hash(
                target, dependency_digests, tokens, document_hash
            ),
            "dependency_digests": dependency_digests,
            "capabilities": tuple(tokens),
            "document_hash": document_hash,
            "seed": seed,
        }

    def _persist(
        self,
        target: Target,
        ctx: _Context,
        seed: int,
        value: Any,
        artifacts: list[FileArtifact] | None,
        start: float,
    ) -> None:
        name = target.name
        if artifacts is not None:
            output_digest = FileTargetTracker.artifacts_digest(artifacts)
        else:
            try:
                output_digest = self.store.save_value(name, value)
            except Exception as e:
                raise TargetError(name, f"value cannot be stored: {type(e).__name__}: {e}") from e

        with self._values_lock:
            self._values[name] = value

        self.store.put_record(
            FingerprintRecord(
                **self._base_record(target, ctx, seed),
                status=TargetStatus.OK,
                output_digest=output_digest,
                warnings=tuple(ctx.warnings),
                execution_time_ms=(time.perf_counter() - start) * 1000,
            ),
            files=artifacts or [],
        )

    def _fail(
        self,
        target: Target,
        ctx: _Context,
        seed: int,
        error: BaseException,
        message: str,
        elapsed_ms: float,
    ) -> None:
        name = target.name
        logger.warning("Target %s failed: %s", name, message)

        original: BaseException = error
        if isinstance(error, TargetError) and error.__cause__ is not None:
            original = error.__cause__

        if self.capturer is not None:
            document = self.registry.documents.get(name)
            self.capturer.capture(
                name,
                command=target.command.source if target.command else None,
                document=document.text if document is not None else None,
                bindings=ctx.bindings,
                results=ctx.results,
                capabilities=ctx.capabilities,
                random_state=ctx.random_state,
                seed=seed,
                error=original,
            )

        self.store.put_record(
            FingerprintRecord(
                **self._base_record(target, ctx, seed),
                status=TargetStatus.ERROR,
                error_message=message,
                warnings=tuple(ctx.warnings),
                execution_time_ms=elapsed_ms,
            )
        )


def run_pipeline(
    registry: TargetRegistry,
    store: FingerprintStore,
    *,
    force: Iterable[str] = (),
    tracker: FileTargetTracker | None = None,
    capturer: WorkspaceCapturer | None = None,
    max_workers: int = 1,
    on_progress: Callable[[str], None] | None = None,
) -> RunReport:
    """Synchronous wrapper around ``IncrementalExecutor.execute``."""
    executor = IncrementalExecutor(
        registry,
        store,
        tracker=tracker,
        capturer=capturer,
        max_workers=max_workers,
    )
    return asyncio.run(executor.execute(force=force, on_progress=on_progress))
