"""Invalidation: deciding which targets must re-execute.

Decisions are made in one topological pass, so every target is checked
against parent fingerprints that were themselves already decided in this
pass. A target is outdated when any of the following holds:

1. It has no fingerprint record
2. Its previous run did not end ok
3. Its command or declared options changed
4. A declared capability's version changed
5. A dependency is outdated, or a dependency's output digest differs from
   the one recorded when this target last ran
6. (literate) The document source changed
7. (file) A tracked path is missing, truncated, or modified
8. (value) Its stored value is gone

Checking an up-to-date target compares digests only; it never loads a
stored value.

Example:
    >>> engine = InvalidationEngine(registry, store, tracker)
    >>> plan = engine.plan()
    >>> plan.decisions["b"].reason
    <OutdatedReason.UPSTREAM_OUTDATED: 'upstream_outdated'>
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from wellspring.incremental.commands import CapabilityResolver
from wellspring.incremental.files import FileTargetTracker
from wellspring.incremental.store import FingerprintRecord, FingerprintStore, TargetStatus
from wellspring.planning.targets import TargetKind

if TYPE_CHECKING:
    from wellspring.planning.registry import TargetRegistry

logger = logging.getLogger(__name__)


class OutdatedReason(Enum):
    """Why a target was or wasn't found outdated."""

    # Can skip
    UP_TO_DATE = "up_to_date"
    """Nothing that feeds the target changed."""

    # Must run
    FORCED = "forced"
    """User requested re-execution."""

    NO_RECORD = "no_record"
    """Target never ran."""

    PREVIOUS_FAILED = "previous_failed"
    """Previous run raised."""

    PREVIOUS_CANCELLED = "previous_cancelled"
    """Previous run was cancelled by an upstream failure."""

    COMMAND_CHANGED = "command_changed"
    """Command text or declared options changed."""

    CAPABILITY_CHANGED = "capability_changed"
    """A declared capability's identity or version changed."""

    UPSTREAM_OUTDATED = "upstream_outdated"
    """A dependency is outdated in this pass."""

    UPSTREAM_CHANGED = "upstream_changed"
    """A dependency's output differs from what this target last saw."""

    DOCUMENT_CHANGED = "document_changed"
    """Literate document source changed."""

    FILES_CHANGED = "files_changed"
    """A tracked file is missing or its content changed."""

    VALUE_MISSING = "value_missing"
    """The stored value was removed."""


@dataclass(frozen=True, slots=True)
class InvalidationDecision:
    """Outcome of checking one target.

    Attributes:
        name: The target checked.
        reason: Why it is or isn't outdated.
        detail: Extra context, such as the dependencies involved.
    """

    name: str
    reason: OutdatedReason
    detail: str | None = None

    @property
    def outdated(self) -> bool:
        return self.reason is not OutdatedReason.UP_TO_DATE


@dataclass(slots=True)
class InvalidationPlan:
    """Decisions for every target, in topological order.

    Attributes:
        order: All target names in topological order.
        decisions: Decision per target.
    """

    order: list[str]
    decisions: dict[str, InvalidationDecision]

    @property
    def outdated(self) -> set[str]:
        return {name for name, d in self.decisions.items() if d.outdated}

    @property
    def to_execute(self) -> list[str]:
        """Outdated targets in topological order."""
        return [name for name in self.order if self.decisions[name].outdated]

    @property
    def up_to_date(self) -> list[str]:
        return [name for name in self.order if not self.decisions[name].outdated]

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "total_targets": len(self.order),
            "outdated": self.to_execute,
            "up_to_date": self.up_to_date,
            "decisions": {
                name: {"reason": d.reason.value, "detail": d.detail}
                for name, d in self.decisions.items()
            },
        }


class InvalidationEngine:
    """Compute outdated targets against the fingerprint store."""

    def __init__(
        self,
        registry: TargetRegistry,
        store: FingerprintStore,
        tracker: FileTargetTracker,
        capabilities: CapabilityResolver | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.tracker = tracker
        self.capabilities = capabilities or CapabilityResolver()

    def check(
        self,
        name: str,
        record: FingerprintRecord | None,
        outdated_so_far: set[str],
        force: bool = False,
    ) -> InvalidationDecision:
        """Decide a single target, given decisions for its dependencies."""
        target = self.registry.targets[name]
        graph = self.registry.graph

        if force:
            return InvalidationDecision(name, OutdatedReason.FORCED)

        if record is None:
            return InvalidationDecision(name, OutdatedReason.NO_RECORD)

        if record.status is TargetStatus.ERROR:
            return InvalidationDecision(name, OutdatedReason.PREVIOUS_FAILED, record.error_message)

        if record.status is TargetStatus.CANCELLED:
            return InvalidationDecision(
                name, OutdatedReason.PREVIOUS_CANCELLED, record.error_message
            )

        if record.command_hash != target.command_hash():
            return InvalidationDecision(name, OutdatedReason.COMMAND_CHANGED)

        tokens = self.capabilities.tokens(self.registry.packages_for(name))
        if sorted(record.capabilities) != sorted(tokens):
            changed = sorted(set(tokens) ^ set(record.capabilities))
            return InvalidationDecision(
                name, OutdatedReason.CAPABILITY_CHANGED, ", ".join(changed)
            )

        deps = graph.dependencies(name)
        stale_parents = sorted(deps & outdated_so_far)
        if stale_parents:
            return InvalidationDecision(
                name, OutdatedReason.UPSTREAM_OUTDATED, ", ".join(stale_parents)
            )

        changed_parents = []
        for dep in sorted(deps):
            dep_record = self.store.get(dep)
            current = dep_record.output_digest if dep_record and dep_record.is_ok else None
            if current is None or record.dependency_digests.get(dep) != current:
                changed_parents.append(dep)
        if set(record.dependency_digests) - deps:
            changed_parents.extend(sorted(set(record.dependency_digests) - deps))
        if changed_parents:
            return InvalidationDecision(
                name, OutdatedReason.UPSTREAM_CHANGED, ", ".join(changed_parents)
            )

        if target.kind is TargetKind.LITERATE:
            document = self.registry.documents[name]
            if record.document_hash != document.source_hash:
                return InvalidationDecision(name, OutdatedReason.DOCUMENT_CHANGED)

        if target.is_file:
            if not self.tracker.check(target):
                return InvalidationDecision(name, OutdatedReason.FILES_CHANGED)
        elif not self.store.has_value(name):
            return InvalidationDecision(name, OutdatedReason.VALUE_MISSING)

        return InvalidationDecision(name, OutdatedReason.UP_TO_DATE)

    def plan(self, force: Iterable[str] = ()) -> InvalidationPlan:
        """Decide every target in one topological pass.

        Args:
            force: Names to re-execute regardless of fingerprints.
        """
        force = frozenset(force)
        order = self.registry.graph.topological_sort()
        decisions: dict[str, InvalidationDecision] = {}
        outdated: set[str] = set()

        for name in order:
            decision = self.check(
                name, self.store.get(name), outdated, force=name in force
            )
            decisions[name] = decision
            if decision.outdated:
                outdated.add(name)
            logger.debug(
                "%s: %s%s",
                name,
                decision.reason.value,
                f" ({decision.detail})" if decision.detail else "",
            )

        return InvalidationPlan(order=order, decisions=decisions)

    def outdated(self, force: Iterable[str] = ()) -> set[str]:
        """Names of targets that must re-execute."""
        return self.plan(force).outdated
