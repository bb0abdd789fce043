"""Error hierarchy for Wellspring.

Load-time errors (``SpecError`` and subclasses) are fatal: no partial
pipeline is installed. Run-time errors (``TargetError`` and subclasses) are
recorded per target and never abort a run.
"""

from __future__ import annotations


class WellspringError(Exception):
    """Base exception for all Wellspring errors."""

    pass


# =============================================================================
# Load-time errors
# =============================================================================


class SpecError(WellspringError):
    """Raised when pipeline definitions cannot be installed."""

    pass


class CycleError(SpecError):
    """Raised when target dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        cycle_str = " → ".join(cycle + [cycle[0]])
        super().__init__(f"Cyclic dependency detected: {cycle_str}")


class DuplicateNameError(SpecError):
    """Raised when two targets share a name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Duplicate target name: '{name}'")


class UnresolvedReferenceError(SpecError):
    """Raised when a command references a symbol that no target provides."""

    def __init__(self, target_name: str, missing: set[str]) -> None:
        self.target_name = target_name
        self.missing = missing
        super().__init__(
            f"Target '{target_name}' references unknown symbols: {sorted(missing)}"
        )


class InvalidTargetError(SpecError):
    """Raised when a target definition is malformed."""

    def __init__(self, target_name: str, detail: str) -> None:
        self.target_name = target_name
        self.detail = detail
        super().__init__(f"Invalid target '{target_name}': {detail}")


# =============================================================================
# Run-time errors
# =============================================================================


class TargetError(WellspringError):
    """Raised when a target's command fails."""

    def __init__(self, target_name: str, cause: BaseException | str) -> None:
        self.target_name = target_name
        self.cause = cause
        super().__init__(f"Target '{target_name}' failed: {cause}")


class ArtifactError(TargetError):
    """Raised when a file target's declared paths are missing after it ran."""

    pass


class RenderError(TargetError):
    """Raised when a literate document fails to render."""

    pass


class SkippedDueToUpstreamFailure(TargetError):
    """Marks a target that was not run because an ancestor failed."""

    def __init__(self, target_name: str, failed_ancestor: str) -> None:
        self.failed_ancestor = failed_ancestor
        super().__init__(target_name, f"upstream target '{failed_ancestor}' failed")


class StoreError(WellspringError):
    """Raised when persisted state is missing or unreadable."""

    pass


class CaptureWarning(UserWarning):
    """Emitted when a workspace snapshot cannot serialize a bound value."""

    pass
