"""Foundation layer: errors and logging shared by every Wellspring module."""

from wellspring.foundation.errors import (
    ArtifactError,
    CaptureWarning,
    CycleError,
    DuplicateNameError,
    InvalidTargetError,
    RenderError,
    SkippedDueToUpstreamFailure,
    SpecError,
    StoreError,
    TargetError,
    UnresolvedReferenceError,
    WellspringError,
)

__all__ = [
    "ArtifactError",
    "CaptureWarning",
    "CycleError",
    "DuplicateNameError",
    "InvalidTargetError",
    "RenderError",
    "SkippedDueToUpstreamFailure",
    "SpecError",
    "StoreError",
    "TargetError",
    "UnresolvedReferenceError",
    "WellspringError",
]
