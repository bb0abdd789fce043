"""Wellspring - incremental pipelines of cached Python targets.

A pipeline is a set of named targets whose commands reference each other.
Wellspring derives the dependency graph from those references, fingerprints
every run, and on the next run re-executes only what changed.
"""

__version__ = "0.1.0"

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
from wellspring.incremental.executor import IncrementalExecutor, RunReport, run_pipeline
from wellspring.incremental.invalidation import InvalidationPlan, OutdatedReason
from wellspring.incremental.store import FingerprintRecord, FingerprintStore, TargetStatus
from wellspring.pipeline import Pipeline
from wellspring.planning.graph import PipelineGraph
from wellspring.planning.registry import TargetRegistry, load, load_file
from wellspring.planning.targets import (
    PipelineOptions,
    Target,
    TargetFormat,
    TargetKind,
    file_target,
    literate_target,
    target,
)
from wellspring.workspace.capture import WorkspaceSnapshot

__all__ = [
    # Definitions
    "Target",
    "TargetFormat",
    "TargetKind",
    "PipelineOptions",
    "target",
    "file_target",
    "literate_target",
    # Loading
    "TargetRegistry",
    "PipelineGraph",
    "load",
    "load_file",
    # Running
    "Pipeline",
    "IncrementalExecutor",
    "RunReport",
    "run_pipeline",
    "InvalidationPlan",
    "OutdatedReason",
    # Persisted state
    "FingerprintStore",
    "FingerprintRecord",
    "TargetStatus",
    "WorkspaceSnapshot",
    # Errors
    "WellspringError",
    "SpecError",
    "CycleError",
    "DuplicateNameError",
    "UnresolvedReferenceError",
    "InvalidTargetError",
    "TargetError",
    "ArtifactError",
    "RenderError",
    "SkippedDueToUpstreamFailure",
    "StoreError",
    "CaptureWarning",
]
