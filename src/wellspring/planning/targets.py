"""Target model for Wellspring pipelines.

A target is a named, cacheable unit of computation. Its command is Python
source: either a single expression, or a block whose final statement is an
expression that gives the target's value.

Targets come in three kinds that share one fingerprint/invalidation contract
and differ only in how their command executes and what their output digest
covers:

- ``CODE``: the value is an in-memory Python object.
- ``FILE_TRACKED``: the value is one or more file-system paths.
- ``LITERATE``: a literate document rendered to one or more paths.

Example:
    >>> raw = target("raw", "[1, 2, 3]")
    >>> total = target("total", "sum(raw)")
    >>> report = literate_target("report", "report.md")
    >>> report.kind
    <TargetKind.LITERATE: 'literate'>
"""

from __future__ import annotations

import ast
import hashlib
import keyword
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from wellspring.foundation.errors import InvalidTargetError
from wellspring.planning.references import analyze_tree, parse_source


class TargetFormat(Enum):
    """How a target's result is stored and tracked."""

    VALUE = "value"
    """Result is a Python object, pickled into the store."""

    FILE = "file"
    """Result is a set of paths whose contents are tracked."""


class TargetKind(Enum):
    """Tagged variant of a target."""

    CODE = "code"
    FILE_TRACKED = "file_tracked"
    LITERATE = "literate"


# =============================================================================
# Command
# =============================================================================


@dataclass(frozen=True, slots=True)
class Command:
    """Parsed form of a target command.

    Attributes:
        source: The command text as written.
        fingerprint: Normalized syntax tree dump. Whitespace and comment
            edits leave it unchanged.
        free_names: Names loaded but never bound by the command.
        result_calls: Literal names passed to read_result/load_result.
        dynamic_calls: Result primitive calls with a non-literal name.
    """

    source: str
    fingerprint: str
    free_names: frozenset[str]
    result_calls: frozenset[str]
    dynamic_calls: int = 0

    @classmethod
    def parse(cls, source: str) -> Command:
        """Parse command source.

        Raises:
            SyntaxError: If the source is not valid Python.
            ValueError: If the source contains no statements.
        """
        tree = parse_source(source)
        if not tree.body:
            raise ValueError("command is empty")
        refs = analyze_tree(tree)
        return cls(
            source=source,
            fingerprint=ast.dump(tree, annotate_fields=False, include_attributes=False),
            free_names=refs.free_names,
            result_calls=refs.result_calls,
            dynamic_calls=refs.dynamic_calls,
        )


# =============================================================================
# Target
# =============================================================================


@dataclass(frozen=True, slots=True)
class Target:
    """A named step in a pipeline.

    Attributes:
        name: Unique identifier, a valid Python identifier.
        command: Parsed command. None only for literate targets.
        format: How the result is stored and tracked.
        packages: Declared external capabilities the command requires.
        document: Source path of a literate document.
        artifacts: Extra paths a literate render must emit.
        description: Human-readable summary.
    """

    name: str
    command: Command | None = None
    format: TargetFormat = TargetFormat.VALUE
    packages: tuple[str, ...] = ()
    document: str | None = None
    artifacts: tuple[str, ...] = ()
    description: str = ""

    @property
    def kind(self) -> TargetKind:
        """Variant tag derived from the definition."""
        if self.document is not None:
            return TargetKind.LITERATE
        if self.format is TargetFormat.FILE:
            return TargetKind.FILE_TRACKED
        return TargetKind.CODE

    @property
    def is_file(self) -> bool:
        """Whether the result is tracked as files."""
        return self.format is TargetFormat.FILE

    def options_fingerprint(self) -> str:
        """Stable text covering declared options other than the command."""
        parts = [
            f"kind={self.kind.value}",
            f"format={self.format.value}",
            "packages=" + ",".join(sorted(self.packages)),
            "artifacts=" + ",".join(sorted(self.artifacts)),
            f"document={self.document or ''}",
        ]
        return ";".join(parts)

    def command_hash(self) -> str:
        """Hash of the command and declared options.

        For literate targets the document text is hashed separately.
        """
        hasher = hashlib.sha256()
        hasher.update(self.command.fingerprint.encode() if self.command else b"")
        hasher.update(b"\0")
        hasher.update(self.options_fingerprint().encode())
        return hasher.hexdigest()[:20]

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.name,
            "command": self.command.source if self.command else None,
            "format": self.format.value,
            "kind": self.kind.value,
            "packages": list(self.packages),
            "document": self.document,
            "artifacts": list(self.artifacts),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Target:
        """Create from a parsed pipeline-file mapping.

        Raises:
            InvalidTargetError: If the mapping is malformed.
        """
        name = data.get("name")
        if not isinstance(name, str):
            raise InvalidTargetError(str(name), "'name' must be a string")

        document = data.get("literate", data.get("document"))
        if document is not None:
            return literate_target(
                name,
                str(document),
                artifacts=data.get("artifacts", ()),
                packages=data.get("packages", ()),
                description=data.get("description", ""),
            )

        command = data.get("command")
        if not isinstance(command, str):
            raise InvalidTargetError(name, "'command' must be a string of Python source")
        return target(
            name,
            command,
            format=data.get("format", TargetFormat.VALUE.value),
            packages=data.get("packages", ()),
            description=data.get("description", ""),
        )


# =============================================================================
# Constructors
# =============================================================================


def _check_name(name: str) -> None:
    if not name.isidentifier() or keyword.iskeyword(name):
        raise InvalidTargetError(name, "name must be a valid Python identifier")


def _parse_command(name: str, source: str) -> Command:
    try:
        return Command.parse(source)
    except (SyntaxError, ValueError) as e:
        raise InvalidTargetError(name, f"command does not parse: {e}") from e


def _as_tuple(values: str | Iterable[str] | None) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(v) for v in values)


def target(
    name: str,
    command: str,
    *,
    format: TargetFormat | str = TargetFormat.VALUE,
    packages: str | Iterable[str] | None = None,
    description: str = "",
) -> Target:
    """Define a code or file target.

    Raises:
        InvalidTargetError: If the name, command, or format is invalid.
    """
    _check_name(name)
    try:
        fmt = TargetFormat(format)
    except ValueError as e:
        raise InvalidTargetError(name, f"unknown format {format!r}") from e
    return Target(
        name=name,
        command=_parse_command(name, command),
        format=fmt,
        packages=_as_tuple(packages),
        description=description,
    )


def file_target(
    name: str,
    command: str,
    *,
    packages: str | Iterable[str] | None = None,
    description: str = "",
) -> Target:
    """Define a target whose command returns the path(s) it wrote."""
    return target(
        name, command, format=TargetFormat.FILE, packages=packages, description=description
    )


def literate_target(
    name: str,
    document: str,
    *,
    artifacts: str | Iterable[str] | None = None,
    packages: str | Iterable[str] | None = None,
    description: str = "",
) -> Target:
    """Define a literate document target.

    The document is rendered when it or anything it reads changes; its
    result is the set of emitted paths.
    """
    _check_name(name)
    if not document:
        raise InvalidTargetError(name, "literate target needs a document path")
    return Target(
        name=name,
        command=None,
        format=TargetFormat.FILE,
        packages=_as_tuple(packages),
        document=document,
        artifacts=_as_tuple(artifacts),
        description=description,
    )


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    """Pipeline-wide options from the pipeline file.

    Attributes:
        packages: Capabilities every target may use.
        capture_workspaces: Override for workspace capture on failure.
    """

    packages: tuple[str, ...] = ()
    capture_workspaces: bool | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> PipelineOptions:
        """Create from the ``options`` mapping of a pipeline file."""
        data = data or {}
        capture = data.get("capture_workspaces")
        return cls(
            packages=_as_tuple(data.get("packages")),
            capture_workspaces=None if capture is None else bool(capture),
        )
