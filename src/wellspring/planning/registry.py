"""Target registry: validated, installed pipeline definitions.

Loading is total replacement. A load either installs a complete registry
(targets, literate documents, dependency graph) or raises ``SpecError`` and
installs nothing.

Example:
    >>> registry = load([
    ...     {"name": "a", "command": "1"},
    ...     {"name": "b", "command": "a + 1"},
    ... ])
    >>> registry.graph.dependencies("b")
    frozenset({'a'})
"""

from __future__ import annotations

import builtins
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from wellspring.foundation.errors import (
    DuplicateNameError,
    InvalidTargetError,
    SpecError,
    UnresolvedReferenceError,
)
from wellspring.incremental.commands import capability_binding
from wellspring.literate.document import LiterateDocument
from wellspring.planning.graph import PipelineGraph, build_graph, load_document
from wellspring.planning.references import RESULT_PRIMITIVES
from wellspring.planning.targets import PipelineOptions, Target, TargetKind

logger = logging.getLogger(__name__)

_BUILTIN_NAMES = frozenset(dir(builtins))


@dataclass(frozen=True)
class TargetRegistry:
    """An installed, validated set of targets.

    Attributes:
        targets: Definitions by name, in declaration order.
        graph: Derived dependency graph (acyclic).
        documents: Parsed literate documents by target name.
        options: Pipeline-wide options.
        root: Directory relative paths resolve against.
    """

    targets: dict[str, Target]
    graph: PipelineGraph
    documents: dict[str, LiterateDocument] = field(default_factory=dict)
    options: PipelineOptions = field(default_factory=PipelineOptions)
    root: Path = field(default_factory=Path.cwd)

    def __contains__(self, name: str) -> bool:
        return name in self.targets

    def __len__(self) -> int:
        return len(self.targets)

    def packages_for(self, name: str) -> tuple[str, ...]:
        """Capabilities available to a target: pipeline defaults plus its own."""
        own = self.targets[name].packages
        return tuple(dict.fromkeys(self.options.packages + own))


def _coerce_target(definition: Target | Mapping[str, Any]) -> Target:
    if isinstance(definition, Target):
        return definition
    if isinstance(definition, Mapping):
        return Target.from_dict(definition)
    raise InvalidTargetError(str(definition), "definition must be a Target or a mapping")


def _check_references(target: Target, names: set[str], packages: Iterable[str]) -> None:
    if target.command is None:
        return

    if target.command.dynamic_calls:
        raise InvalidTargetError(
            target.name, "read_result/load_result must name a target with a string literal"
        )

    bindings = {capability_binding(p)[1] for p in packages}
    resolvable = names | bindings | _BUILTIN_NAMES | RESULT_PRIMITIVES
    missing = set(target.command.free_names - resolvable)
    missing |= set(target.command.result_calls - names)
    if missing:
        raise UnresolvedReferenceError(target.name, missing)


def load(
    definitions: Iterable[Target | Mapping[str, Any]],
    *,
    options: PipelineOptions | None = None,
    root: Path | None = None,
) -> TargetRegistry:
    """Validate definitions and build the registry.

    Args:
        definitions: Targets or parsed pipeline-file mappings.
        options: Pipeline-wide options.
        root: Directory literate documents resolve against (default: cwd).

    Raises:
        DuplicateNameError: If two targets share a name.
        UnresolvedReferenceError: If a command references an unknown symbol.
        InvalidTargetError: If a definition is malformed.
        CycleError: If the derived graph has a cycle.
    """
    options = options or PipelineOptions()
    root = Path(root).resolve() if root is not None else Path.cwd()

    targets: dict[str, Target] = {}
    for definition in definitions:
        target = _coerce_target(definition)
        if target.name in targets:
            raise DuplicateNameError(target.name)
        targets[target.name] = target

    names = set(targets)
    documents: dict[str, LiterateDocument] = {}
    for target in targets.values():
        packages = options.packages + target.packages
        _check_references(target, names, packages)

        if target.kind is TargetKind.LITERATE:
            document = load_document(target, root)
            documents[target.name] = document
            try:
                unknown = set(document.references()) - names
            except SyntaxError as e:
                raise InvalidTargetError(
                    target.name, f"document fragment does not parse: {e}"
                ) from e
            if unknown:
                raise UnresolvedReferenceError(target.name, unknown)

    graph = build_graph(targets.values(), documents=documents, root=root)
    graph.topological_sort()

    logger.debug("Loaded %d targets with %d edges", len(targets), len(graph.edges()))
    return TargetRegistry(
        targets=targets, graph=graph, documents=documents, options=options, root=root
    )


def load_file(path: Path) -> TargetRegistry:
    """Load a YAML pipeline file.

    The file holds an optional ``options`` mapping and a ``targets`` list:

        options:
          packages: [statistics]
        targets:
          - name: raw
            command: "[1, 2, 3]"
          - name: mean
            command: statistics.mean(raw)

    Literate document paths resolve against the file's directory.

    Raises:
        SpecError: If the file is unreadable or malformed.
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise SpecError(f"Cannot read pipeline file {path}: {e}") from e

    if not isinstance(data, Mapping) or not isinstance(data.get("targets", []), list):
        raise SpecError(f"Pipeline file {path} must map 'targets' to a list")

    return load(
        data.get("targets", []),
        options=PipelineOptions.from_dict(data.get("options")),
        root=path.parent.resolve(),
    )
