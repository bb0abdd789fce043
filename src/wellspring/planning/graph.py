"""Dependency graph of pipeline targets.

Edges are never authored: ``build_graph`` derives them from each target's
command (free names matching target names, plus literal
``read_result``/``load_result`` calls) and, for literate targets, from the
result calls inside the document's evaluated fragments. Edge direction is
dependency → dependent.

Execution order among independent targets is unspecified; commands must not
rely on it.

Example:
    >>> graph = build_graph([
    ...     target("a", "1"),
    ...     target("b", "a + 1"),
    ...     target("c", "b * 2"),
    ... ])
    >>> graph.topological_sort()
    ['a', 'b', 'c']
    >>> graph.execution_waves()
    [['a'], ['b'], ['c']]
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wellspring.foundation.errors import CycleError, InvalidTargetError
from wellspring.literate.document import LiterateDocument
from wellspring.planning.targets import Target, TargetKind


def direct_references(
    target: Target,
    target_names: Iterable[str],
    document: LiterateDocument | None = None,
) -> frozenset[str]:
    """Target names a target refers to, by any of the three forms.

    Raises:
        InvalidTargetError: If a literate document fragment does not parse.
    """
    names = set(target_names)
    refs: set[str] = set()

    if target.command is not None:
        refs |= target.command.free_names & names
        refs |= target.command.result_calls

    if target.kind is TargetKind.LITERATE and document is not None:
        try:
            refs |= document.references()
        except SyntaxError as e:
            raise InvalidTargetError(target.name, f"document fragment does not parse: {e}") from e

    return frozenset(refs)


@dataclass
class PipelineGraph:
    """Directed acyclic graph of targets with dependency resolution.

    Execution proceeds from leaves (no dependencies) to roots (nothing
    depends on them). All leaves can execute in parallel.
    """

    _targets: dict[str, Target] = field(default_factory=dict)
    """Mapping from target name to definition."""

    _requires: dict[str, frozenset[str]] = field(default_factory=dict)
    """Mapping from target name to the names it depends on."""

    _dependents: dict[str, set[str]] = field(default_factory=dict)
    """Mapping from target name to names that depend on it."""

    def add(self, target: Target, requires: Iterable[str] = ()) -> None:
        """Add a target and its dependencies.

        Raises:
            ValueError: If the name already exists.
        """
        if target.name in self._targets:
            raise ValueError(f"Target '{target.name}' already exists in graph")

        requires = frozenset(requires)
        self._targets[target.name] = target
        self._requires[target.name] = requires
        self._dependents.setdefault(target.name, set())

        for dep in requires:
            self._dependents.setdefault(dep, set()).add(target.name)

    def get(self, name: str) -> Target | None:
        return self._targets.get(name)

    def __getitem__(self, name: str) -> Target:
        return self._targets[name]

    def __contains__(self, name: str) -> bool:
        return name in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self) -> Iterator[str]:
        return iter(self._targets)

    @property
    def targets(self) -> dict[str, Target]:
        """All targets (read-only view)."""
        return dict(self._targets)

    def dependencies(self, name: str) -> frozenset[str]:
        """Direct dependencies of a target."""
        return self._requires.get(name, frozenset())

    def dependents(self, name: str) -> set[str]:
        """Targets that directly depend on a target."""
        return self._dependents.get(name, set()).copy()

    def edges(self) -> list[tuple[str, str]]:
        """All ``(dependency, dependent)`` pairs, sorted."""
        return sorted((dep, name) for name, deps in self._requires.items() for dep in deps)

    def leaves(self) -> list[str]:
        """Targets with no dependencies."""
        return [name for name, deps in self._requires.items() if not deps]

    def roots(self) -> list[str]:
        """Targets nothing depends on."""
        return [name for name in self._targets if not self._dependents.get(name)]

    def upstream(self, name: str) -> set[str]:
        """All transitive dependencies of a target."""
        seen: set[str] = set()
        queue = deque(self.dependencies(name))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self.dependencies(node))
        return seen

    def downstream(self, name: str) -> set[str]:
        """All transitive dependents of a target.

        Answers "what must re-run if this changes?".
        """
        seen: set[str] = set()
        queue = deque(self._dependents.get(name, ()))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self._dependents.get(node, ()))
        return seen

    def detect_cycle(self) -> list[str] | None:
        """Find a dependency cycle.

        Returns:
            Target names in the cycle, or None if there is none.
        """
        white, gray, black = 0, 1, 2
        color: dict[str, int] = dict.fromkeys(self._targets, white)
        parent: dict[str, str | None] = dict.fromkeys(self._targets)

        def dfs(node: str) -> list[str] | None:
            color[node] = gray

            for dep in sorted(self._requires[node]):
                if dep not in color:
                    continue

                if color[dep] == gray:
                    cycle = [dep, node] if dep != node else [dep]
                    current = parent.get(node)
                    while current and current != dep and node != dep:
                        cycle.append(current)
                        current = parent.get(current)
                    return list(reversed(cycle))

                if color[dep] == white:
                    parent[dep] = node
                    result = dfs(dep)
                    if result:
                        return result

            color[node] = black
            return None

        for name in self._targets:
            if color[name] == white:
                cycle = dfs(name)
                if cycle:
                    return cycle

        return None

    def topological_sort(self) -> list[str]:
        """Targets in dependency order (Kahn's algorithm).

        Raises:
            CycleError: If the graph contains a cycle.
        """
        in_degree = {
            name: len([d for d in deps if d in self._targets])
            for name, deps in self._requires.items()
        }

        queue = deque(name for name, deg in in_degree.items() if deg == 0)
        result = []

        while queue:
            node = queue.popleft()
            result.append(node)

            for dependent in sorted(self._dependents.get(node, ())):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._targets):
            cycle = self.detect_cycle()
            remaining = sorted(set(self._targets) - set(result))
            raise CycleError(cycle or remaining[:3])

        return result

    def execution_waves(self) -> list[list[str]]:
        """Group targets into waves whose members can run in parallel.

        Raises:
            CycleError: If the graph contains a cycle.
        """
        completed: set[str] = set()
        pending = set(self._targets)
        waves = []

        while pending:
            ready = sorted(
                name for name in pending
                if all(dep in completed or dep not in self._targets
                       for dep in self._requires[name])
            )

            if not ready:
                raise CycleError(self.detect_cycle() or sorted(pending)[:3])

            waves.append(ready)
            completed.update(ready)
            pending.difference_update(ready)

        return waves

    def subgraph(self, names: set[str]) -> PipelineGraph:
        """Graph restricted to ``names``; edges to outside names are dropped."""
        sub = PipelineGraph()
        for name in self._targets:
            if name in names:
                sub.add(self._targets[name], self._requires[name] & names)
        return sub

    def to_mermaid(self, statuses: Mapping[str, str] | None = None) -> str:
        """Mermaid flowchart of the graph.

        Args:
            statuses: Optional name → status label ("outdated", "ok",
                "error", ...) used to style nodes.
        """
        lines = ["graph LR"]
        styles = {
            "ok": "fill:#d4edda",
            "up_to_date": "fill:#d4edda",
            "outdated": "fill:#fff3cd",
            "error": "fill:#f8d7da",
            "cancelled": "fill:#e2e3e5",
        }

        for name, target in self._targets.items():
            lines.append(f'    {name}["{name} ({target.kind.value})"]')

        for dep, name in self.edges():
            lines.append(f"    {dep} --> {name}")

        for name, status in sorted((statuses or {}).items()):
            if name in self._targets and status in styles:
                lines.append(f"    style {name} {styles[status]}")

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "targets": {name: t.to_dict() for name, t in self._targets.items()},
            "edges": [list(e) for e in self.edges()],
            "waves": self.execution_waves() if self._targets else [],
        }


def build_graph(
    targets: Iterable[Target],
    documents: Mapping[str, LiterateDocument] | None = None,
    root: Path | None = None,
) -> PipelineGraph:
    """Derive the dependency graph of a set of targets.

    Args:
        targets: Target definitions.
        documents: Parsed literate documents by target name. Documents not
            supplied are loaded from disk relative to ``root``.
        root: Directory literate document paths are relative to.

    Raises:
        InvalidTargetError: If a literate document is missing or invalid.
        ValueError: If two targets share a name.
    """
    targets = list(targets)
    names = {t.name for t in targets}
    documents = dict(documents or {})
    graph = PipelineGraph()

    for target in targets:
        document = documents.get(target.name)
        if target.kind is TargetKind.LITERATE and document is None:
            document = load_document(target, root)
            documents[target.name] = document
        graph.add(target, direct_references(target, names, document))

    return graph


def load_document(target: Target, root: Path | None = None) -> LiterateDocument:
    """Load the document of a literate target.

    Raises:
        InvalidTargetError: If the document cannot be read.
    """
    assert target.document is not None
    path = Path(target.document)
    if root is not None and not path.is_absolute():
        path = root / path
    try:
        return LiterateDocument.load(path)
    except OSError as e:
        raise InvalidTargetError(target.name, f"cannot read document {path}: {e}") from e
