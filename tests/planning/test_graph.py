"""Tests for PipelineGraph and build_graph."""

from pathlib import Path

import pytest

from wellspring.foundation.errors import CycleError, InvalidTargetError
from wellspring.planning.graph import PipelineGraph, build_graph
from wellspring.planning.targets import literate_target, target


@pytest.fixture
def diamond() -> PipelineGraph:
    return build_graph(
        [
            target("a", "1"),
            target("b", "a + 1"),
            target("c", "read_result('a') * 2"),
            target("d", "b + c"),
        ]
    )


class TestBuildGraph:
    """Tests for edge derivation."""

    def test_free_name_edges(self, diamond: PipelineGraph) -> None:
        assert diamond.dependencies("b") == {"a"}
        assert diamond.dependencies("d") == {"b", "c"}

    def test_result_call_edges(self, diamond: PipelineGraph) -> None:
        assert diamond.dependencies("c") == {"a"}

    def test_non_target_names_are_not_edges(self) -> None:
        graph = build_graph([target("a", "1"), target("b", "len(str(a)) + offset")])

        assert graph.dependencies("b") == {"a"}

    def test_bound_name_shadows_target(self) -> None:
        graph = build_graph([target("a", "1"), target("b", "a = 5\na + 1")])

        assert graph.dependencies("b") == frozenset()

    def test_read_before_rebind_is_an_edge(self) -> None:
        graph = build_graph([target("a", "1"), target("b", "y = a + 1\na = 0\ny")])

        assert graph.dependencies("b") == {"a"}

    def test_parameter_elsewhere_does_not_shadow(self) -> None:
        graph = build_graph(
            [target("a", "1"), target("b", "def f(a):\n    return a * 2\nf(a) + a")]
        )

        assert graph.dependencies("b") == {"a"}

    def test_literate_document_edges(self, tmp_path: Path) -> None:
        (tmp_path / "report.md").write_text(
            "# Report\n\n```{python}\nread_result('a')\n```\n\n"
            "```{python eval=false}\nread_result('b')\n```\n"
        )

        graph = build_graph(
            [target("a", "1"), target("b", "2"), literate_target("report", "report.md")],
            root=tmp_path,
        )

        assert graph.dependencies("report") == {"a"}

    def test_missing_document(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidTargetError, match="cannot read document"):
            build_graph([literate_target("report", "nope.md")], root=tmp_path)


class TestOrdering:
    """Tests for topological order and waves."""

    def test_topological_sort(self, diamond: PipelineGraph) -> None:
        order = diamond.topological_sort()

        assert order[0] == "a"
        assert order[-1] == "d"
        assert order.index("b") < order.index("d")

    def test_execution_waves(self, diamond: PipelineGraph) -> None:
        assert diamond.execution_waves() == [["a"], ["b", "c"], ["d"]]

    def test_cycle_detected(self) -> None:
        graph = build_graph([target("a", "b + 1"), target("b", "a + 1")])

        with pytest.raises(CycleError) as exc_info:
            graph.topological_sort()

        assert set(exc_info.value.cycle) == {"a", "b"}

    def test_self_cycle(self) -> None:
        graph = build_graph([target("a", "read_result('a')")])

        assert graph.detect_cycle() == ["a"]

    def test_cycle_in_waves(self) -> None:
        graph = build_graph([target("a", "b"), target("b", "a")])

        with pytest.raises(CycleError):
            graph.execution_waves()


class TestTraversal:
    """Tests for upstream/downstream queries."""

    def test_upstream(self, diamond: PipelineGraph) -> None:
        assert diamond.upstream("d") == {"a", "b", "c"}
        assert diamond.upstream("a") == set()

    def test_downstream(self, diamond: PipelineGraph) -> None:
        assert diamond.downstream("a") == {"b", "c", "d"}
        assert diamond.downstream("d") == set()

    def test_leaves_and_roots(self, diamond: PipelineGraph) -> None:
        assert diamond.leaves() == ["a"]
        assert diamond.roots() == ["d"]

    def test_subgraph(self, diamond: PipelineGraph) -> None:
        sub = diamond.subgraph({"b", "d"})

        assert sub.dependencies("d") == {"b"}
        assert sub.dependencies("b") == frozenset()

    def test_duplicate_add(self) -> None:
        graph = PipelineGraph()
        graph.add(target("a", "1"))

        with pytest.raises(ValueError, match="already exists"):
            graph.add(target("a", "2"))


class TestExport:
    def test_mermaid(self, diamond: PipelineGraph) -> None:
        text = diamond.to_mermaid({"a": "ok", "d": "outdated"})

        assert text.startswith("graph LR")
        assert "a --> b" in text
        assert "style d fill:#fff3cd" in text

    def test_to_dict(self, diamond: PipelineGraph) -> None:
        data = diamond.to_dict()

        assert ["a", "b"] in data["edges"]
        assert data["waves"][0] == ["a"]
        assert data["targets"]["c"]["kind"] == "code"
