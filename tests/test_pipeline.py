"""End-to-end tests for the Pipeline front end."""

from collections.abc import Callable
from pathlib import Path

import pytest

from wellspring.config import WellspringConfig, WorkspaceConfig
from wellspring.foundation.errors import SpecError, StoreError
from wellspring.incremental.store import TargetStatus
from wellspring.pipeline import Pipeline

CHAIN = [
    {"name": "a", "command": "1"},
    {"name": "b", "command": "a + 1"},
    {"name": "c", "command": "b * 2"},
]

FILES = [
    {
        "name": "out",
        "format": "file",
        "command": "from pathlib import Path\n"
        "Path('out.txt').write_text(str(a))\n"
        "'out.txt'",
    },
    {"name": "a", "command": "3"},
    {"name": "size", "command": "from pathlib import Path\nlen(Path(out).read_text())"},
]

Factory = Callable[..., Pipeline]


def _with(definitions: list[dict], name: str, command: str) -> list[dict]:
    return [dict(d, command=command) if d["name"] == name else d for d in definitions]


class TestIncrementalRuns:
    """Scenario tests: edit, re-run, observe what re-executes."""

    def test_first_run_executes_everything(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(CHAIN)

        report = pipeline.run()

        assert report.completed == ["a", "b", "c"]
        assert pipeline.read_result("c") == 4

    def test_rerun_is_a_no_op(self, make_pipeline: Factory) -> None:
        make_pipeline(CHAIN).run()

        pipeline = make_pipeline(CHAIN)

        assert pipeline.outdated() == []
        assert pipeline.run().completed == []

    def test_edit_reruns_target_and_dependents(self, make_pipeline: Factory) -> None:
        make_pipeline(CHAIN).run()

        pipeline = make_pipeline(_with(CHAIN, "a", "10"))
        report = pipeline.run()

        assert report.completed == ["a", "b", "c"]
        assert [pipeline.read_result(n) for n in "abc"] == [10, 11, 22]
        assert make_pipeline(_with(CHAIN, "a", "10")).outdated() == []

    def test_equivalent_edit_settles_after_one_run(self, make_pipeline: Factory) -> None:
        """An edit that yields the same value still re-runs dependents once."""
        make_pipeline(CHAIN).run()

        report = make_pipeline(_with(CHAIN, "a", "2 - 1")).run()

        assert report.completed == ["a", "b", "c"]
        assert make_pipeline(_with(CHAIN, "a", "2 - 1")).outdated() == []

    def test_force(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(CHAIN)
        pipeline.run()

        assert pipeline.run(force=["c"]).completed == ["c"]

    def test_force_unknown_target(self, make_pipeline: Factory) -> None:
        with pytest.raises(KeyError):
            make_pipeline(CHAIN).run(force=["nope"])

    def test_failure_then_fix(self, make_pipeline: Factory) -> None:
        failing = make_pipeline(_with(CHAIN, "b", "a / 0"))
        report = failing.run()

        assert report.failed == {"b": "ZeroDivisionError: division by zero"}
        assert report.cancelled == {"c": "b"}
        assert failing.statuses() == {"a": "up_to_date", "b": "error", "c": "cancelled"}

        fixed = make_pipeline(CHAIN)
        report = fixed.run()

        assert report.completed == ["b", "c"]
        assert fixed.read_result("c") == 4

    def test_parallel_configuration(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(
            [{"name": f"t{i}", "command": f"{i} * 2"} for i in range(6)]
            + [{"name": "total", "command": "t0 + t1 + t2 + t3 + t4 + t5"}],
            max_workers=3,
        )

        report = pipeline.run()

        assert report.success
        assert pipeline.read_result("total") == 30


class TestFileTargets:
    """File-tracked targets through the front end."""

    def test_file_value_and_dependents(self, make_pipeline: Factory, workdir: Path) -> None:
        pipeline = make_pipeline(FILES)

        pipeline.run()

        assert pipeline.read_result("out") == "out.txt"
        assert pipeline.read_result("size") == 1
        assert (workdir / "out.txt").read_text() == "3"

    def test_deleted_file_self_heals(self, make_pipeline: Factory, workdir: Path) -> None:
        make_pipeline(FILES).run()
        (workdir / "out.txt").unlink()

        pipeline = make_pipeline(FILES)
        assert pipeline.outdated() == ["out", "size"]

        report = pipeline.run()

        assert "out" in report.completed
        assert (workdir / "out.txt").read_text() == "3"
        assert make_pipeline(FILES).outdated() == []

    def test_hand_edit_detected(self, make_pipeline: Factory, workdir: Path) -> None:
        make_pipeline(FILES).run()
        (workdir / "out.txt").write_text("hand edited")

        assert make_pipeline(FILES).outdated() == ["out", "size"]

    def test_commands_run_in_the_pipeline_directory(self, workdir: Path) -> None:
        project = workdir / "project"
        project.mkdir()
        path = project / "pipeline.yaml"
        path.write_text(
            "targets:\n"
            "  - name: f\n"
            "    format: file\n"
            "    command: |\n"
            "      open('out.txt', 'w').write('hello')\n"
            "      'out.txt'\n"
        )

        with Pipeline(path, store_path=workdir / "store", config=WellspringConfig()) as pipeline:
            report = pipeline.run()
            assert report.completed == ["f"]
        assert (project / "out.txt").read_text() == "hello"
        assert not (workdir / "out.txt").exists()

        (project / "out.txt").unlink()
        with Pipeline(path, store_path=workdir / "store", config=WellspringConfig()) as pipeline:
            assert pipeline.outdated() == ["f"]
            pipeline.run()
            assert pipeline.outdated() == []
        assert (project / "out.txt").read_text() == "hello"

    def test_reset_removes_tracked_files(self, make_pipeline: Factory, workdir: Path) -> None:
        pipeline = make_pipeline(FILES)
        pipeline.run()

        pipeline.reset()

        assert not (workdir / "out.txt").exists()
        assert pipeline.outdated() == ["a", "out", "size"]


class TestResults:
    """Reading results and metadata."""

    def test_read_result_errors(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(_with(CHAIN, "b", "a / 0"))

        with pytest.raises(StoreError, match="has not run"):
            pipeline.read_result("a")
        with pytest.raises(StoreError, match="Unknown target"):
            pipeline.read_result("zzz")

        pipeline.run()

        assert pipeline.read_result("a") == 1
        with pytest.raises(StoreError, match="error"):
            pipeline.read_result("b")
        with pytest.raises(StoreError, match="cancelled"):
            pipeline.read_result("c")

    def test_load_result_into_namespace(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(CHAIN)
        pipeline.run()
        namespace: dict = {}

        pipeline.load_result("b", namespace)

        assert namespace == {"b": 2}

    def test_load_result_into_caller_globals(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(CHAIN)
        pipeline.run()

        pipeline.load_result("c")

        assert globals().pop("c") == 4

    def test_metadata_all_fields(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(CHAIN)
        pipeline.run()

        rows = pipeline.metadata()

        assert [r["name"] for r in rows] == ["a", "b", "c"]
        assert rows[0]["status"] == "ok"
        assert rows[1]["dependency_digests"] == {"a": rows[0]["output_digest"]}

    def test_metadata_selected_fields(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(CHAIN)
        pipeline.run()

        rows = pipeline.metadata("status", "seed", names=["b"])

        assert len(rows) == 1
        assert set(rows[0]) == {"name", "status", "seed"}

    def test_metadata_unknown_field(self, make_pipeline: Factory) -> None:
        with pytest.raises(ValueError, match="bogus"):
            make_pipeline(CHAIN).metadata("bogus")

    def test_metadata_before_any_run(self, make_pipeline: Factory) -> None:
        assert make_pipeline(CHAIN).metadata() == []

    def test_failed_target_metadata(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(_with(CHAIN, "b", "a / 0"))
        pipeline.run()

        (row,) = pipeline.metadata("status", "error", names=["b"])

        assert row["status"] == TargetStatus.ERROR.value
        assert row["error"] == "ZeroDivisionError: division by zero"


class TestWorkspaces:
    """Failure workspaces through the front end."""

    FAILING = [
        {"name": "a", "command": "[1, 2, 3]"},
        {
            "name": "b",
            "command": "import random\nx = random.random()\nraise ValueError(f'{sum(a)} {x}')",
        },
    ]

    def test_failure_captures_workspace(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(self.FAILING)
        report = pipeline.run()

        assert pipeline.list_workspaces() == ["b"]
        snapshot = pipeline.capturer.load("b")
        assert snapshot.bindings == {"a": [1, 2, 3]}
        with pytest.raises(ValueError) as exc_info:
            snapshot.reproduce()
        assert report.failed["b"] == f"ValueError: {exc_info.value}"

    def test_open_workspace(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(self.FAILING)
        pipeline.run()
        namespace: dict = {}

        snapshot = pipeline.open_workspace("b", namespace)

        assert namespace["a"] == [1, 2, 3]
        assert callable(namespace["read_result"])
        assert snapshot.target_name == "b"

    def test_open_missing_workspace(self, make_pipeline: Factory) -> None:
        with pytest.raises(StoreError):
            make_pipeline(CHAIN).open_workspace("a", {})

    def test_reset_keeps_workspaces(self, make_pipeline: Factory) -> None:
        pipeline = make_pipeline(self.FAILING)
        pipeline.run()

        pipeline.reset()

        assert pipeline.list_workspaces() == ["b"]
        assert pipeline.purge_workspaces() == 1
        assert pipeline.list_workspaces() == []

    def test_capture_disabled_by_config(self, make_pipeline: Factory) -> None:
        config = WellspringConfig(workspace=WorkspaceConfig(capture=False))
        pipeline = make_pipeline(self.FAILING, config=config)

        pipeline.run()

        assert pipeline.list_workspaces() == []

    def test_capture_argument_wins(self, make_pipeline: Factory) -> None:
        config = WellspringConfig(workspace=WorkspaceConfig(capture=False))
        pipeline = make_pipeline(self.FAILING, config=config, capture_workspaces=True)

        pipeline.run()

        assert pipeline.list_workspaces() == ["b"]


class TestLoading:
    def test_yaml_source(self, workdir: Path) -> None:
        path = workdir / "pipeline.yaml"
        path.write_text(
            "targets:\n  - name: a\n    command: '2'\n  - name: b\n    command: a ** 3\n"
        )

        with Pipeline(path, store_path=workdir / "store", config=WellspringConfig()) as pipeline:
            pipeline.run()
            assert pipeline.read_result("b") == 8

    def test_invalid_definitions_install_nothing(self, workdir: Path) -> None:
        with pytest.raises(SpecError):
            Pipeline(
                [{"name": "a", "command": "b"}, {"name": "b", "command": "a"}],
                store_path=workdir / "store",
                config=WellspringConfig(),
            )

        assert not (workdir / "store").exists()

    def test_store_path_from_config(self, workdir: Path) -> None:
        config = WellspringConfig()
        config.store.path = str(workdir / "configured")

        with Pipeline(CHAIN, config=config) as pipeline:
            assert pipeline.store_path == workdir / "configured"
