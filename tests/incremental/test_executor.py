"""Tests for IncrementalExecutor."""

import random
from pathlib import Path

import pytest

from wellspring.incremental.executor import IncrementalExecutor, RunReport, run_pipeline
from wellspring.incremental.hasher import target_seed
from wellspring.incremental.store import FingerprintStore, TargetStatus
from wellspring.planning.registry import TargetRegistry, load
from wellspring.workspace.capture import WorkspaceCapturer

CHAIN = [
    {"name": "a", "command": "1"},
    {"name": "b", "command": "a + 1"},
    {"name": "c", "command": "b * 2"},
]

BRANCHES = [
    {"name": "a", "command": "1"},
    {"name": "bad", "command": "a / 0"},
    {"name": "good", "command": "a + 1"},
    {"name": "after_good", "command": "good * 10"},
    {"name": "joined", "command": "bad + good"},
    {"name": "deeper", "command": "joined + 1"},
]


@pytest.fixture
def chain(workdir: Path) -> TargetRegistry:
    return load(CHAIN, root=workdir)


@pytest.fixture
def branches(workdir: Path) -> TargetRegistry:
    return load(BRANCHES, root=workdir)


class TestIncrementalExecutor:
    """Tests for execution and skipping."""

    @pytest.mark.asyncio
    async def test_executes_chain(self, chain: TargetRegistry, store: FingerprintStore) -> None:
        report = await IncrementalExecutor(chain, store).execute()

        assert report.completed == ["a", "b", "c"]
        assert report.success
        assert report.exit_code == 0
        assert [store.load_value(n) for n in "abc"] == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_second_run_skips_everything(
        self, chain: TargetRegistry, store: FingerprintStore
    ) -> None:
        await IncrementalExecutor(chain, store).execute()

        report = await IncrementalExecutor(chain, store).execute()

        assert report.completed == []
        assert report.up_to_date == ["a", "b", "c"]
        assert store.get("a").skip_count == 1

    @pytest.mark.asyncio
    async def test_records_digests_of_dependencies(
        self, chain: TargetRegistry, store: FingerprintStore
    ) -> None:
        await IncrementalExecutor(chain, store).execute()

        a = store.get("a")
        b = store.get("b")

        assert a.status is TargetStatus.OK
        assert b.dependency_digests == {"a": a.output_digest}
        assert b.seed == target_seed("b")

    @pytest.mark.asyncio
    async def test_force(self, chain: TargetRegistry, store: FingerprintStore) -> None:
        await IncrementalExecutor(chain, store).execute()

        report = await IncrementalExecutor(chain, store).execute(force=["b"])

        assert report.completed == ["b", "c"]
        assert report.up_to_date == ["a"]

    @pytest.mark.asyncio
    async def test_run_history(self, chain: TargetRegistry, store: FingerprintStore) -> None:
        report = await IncrementalExecutor(chain, store).execute()

        run = store.get_run(report.run_id)

        assert run["status"] == "completed"
        assert run["executed"] == 3

    @pytest.mark.asyncio
    async def test_progress_callback(self, chain: TargetRegistry, store: FingerprintStore) -> None:
        messages: list[str] = []

        await IncrementalExecutor(chain, store).execute(on_progress=messages.append)

        assert messages[0].startswith("Incremental: 0 up to date, 3 to execute")
        assert any(m.startswith("Wave 1") for m in messages)


class TestPartialFailure:
    """A failure stops its descendants, never its siblings."""

    @pytest.mark.asyncio
    async def test_sibling_branches_complete(
        self, branches: TargetRegistry, store: FingerprintStore
    ) -> None:
        report = await IncrementalExecutor(branches, store).execute()

        assert set(report.completed) == {"a", "good", "after_good"}
        assert report.failed == {"bad": "ZeroDivisionError: division by zero"}
        assert report.cancelled == {"joined": "bad", "deeper": "bad"}
        assert not report.success
        assert report.exit_code == 1

    @pytest.mark.asyncio
    async def test_statuses_recorded(
        self, branches: TargetRegistry, store: FingerprintStore
    ) -> None:
        await IncrementalExecutor(branches, store).execute()

        assert store.get("good").status is TargetStatus.OK
        assert store.get("bad").status is TargetStatus.ERROR
        assert store.get("bad").error_message == "ZeroDivisionError: division by zero"
        assert store.get("bad").output_digest is None
        joined = store.get("joined")
        assert joined.status is TargetStatus.CANCELLED
        assert "bad" in joined.error_message

    @pytest.mark.asyncio
    async def test_failed_run_recorded(
        self, branches: TargetRegistry, store: FingerprintStore
    ) -> None:
        report = await IncrementalExecutor(branches, store).execute()

        run = store.get_run(report.run_id)

        assert run["status"] == "failed"
        assert run["failed"] == 1
        assert run["cancelled"] == 2

    @pytest.mark.asyncio
    async def test_exit_call_fails_only_its_target(
        self, store: FingerprintStore, workdir: Path
    ) -> None:
        registry = load(
            [
                {"name": "bad", "command": "import sys\nsys.exit(3)"},
                {"name": "good", "command": "2"},
                {"name": "after", "command": "bad + good"},
            ],
            root=workdir,
        )

        report = await IncrementalExecutor(registry, store).execute()

        assert report.failed == {"bad": "SystemExit: 3"}
        assert report.completed == ["good"]
        assert report.cancelled == {"after": "bad"}
        assert store.get("bad").status is TargetStatus.ERROR
        assert store.load_value("good") == 2
        assert store.get_run(report.run_id)["status"] == "failed"

    @pytest.mark.asyncio
    async def test_fixing_the_failure_resumes(
        self, branches: TargetRegistry, store: FingerprintStore, workdir: Path
    ) -> None:
        await IncrementalExecutor(branches, store).execute()
        fixed = load(
            [dict(d, command="a * 5") if d["name"] == "bad" else d for d in BRANCHES],
            root=workdir,
        )

        report = await IncrementalExecutor(fixed, store).execute()

        assert report.completed == ["bad", "joined", "deeper"]
        assert set(report.up_to_date) == {"a", "good", "after_good"}
        assert store.load_value("deeper") == 5 + 2 + 1

    @pytest.mark.asyncio
    async def test_parallel_workers(self, branches: TargetRegistry, store: FingerprintStore) -> None:
        report = await IncrementalExecutor(branches, store, max_workers=4).execute()

        assert set(report.completed) == {"a", "good", "after_good"}
        assert set(report.failed) == {"bad"}
        assert set(report.cancelled) == {"joined", "deeper"}

    @pytest.mark.asyncio
    async def test_workspace_captured_on_failure(
        self, branches: TargetRegistry, store: FingerprintStore
    ) -> None:
        capturer = WorkspaceCapturer(store.root / "workspaces")

        await IncrementalExecutor(branches, store, capturer=capturer).execute()

        assert capturer.list() == ["bad"]
        assert capturer.load("bad").bindings == {"a": 1}

    @pytest.mark.asyncio
    async def test_no_capture_without_capturer(
        self, branches: TargetRegistry, store: FingerprintStore
    ) -> None:
        await IncrementalExecutor(branches, store).execute()

        assert not (store.root / "workspaces").exists()


class TestCommandEvaluation:
    """Tests for how commands see their inputs."""

    def _run(self, definitions: list[dict], store: FingerprintStore, root: Path) -> RunReport:
        return run_pipeline(load(definitions, root=root), store)

    def test_block_value_is_final_expression(self, store: FingerprintStore, workdir: Path) -> None:
        self._run([{"name": "a", "command": "x = 2\ny = x * 3\ny + 1"}], store, workdir)

        assert store.load_value("a") == 7

    def test_block_without_final_expression_is_none(
        self, store: FingerprintStore, workdir: Path
    ) -> None:
        self._run([{"name": "a", "command": "x = 2"}], store, workdir)

        assert store.load_value("a") is None

    def test_read_result(self, store: FingerprintStore, workdir: Path) -> None:
        self._run(
            [{"name": "a", "command": "20"}, {"name": "b", "command": "read_result('a') + 1"}],
            store,
            workdir,
        )

        assert store.load_value("b") == 21

    def test_load_result(self, store: FingerprintStore, workdir: Path) -> None:
        self._run(
            [{"name": "a", "command": "20"}, {"name": "b", "command": "load_result('a')\na + 5"}],
            store,
            workdir,
        )

        assert store.load_value("b") == 25

    def test_values_loaded_from_store_across_runs(
        self, store: FingerprintStore, workdir: Path
    ) -> None:
        self._run(CHAIN, store, workdir)
        changed = [dict(d, command="b * 100") if d["name"] == "c" else d for d in CHAIN]

        report = self._run(changed, store, workdir)

        assert report.completed == ["c"]
        assert store.load_value("c") == 200

    def test_capability_bound(self, store: FingerprintStore, workdir: Path) -> None:
        report = self._run(
            [{"name": "a", "command": "st.mean([1, 2, 3])", "packages": ["statistics as st"]}],
            store,
            workdir,
        )

        assert report.success
        assert store.load_value("a") == 2
        assert store.get("a").capabilities[0].startswith("statistics==python-")

    def test_missing_capability_fails_target(
        self, store: FingerprintStore, workdir: Path
    ) -> None:
        report = self._run(
            [{"name": "a", "command": "1", "packages": ["wellspring_no_such_module"]}],
            store,
            workdir,
        )

        assert "not importable" in report.failed["a"]

    def test_seeded_randomness(self, store: FingerprintStore, workdir: Path) -> None:
        self._run([{"name": "a", "command": "import random\nrandom.random()"}], store, workdir)

        random.seed(target_seed("a"))
        assert store.load_value("a") == random.random()

    def test_warnings_recorded(self, store: FingerprintStore, workdir: Path) -> None:
        report = self._run(
            [{"name": "a", "command": "import warnings\nwarnings.warn('careful')\n1"}],
            store,
            workdir,
        )

        assert report.warnings == {"a": ["UserWarning: careful"]}
        assert store.get("a").warnings == ("UserWarning: careful",)

    def test_warnings_kept_on_failure(self, store: FingerprintStore, workdir: Path) -> None:
        self._run(
            [{"name": "a", "command": "import warnings\nwarnings.warn('first')\n1 / 0"}],
            store,
            workdir,
        )

        record = store.get("a")
        assert record.status is TargetStatus.ERROR
        assert record.warnings == ("UserWarning: first",)

    def test_success_clears_error_and_warnings(
        self, store: FingerprintStore, workdir: Path
    ) -> None:
        self._run(
            [{"name": "a", "command": "import warnings\nwarnings.warn('x')\n1 / 0"}],
            store,
            workdir,
        )
        self._run([{"name": "a", "command": "1"}], store, workdir)

        record = store.get("a")
        assert record.status is TargetStatus.OK
        assert record.error_message is None
        assert record.warnings == ()

    def test_unpicklable_value_fails_target(self, store: FingerprintStore, workdir: Path) -> None:
        report = self._run([{"name": "a", "command": "lambda: 1"}], store, workdir)

        assert "cannot be stored" in report.failed["a"]

    def test_file_target_value_is_its_path(self, store: FingerprintStore, workdir: Path) -> None:
        report = self._run(
            [
                {
                    "name": "out",
                    "format": "file",
                    "command": "from pathlib import Path\n"
                    "Path('out.txt').write_text('hello')\n"
                    "'out.txt'",
                },
                {
                    "name": "shout",
                    "command": "from pathlib import Path\nPath(out).read_text().upper()",
                },
            ],
            store,
            workdir,
        )

        assert report.success
        assert store.load_value("shout") == "HELLO"
        assert [f.path for f in store.get_files("out")] == ["out.txt"]

    def test_file_target_missing_path_fails(self, store: FingerprintStore, workdir: Path) -> None:
        report = self._run(
            [{"name": "out", "format": "file", "command": "'never_written.txt'"}], store, workdir
        )

        assert "missing" in report.failed["out"]
