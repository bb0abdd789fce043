"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from wellspring.config import (
    WellspringConfig,
    get_config,
    load_config,
    reset_config,
    save_default_config,
)


@pytest.fixture
def home(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A fake home directory, so the user-global config is controlled."""
    path = workdir / "home"
    path.mkdir()
    monkeypatch.setenv("HOME", str(path))
    return path


class TestLoadConfig:
    """Tests for load_config()."""

    def test_defaults(self, home: Path) -> None:
        config = load_config()

        assert config.store.path == ".wellspring"
        assert config.execution.max_workers == 1
        assert config.files.trust_mtime is True
        assert config.workspace.capture is True
        assert config.logging.persist is True
        assert config.debug is False
        assert config.workspace_path == Path(".wellspring") / "workspaces"

    def test_project_file(self, home: Path, workdir: Path) -> None:
        (workdir / ".wellspring").mkdir()
        (workdir / ".wellspring" / "config.yaml").write_text(
            "execution:\n  max_workers: 4\nfiles:\n  trust_mtime: false\n"
        )

        config = load_config()

        assert config.execution.max_workers == 4
        assert config.files.trust_mtime is False
        assert config.workspace.capture is True

    def test_user_file(self, home: Path) -> None:
        (home / ".wellspring").mkdir()
        (home / ".wellspring" / "config.yaml").write_text("workspace:\n  capture: false\n")

        assert load_config().workspace.capture is False

    def test_project_file_beats_user_file(self, home: Path, workdir: Path) -> None:
        (home / ".wellspring").mkdir()
        (home / ".wellspring" / "config.yaml").write_text("execution:\n  max_workers: 8\n")
        (workdir / ".wellspring").mkdir()
        (workdir / ".wellspring" / "config.yaml").write_text("execution:\n  max_workers: 2\n")

        assert load_config().execution.max_workers == 2

    def test_explicit_path(self, home: Path, workdir: Path) -> None:
        path = workdir / "custom.yaml"
        path.write_text("store:\n  path: elsewhere\n")

        assert load_config(path).store.path == "elsewhere"

    def test_invalid_file_skipped(self, home: Path, workdir: Path) -> None:
        path = workdir / "broken.yaml"
        path.write_text("execution: [unclosed\n")

        assert load_config(path).execution.max_workers == 1

    def test_env_overrides(
        self, home: Path, workdir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (workdir / ".wellspring").mkdir()
        (workdir / ".wellspring" / "config.yaml").write_text("execution:\n  max_workers: 4\n")
        monkeypatch.setenv("WELLSPRING_EXECUTION_MAX_WORKERS", "6")
        monkeypatch.setenv("WELLSPRING_FILES_TRUST_MTIME", "false")
        monkeypatch.setenv("WELLSPRING_STORE_PATH", "/tmp/ws")
        monkeypatch.setenv("WELLSPRING_LOGGING_LEVEL", "DEBUG")
        monkeypatch.setenv("WELLSPRING_DEBUG", "true")

        config = load_config()

        assert config.execution.max_workers == 6
        assert config.files.trust_mtime is False
        assert config.store.path == "/tmp/ws"
        assert config.logging.level == "DEBUG"
        assert config.debug is True

    def test_unknown_env_setting_ignored(
        self, home: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WELLSPRING_EXECUTION_TURBO", "true")

        assert load_config() == WellspringConfig()


class TestGlobalConfig:
    def test_get_config_is_cached(self, home: Path) -> None:
        assert get_config() is get_config()

    def test_reset_config(self, home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        first = get_config()
        monkeypatch.setenv("WELLSPRING_EXECUTION_MAX_WORKERS", "3")

        reset_config()

        assert get_config() is not first
        assert get_config().execution.max_workers == 3


class TestSaveDefaultConfig:
    def test_written_file_matches_defaults(self, home: Path, workdir: Path) -> None:
        path = save_default_config(workdir / "nested" / "config.yaml")

        assert path.exists()
        data = yaml.safe_load(path.read_text())
        assert data["execution"]["max_workers"] == 1
        assert load_config(path) == WellspringConfig()
