"""Tests for logging configuration."""

import io
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from wellspring.foundation.errors import (
    CycleError,
    SkippedDueToUpstreamFailure,
    SpecError,
    TargetError,
    UnresolvedReferenceError,
    WellspringError,
)
from wellspring.foundation.logging import configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    def test_default_is_quiet(self) -> None:
        stream = io.StringIO()
        configure_logging(stream=stream)

        logging.getLogger("wellspring.test").info("hidden")
        logging.getLogger("wellspring.test").warning("shown")

        assert "hidden" not in stream.getvalue()
        assert "wellspring.test: shown" in stream.getvalue()

    def test_debug_flag(self) -> None:
        stream = io.StringIO()
        configure_logging(debug=True, stream=stream)

        logging.getLogger("wellspring.test").debug("details")

        assert "[DEBUG] details" in stream.getvalue()

    def test_explicit_level_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WELLSPRING_DEBUG", "true")
        stream = io.StringIO()
        configure_logging(level="ERROR", stream=stream)

        logging.getLogger("wellspring.test").warning("quiet")

        assert stream.getvalue() == ""

    def test_env_level(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WELLSPRING_LOG_LEVEL", "info")
        stream = io.StringIO()
        configure_logging(stream=stream)

        logging.getLogger("wellspring.test").info("visible")

        assert "visible" in stream.getvalue()

    def test_session_log_file(self, tmp_path: Path) -> None:
        configure_logging(stream=io.StringIO(), log_dir=tmp_path / "logs")

        logging.getLogger("wellspring.test").debug("to file only")
        for handler in logging.getLogger().handlers:
            handler.flush()

        (log_file,) = (tmp_path / "logs").glob("session_*.log")
        assert "to file only" in log_file.read_text()

    def test_old_sessions_pruned(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        for i in range(12):
            (log_dir / f"session_old_{i:02d}.log").write_text("")

        configure_logging(stream=io.StringIO(), log_dir=log_dir)

        assert len(list(log_dir.glob("session_*.log"))) == 11


class TestErrors:
    """The two error families stay distinct."""

    def test_hierarchy(self) -> None:
        assert issubclass(CycleError, SpecError)
        assert issubclass(UnresolvedReferenceError, SpecError)
        assert issubclass(SkippedDueToUpstreamFailure, TargetError)
        assert not issubclass(TargetError, SpecError)
        assert issubclass(SpecError, WellspringError)

    def test_messages(self) -> None:
        assert str(CycleError(["a", "b"])) == "Cyclic dependency detected: a → b → a"
        assert str(UnresolvedReferenceError("t", {"y", "x"})) == (
            "Target 't' references unknown symbols: ['x', 'y']"
        )
        skipped = SkippedDueToUpstreamFailure("c", "a")
        assert skipped.failed_ancestor == "a"
        assert "upstream target 'a' failed" in str(skipped)
