"""Pytest fixtures for Wellspring tests."""

import os
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from wellspring.config import WellspringConfig, reset_config
from wellspring.incremental.store import FingerprintStore
from wellspring.pipeline import Pipeline


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep user config and WELLSPRING_* env vars out of tests."""
    for key in list(os.environ):
        if key.startswith("WELLSPRING_"):
            monkeypatch.delenv(key)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[FingerprintStore]:
    """A fresh fingerprint store."""
    s = FingerprintStore(tmp_path / ".wellspring")
    yield s
    s.close()


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run with the temporary directory as cwd, so relative paths land there."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def make_pipeline(workdir: Path) -> Iterator[Callable[..., Pipeline]]:
    """Build pipelines that share one store under the working directory.

    Re-calling the factory with new definitions simulates editing the
    pipeline between runs.
    """
    opened: list[Pipeline] = []

    def factory(definitions, **kwargs) -> Pipeline:
        kwargs.setdefault("store_path", workdir / ".wellspring")
        kwargs.setdefault("config", WellspringConfig())
        kwargs.setdefault("root", workdir)
        pipeline = Pipeline(definitions, **kwargs)
        opened.append(pipeline)
        return pipeline

    yield factory

    for pipeline in opened:
        pipeline.close()
