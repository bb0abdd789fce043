"""Shared helpers for CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from wellspring.cli.error_handler import handle_error
from wellspring.config import WellspringConfig
from wellspring.foundation.errors import WellspringError
from wellspring.pipeline import Pipeline
from wellspring.workspace.capture import WorkspaceCapturer


def open_pipeline(ctx: click.Context, json_output: bool = False, **overrides: Any) -> Pipeline:
    """Load the pipeline named on the command line.

    Load errors are reported (as JSON when ``json_output``) and exit with
    status 2.
    """
    obj = ctx.find_root().obj
    config: WellspringConfig = obj["config"]
    try:
        return Pipeline(
            obj["pipeline_path"],
            store_path=obj["store_path"],
            config=config,
            **overrides,
        )
    except WellspringError as e:
        handle_error(e, json_output=json_output)


def open_capturer(ctx: click.Context) -> WorkspaceCapturer:
    """Workspace capturer of the store, usable without loading the pipeline."""
    obj = ctx.find_root().obj
    return WorkspaceCapturer(Path(obj["store_path"]) / obj["config"].workspace.directory)


def echo_json(data: Any) -> None:
    """Print JSON; values that aren't JSON types are shown by repr."""
    click.echo(json.dumps(data, indent=2, default=repr))
