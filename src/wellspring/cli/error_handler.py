"""CLI error handler.

Load errors exit with status 2, everything else with status 1. Errors are
printed to stderr as a rich panel, or as JSON for programmatic use.
"""

import json
import sys
from typing import NoReturn

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from wellspring.foundation.errors import SpecError, WellspringError

LOAD_ERROR_EXIT = 2
RUN_ERROR_EXIT = 1


def exit_code_for(error: Exception) -> int:
    return LOAD_ERROR_EXIT if isinstance(error, SpecError) else RUN_ERROR_EXIT


def handle_error(error: WellspringError | Exception, json_output: bool = False) -> NoReturn:
    """Print an error and exit.

    Raises:
        SystemExit: Always.
    """
    code = exit_code_for(error)

    if json_output:
        print(
            json.dumps({"error": type(error).__name__, "message": str(error), "exit_code": code}),
            file=sys.stderr,
        )
        sys.exit(code)

    console = Console(stderr=True)
    title = "Pipeline cannot be loaded" if code == LOAD_ERROR_EXIT else "Error"
    console.print(
        Panel(
            escape(str(error)),
            title=f"[bold red]{title}[/bold red]",
            subtitle=type(error).__name__,
            border_style="red",
        )
    )
    sys.exit(code)
