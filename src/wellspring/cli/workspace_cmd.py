"""Workspace commands: inspect and reproduce failed targets.

Commands:
    wellspring workspace list       - Targets with a captured workspace
    wellspring workspace show       - Error, bindings, and command of a workspace
    wellspring workspace reproduce  - Re-run the failing command in its workspace
    wellspring workspace purge      - Delete every workspace
"""

from __future__ import annotations

import traceback
from datetime import datetime

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from wellspring.cli.error_handler import handle_error
from wellspring.cli.helpers import echo_json, open_capturer
from wellspring.foundation.errors import StoreError

console = Console()


@click.group()
def workspace() -> None:
    """Failure workspaces of failed targets.

    \b
    A workspace holds the upstream values, capabilities, and random state a
    failing command saw, so the failure can be reproduced and debugged.

    \b
        wellspring workspace list
        wellspring workspace reproduce model
    """
    pass


@workspace.command(name="list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_workspaces(ctx: click.Context, as_json: bool) -> None:
    """List targets with a captured workspace."""
    capturer = open_capturer(ctx)
    names = capturer.list()

    if as_json:
        echo_json([capturer.load(name).summary() for name in names])
        return

    if not names:
        console.print("[dim]No workspaces captured.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Target")
    table.add_column("Error")
    table.add_column("Captured")
    for name in names:
        snapshot = capturer.load(name)
        captured = datetime.fromtimestamp(snapshot.captured_at).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(name, escape(f"{snapshot.error_type}: {snapshot.error_message}"), captured)
    console.print(table)


@workspace.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def show(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the error, bindings, and command of a workspace."""
    try:
        snapshot = open_capturer(ctx).load(name)
    except StoreError as e:
        handle_error(e)

    if as_json:
        echo_json(snapshot.summary())
        return

    console.print(
        Panel(
            escape(f"{snapshot.error_type}: {snapshot.error_message}"),
            title=f"[bold]Workspace: {name}[/bold]",
            border_style="red",
        )
    )

    console.print("\n[cyan]Bindings[/cyan]")
    for key in sorted(snapshot.bindings):
        console.print(f"  {key}: [dim]{type(snapshot.bindings[key]).__name__}[/dim]")
    for key in sorted(snapshot.results):
        console.print(f"  read_result({key!r}): [dim]{type(snapshot.results[key]).__name__}[/dim]")
    if not snapshot.bindings and not snapshot.results:
        console.print("  [dim](none)[/dim]")

    if snapshot.capabilities:
        console.print("\n[cyan]Capabilities[/cyan]")
        for declaration, version in sorted(snapshot.capabilities.items()):
            console.print(f"  {declaration} [dim]{version}[/dim]")

    console.print(f"\n[cyan]Seed[/cyan] {snapshot.seed}")

    source = snapshot.command if snapshot.command is not None else snapshot.document
    if source:
        lexer = "python" if snapshot.command is not None else "markdown"
        console.print("\n[cyan]Source[/cyan]")
        console.print(Syntax(source, lexer, line_numbers=True))

    for warning in snapshot.warnings:
        console.print(f"\n[yellow]⚠ {escape(warning)}[/yellow]")


@workspace.command()
@click.argument("name")
@click.pass_context
def reproduce(ctx: click.Context, name: str) -> None:
    """Re-run a failing command in its captured workspace.

    Exits with status 1 when the failure reproduces.
    """
    try:
        snapshot = open_capturer(ctx).load(name)
    except StoreError as e:
        handle_error(e)

    try:
        value = snapshot.reproduce()
    except (Exception, SystemExit) as e:
        console.print(
            Panel(
                escape("".join(traceback.format_exception(e)).rstrip()),
                title=f"[bold red]Reproduced failure of {name}[/bold red]",
                border_style="red",
            )
        )
        ctx.exit(1)

    console.print(f"[yellow]Command of {name} completed; the failure did not reproduce.[/yellow]")
    console.print(repr(value))


@workspace.command()
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def purge(ctx: click.Context, yes: bool) -> None:
    """Delete every workspace."""
    if not yes:
        click.confirm("Delete all failure workspaces?", abort=True)
    count = open_capturer(ctx).purge()
    console.print(f"[green]✓ Removed {count} workspace(s)[/green]")
