"""Config command - Manage Wellspring configuration."""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel

from wellspring.config import get_config, load_config, save_default_config

console = Console()


@click.group()
def config() -> None:
    """Manage Wellspring configuration.

    Configuration is loaded from (in priority order):
    1. Environment variables (WELLSPRING_*)
    2. .wellspring/config.yaml (project-local)
    3. ~/.wellspring/config.yaml (user-global)
    4. Built-in defaults

    \b
    Environment overrides:
        WELLSPRING_EXECUTION_MAX_WORKERS=4 wellspring run
        WELLSPRING_FILES_TRUST_MTIME=false wellspring outdated
    """
    pass


@config.command()
@click.option("--path", type=click.Path(dir_okay=False), default=".wellspring/config.yaml",
              show_default=True, help="Where to write the config file")
def init(path: str) -> None:
    """Create a default config file."""
    saved_path = save_default_config(path)
    console.print(f"[green]✓ Config file created:[/green] {saved_path}")
    console.print("\n[dim]Edit this file to customize Wellspring behavior.[/dim]")


@config.command(name="show")
@click.option("--path", type=click.Path(dir_okay=False), default=None, help="Config file path")
def show_config(path: str | None) -> None:
    """Show the effective configuration."""
    cfg = load_config(path) if path else get_config()

    console.print(Panel("[bold]Wellspring Configuration[/bold]", border_style="cyan"))

    console.print("\n[cyan]Store[/cyan]")
    console.print(f"  Path: {cfg.store.path}")

    console.print("\n[cyan]Execution[/cyan]")
    console.print(f"  Max workers: {cfg.execution.max_workers}")

    console.print("\n[cyan]Files[/cyan]")
    console.print(f"  Trust mtime: {cfg.files.trust_mtime}")

    console.print("\n[cyan]Workspace[/cyan]")
    console.print(f"  Capture: {cfg.workspace.capture}")
    console.print(f"  Directory: {cfg.workspace_path}")

    console.print("\n[cyan]Logging[/cyan]")
    console.print(f"  Persist: {cfg.logging.persist}")
    console.print(f"  Level: {cfg.logging.level or 'default'}")

    console.print("\n[dim]Config sources:[/dim]")
    for source in (Path(".wellspring/config.yaml"), Path.home() / ".wellspring" / "config.yaml"):
        if source.exists():
            console.print(f"  [green]✓[/green] {source}")
        else:
            console.print(f"  [dim]○[/dim] {source} (not found)")
