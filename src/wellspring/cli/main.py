"""Main CLI entry point.

Commands:
    wellspring run          - Execute outdated targets
    wellspring outdated     - Show what the next run would execute, and why
    wellspring graph        - Show the dependency graph (table, Mermaid, JSON)
    wellspring read         - Print a target's result
    wellspring meta         - Show fingerprint metadata
    wellspring reset        - Clear fingerprints, values, and tracked files
    wellspring workspace    - Inspect and reproduce failure workspaces
    wellspring config       - Manage configuration
"""

from __future__ import annotations

from pathlib import Path
from pprint import pformat

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from wellspring import __version__
from wellspring.cli.config_cmd import config
from wellspring.cli.error_handler import handle_error
from wellspring.cli.helpers import echo_json, open_pipeline
from wellspring.cli.workspace_cmd import workspace
from wellspring.config import load_config
from wellspring.foundation.errors import StoreError
from wellspring.foundation.logging import configure_logging
from wellspring.incremental.executor import RunReport

console = Console()


@click.group()
@click.option(
    "--pipeline",
    "-p",
    "pipeline_path",
    default="pipeline.yaml",
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Pipeline definition file",
)
@click.option(
    "--store",
    "store_path",
    default=None,
    type=click.Path(file_okay=False),
    help="Store directory (default: from config, .wellspring)",
)
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="Config file path")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    pipeline_path: str,
    store_path: str | None,
    config_path: str | None,
    debug: bool,
) -> None:
    """Wellspring: incremental pipelines of cached Python targets.

    \b
    Run everything that is out of date:
        wellspring run

    \b
    See what would run, and why:
        wellspring outdated

    \b
    Inspect results:
        wellspring read summary
        wellspring meta status execution_time_ms
    """
    cfg = load_config(config_path)
    store = Path(store_path) if store_path else cfg.store_path

    configure_logging(
        debug=debug or cfg.debug,
        level=cfg.logging.level,
        log_dir=store / "logs" if cfg.logging.persist else None,
    )

    ctx.ensure_object(dict)
    ctx.obj.update(
        {
            "config": cfg,
            "pipeline_path": Path(pipeline_path),
            "store_path": store,
        }
    )


main.add_command(workspace)
main.add_command(config)


# =============================================================================
# Run
# =============================================================================


def _print_report(report: RunReport) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Target")
    table.add_column("Result")
    table.add_column("Detail")

    for name in report.completed:
        warnings = report.warnings.get(name, [])
        detail = f"{len(warnings)} warning(s)" if warnings else ""
        table.add_row(name, "[green]✓ ran[/green]", detail)
    for name, message in report.failed.items():
        table.add_row(name, "[red]✗ failed[/red]", escape(message))
    for name, ancestor in report.cancelled.items():
        table.add_row(name, "[yellow]⊘ cancelled[/yellow]", f"upstream '{ancestor}' failed")
    for name in report.up_to_date:
        table.add_row(name, "[dim]● up to date[/dim]", "")

    console.print(table)
    console.print(
        f"\n[bold]Summary:[/bold] {len(report.completed)} ran, {len(report.failed)} failed, "
        f"{len(report.cancelled)} cancelled, {len(report.up_to_date)} up to date "
        f"[dim]({report.duration_ms:.0f}ms, run {report.run_id})[/dim]"
    )


@main.command()
@click.option("--force", "-f", multiple=True, help="Force re-run of a target (repeatable)")
@click.option("--workers", "-j", type=int, default=None, help="Targets run concurrently per wave")
@click.option("--no-capture", is_flag=True, help="Don't capture failure workspaces")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def run(
    ctx: click.Context,
    force: tuple[str, ...],
    workers: int | None,
    no_capture: bool,
    as_json: bool,
) -> None:
    """Execute every outdated target.

    Exits with status 1 when any target failed.

    \b
    Examples:
        wellspring run
        wellspring run --force model
        wellspring run -j 4
    """
    overrides: dict = {}
    if workers:
        overrides["max_workers"] = workers
    if no_capture:
        overrides["capture_workspaces"] = False

    with open_pipeline(ctx, json_output=as_json, **overrides) as pipeline:
        unknown = sorted(set(force) - set(pipeline.registry.targets))
        if unknown:
            raise click.BadParameter(f"unknown targets: {', '.join(unknown)}", param_hint="--force")

        if as_json:
            report = pipeline.run(force=force)
            echo_json(report.to_dict())
        else:
            report = pipeline.run(
                force=force, on_progress=lambda msg: console.print(f"[dim]{msg}[/dim]")
            )
            _print_report(report)

    ctx.exit(report.exit_code)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def outdated(ctx: click.Context, as_json: bool) -> None:
    """Show which targets the next run would execute, and why."""
    with open_pipeline(ctx, json_output=as_json) as pipeline:
        plan = pipeline.plan()

    if as_json:
        echo_json(plan.to_dict())
        return

    if not plan.to_execute:
        console.print("[green]✓ All targets up to date[/green]")
        return

    console.print(f"[yellow]○ Outdated:[/yellow] {len(plan.to_execute)} target(s)")
    for name in plan.to_execute:
        decision = plan.decisions[name]
        detail = f": {escape(decision.detail)}" if decision.detail else ""
        console.print(f"    {name} [dim]({decision.reason.value}{detail})[/dim]")


@main.command()
@click.option("--mermaid", is_flag=True, help="Output Mermaid flowchart")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def graph(ctx: click.Context, mermaid: bool, as_json: bool) -> None:
    """Show the dependency graph."""
    with open_pipeline(ctx, json_output=as_json) as pipeline:
        dag = pipeline.inspect_graph()
        statuses = pipeline.statuses()

    if mermaid:
        click.echo(dag.to_mermaid(statuses))
        return
    if as_json:
        data = dag.to_dict()
        data["statuses"] = statuses
        echo_json(data)
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Target")
    table.add_column("Kind")
    table.add_column("Depends on")
    table.add_column("Status")
    styles = {"up_to_date": "green", "outdated": "yellow", "error": "red", "cancelled": "yellow"}
    for name in dag.topological_sort():
        status = statuses.get(name, "")
        style = styles.get(status, "white")
        table.add_row(
            name,
            dag[name].kind.value,
            ", ".join(sorted(dag.dependencies(name))) or "-",
            f"[{style}]{status}[/{style}]",
        )
    console.print(table)


@main.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def read(ctx: click.Context, name: str, as_json: bool) -> None:
    """Print the result of a target's last successful run."""
    with open_pipeline(ctx, json_output=as_json) as pipeline:
        try:
            value = pipeline.read_result(name)
        except StoreError as e:
            handle_error(e, json_output=as_json)

    if as_json:
        echo_json(value)
    else:
        click.echo(pformat(value))


@main.command()
@click.argument("fields", nargs=-1)
@click.option("--target", "-t", "targets", multiple=True, help="Restrict to a target (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def meta(ctx: click.Context, fields: tuple[str, ...], targets: tuple[str, ...], as_json: bool) -> None:
    """Show fingerprint metadata.

    \b
    Examples:
        wellspring meta
        wellspring meta status execution_time_ms skip_count
        wellspring meta error -t model --json
    """
    with open_pipeline(ctx, json_output=as_json) as pipeline:
        try:
            rows = pipeline.metadata(*fields, names=targets or None)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="FIELDS") from e

    if as_json:
        echo_json(rows)
        return

    if not rows:
        console.print("[yellow]No targets have run yet.[/yellow]")
        return

    columns = list(rows[0]) if fields else ["name", "kind", "status", "output_digest",
                                            "execution_time_ms", "skip_count", "error"]
    table = Table(show_header=True, header_style="bold")
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*[_cell(row.get(column)) for column in columns])
    console.print(table)


def _cell(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
@click.pass_context
def reset(ctx: click.Context, yes: bool) -> None:
    """Clear all fingerprints, stored values, and tracked files.

    Failure workspaces are kept; use `wellspring workspace purge`.
    """
    if not yes:
        click.confirm("Clear all fingerprints, stored values, and tracked files?", abort=True)

    with open_pipeline(ctx) as pipeline:
        pipeline.reset()
    console.print("[green]✓ Store reset[/green]")
