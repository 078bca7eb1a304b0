"""autoreindex CLI entry point."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from autoreindex import __version__
from autoreindex.config import ConfigError, load_settings
from autoreindex.engine.orchestrator import FatalError, GatingAbort, SessionOrchestrator
from autoreindex.logs import configure_logging
from autoreindex.models import format_size
from autoreindex.postgres.db import open_db

if TYPE_CHECKING:
    from collections.abc import Callable

    from autoreindex.config import Settings
    from autoreindex.models import DatabaseRun
    from autoreindex.postgres.db import Database

logger = logging.getLogger("autoreindex.cli")

_CONNECTION_OPTIONS = [
    click.option(
        "--config",
        "config_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="YAML file with option defaults.",
    ),
    click.option("--host", "-h", default=None, help="Server host or socket directory."),
    click.option("--port", "-p", type=int, default=None, help="Server port."),
    click.option("--username", "-U", default=None, help="Connect as this role."),
    click.option(
        "--dbname", "-d", multiple=True, help="Database to process (repeatable; default: all)."
    ),
    click.option("--exclude-database", multiple=True, help="Database to leave alone (repeatable)."),
    click.option(
        "--maintenance-db",
        default=None,
        help="Database used to discover targets (default: postgres).",
    ),
    click.option(
        "--lock-timeout", type=int, default=None, help="lock_timeout in ms (default: 1000)."
    ),
]

_SCAN_OPTIONS = [
    click.option(
        "--bloat-threshold", type=float, default=None, help="Minimum bloat percent (default: 30)."
    ),
    click.option(
        "--index-min-size", type=int, default=None, help="Minimum index size in MB (default: 1)."
    ),
    click.option(
        "--index-max-size",
        type=int,
        default=None,
        help="Maximum index size in MB (default: 1000000).",
    ),
    click.option(
        "--bloat-detection-strategy",
        default=None,
        help="estimate or exact-scan (default: estimate).",
    ),
    click.option("--sort-order", default=None, help="asc or desc by index size (default: asc)."),
]

_RUN_OPTIONS = [
    click.option("--maintenance-start", default=None, help="Window start, HHMM."),
    click.option(
        "--maintenance-stop", default=None, help="Window stop, HHMM (may wrap past midnight)."
    ),
    click.option(
        "--failed-reindex-limit",
        type=int,
        default=None,
        help="Stop a database after N failed indexes (default: 0, unlimited).",
    ),
    click.option(
        "--parallel-workers",
        type=int,
        default=None,
        help="Parallel maintenance workers per rebuild (default: 0, disabled).",
    ),
    click.option(
        "--on-blocked",
        default=None,
        help="abort-run or skip-database when outside the window or on a standby.",
    ),
    click.option(
        "--create-extensions/--no-create-extensions",
        default=None,
        help="Create pgstattuple/pg_repack when missing (default: on).",
    ),
    click.option(
        "--repack-command", default=None, help="pg_repack executable (default: pg_repack)."
    ),
    click.option(
        "--syslog/--no-syslog", default=None, help="Duplicate log lines to syslog (default: on)."
    ),
]


def _apply(options: list[Callable[[Any], Any]]) -> Callable[[Any], Any]:
    def decorator(func: Any) -> Any:
        for option in reversed(options):
            func = option(func)
        return func

    return decorator


def _load(config_path: Path | None, overrides: dict[str, Any]) -> Settings:
    try:
        return load_settings(config_path, overrides)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _connector(settings: Settings) -> Callable[[str], Database]:
    def connect(dbname: str) -> Database:
        return open_db(settings.connection, dbname, lock_timeout_ms=settings.lock_timeout_ms)

    return connect


@click.group()
@click.version_option(version=__version__, prog_name="autoreindex")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """autoreindex - rebuild bloated B-tree indexes without long locks."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


@main.command()
@_apply(_CONNECTION_OPTIONS + _SCAN_OPTIONS + _RUN_OPTIONS)
@click.pass_context
def run(ctx: click.Context, *, config_path: Path | None, **overrides: Any) -> None:
    """Rebuild bloated indexes in one or all databases.

    Exits 0 after a normal run, when nothing is bloated, and when the run stops
    outside the maintenance window or on a standby; exits 1 on fatal errors.
    """
    quiet: bool = ctx.obj.get("quiet", False)
    settings = _load(config_path, overrides)
    configure_logging(verbose=ctx.obj.get("verbose", False), quiet=quiet, syslog=settings.syslog)

    orchestrator = SessionOrchestrator(settings, _connector(settings))
    try:
        summary = orchestrator.run()
    except GatingAbort as exc:
        summary = exc.summary
    except FatalError as exc:
        logger.error("Fatal: %s", exc)
        sys.exit(1)

    if summary is not None and summary.runs and not quiet:
        _print_runs(summary.runs)


@main.command()
@_apply(_CONNECTION_OPTIONS + _SCAN_OPTIONS)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def scan(
    ctx: click.Context, *, config_path: Path | None, output_json: bool, **overrides: Any
) -> None:
    """List bloated indexes without rebuilding anything."""
    settings = _load(config_path, {**overrides, "syslog": False})
    configure_logging(
        verbose=ctx.obj.get("verbose", False), quiet=ctx.obj.get("quiet", False), syslog=False
    )

    orchestrator = SessionOrchestrator(settings, _connector(settings))
    try:
        runs = orchestrator.survey()
    except FatalError as exc:
        logger.error("Fatal: %s", exc)
        sys.exit(1)

    if output_json:
        payload = [
            {
                "database": run.database,
                "skipped": run.skipped_reason,
                "indexes": [
                    {
                        "index": c.qualified_name,
                        "size_bytes": c.size_bytes,
                        "bloat_ratio": c.bloat_ratio,
                    }
                    for c in run.candidates
                ],
            }
            for run in runs
        ]
        click.echo(json.dumps(payload, indent=2))
        return
    _print_candidates(runs)


def _print_candidates(runs: list[DatabaseRun]) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(title="Bloated indexes")
    table.add_column("Database")
    table.add_column("Index")
    table.add_column("Size", justify="right")
    table.add_column("Bloat", justify="right")

    for run in runs:
        if run.skipped_reason:
            table.add_row(run.database, f"[yellow]skipped: {run.skipped_reason}[/yellow]", "", "")
            continue
        if not run.candidates:
            table.add_row(run.database, "[dim]no bloat indexes found[/dim]", "", "")
        for c in run.candidates:
            table.add_row(
                run.database, c.qualified_name, format_size(c.size_bytes), f"{c.bloat_ratio:.1f}%"
            )
    console.print(table)


def _print_runs(runs: list[DatabaseRun]) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(title="Reindex summary")
    table.add_column("Database")
    table.add_column("Rebuilt", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Released", justify="right")
    table.add_column("Note")

    for run in runs:
        note = run.skipped_reason or ""
        if run.budget_exhausted:
            note = "failed reindex limit reached"
        table.add_row(
            run.database,
            str(run.rebuilt_count),
            str(len(run.reports) - run.rebuilt_count),
            format_size(run.benefit),
            note,
        )
    if len(runs) > 1:
        table.add_row("[bold]total[/bold]", "", "", format_size(sum(r.benefit for r in runs)), "")
    console.print(table)
