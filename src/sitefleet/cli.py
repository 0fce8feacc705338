"""
Typer application for the ``sitefleet`` command.

Commands:
    init-db           create the sqlite schema
    run               start the trigger scheduler and block until interrupted
    sweep TRIGGER     run one trigger now, through the run ledger
    triggers          show the trigger table joined with the run ledger
    recheck-domain    explicit domain recheck (back to ns_pending)
    reschedule-post   put a failed or draft post back on the schedule
"""

from __future__ import annotations

import json
import signal
import threading
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from sitefleet import __version__
from sitefleet.db import Database
from sitefleet.errors import FleetError
from sitefleet.logging import configure_logging
from sitefleet.reconcilers.domains import request_recheck
from sitefleet.reconcilers.posts import reschedule_post
from sitefleet.runtime import Fleet, default_trigger_table
from sitefleet.scheduling.ledger import RunLedger
from sitefleet.settings import FleetSettings, get_settings
from sitefleet.store import EntityStore
from sitefleet.timestamps import from_iso8601, to_iso8601, utc_now

app = typer.Typer(
    name="sitefleet",
    help="sitefleet: periodic reconciliation for a fleet of sites.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sitefleet {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Run the scheduler, sweep triggers, fix entities."""


# ── Helpers ──────────────────────────────────────────────────────────────


def _settings(database: str | None) -> FleetSettings:
    settings = get_settings()
    if database:
        settings = settings.model_copy(update={"database_path": Path(database)})
    configure_logging(settings.log_level, json_format=settings.json_logs)
    return settings


def _fail(exc: FleetError) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
    raise typer.Exit(code=1)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("init-db")
def init_db(
    database: str | None = typer.Option(None, "--database", "-d", help="sqlite path"),
) -> None:
    """Create the database schema."""
    settings = _settings(database)
    Database.open(settings.database_path).close()
    console.print(f"[green]✓[/green] Schema ready at {settings.database_path}")


@app.command("run")
def run(
    database: str | None = typer.Option(None, "--database", "-d", help="sqlite path"),
) -> None:
    """Start the scheduler loop; Ctrl-C stops it gracefully."""
    settings = _settings(database)
    try:
        fleet = Fleet.build(settings)
    except FleetError as exc:
        _fail(exc)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    fleet.start()
    console.print(
        f"[green]Scheduler running[/green] with {len(fleet.scheduler.triggers)} triggers. "
        "Press Ctrl-C to stop."
    )
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        fleet.close()
        console.print("Scheduler stopped.")


@app.command("sweep")
def sweep(
    trigger: str = typer.Argument(..., help="Trigger name, e.g. check-servers"),
    database: str | None = typer.Option(None, "--database", "-d", help="sqlite path"),
) -> None:
    """Run one trigger now, honouring single-flight."""
    settings = _settings(database)
    try:
        fleet = Fleet.build(settings)
        try:
            ran = fleet.run_trigger(trigger)
            entry = fleet.ledger.get(trigger)
        finally:
            fleet.close()
    except FleetError as exc:
        _fail(exc)

    if not ran:
        err_console.print(f"[yellow]{trigger} is already running elsewhere; skipped[/yellow]")
        raise typer.Exit(code=1)
    if entry is not None and entry.last_error:
        err_console.print(f"[bold red]{trigger} failed:[/bold red] {entry.last_error}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] {trigger} finished")


@app.command("triggers")
def triggers(
    database: str | None = typer.Option(None, "--database", "-d", help="sqlite path"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show every trigger with its last run."""
    settings = _settings(database)
    db = Database.open(settings.database_path)
    try:
        entries = {e.name: e for e in RunLedger(db).entries()}
    finally:
        db.close()

    rows = []
    for spec in default_trigger_table(settings):
        entry = entries.get(spec.name)
        rows.append({
            "name": spec.name,
            "interval_seconds": int(spec.interval.total_seconds()),
            "running": bool(entry and entry.running),
            "started_at": to_iso8601(entry.started_at) if entry else None,
            "finished_at": to_iso8601(entry.finished_at) if entry else None,
            "run_count": entry.run_count if entry else 0,
            "last_error": entry.last_error if entry else None,
        })

    if json_out:
        console.print_json(json.dumps(rows))
        return

    table = Table(title="Triggers")
    for column in ("Name", "Interval", "Running", "Last start", "Last finish", "Runs", "Last error"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["name"],
            f"{row['interval_seconds']}s",
            "yes" if row["running"] else "no",
            row["started_at"] or "-",
            row["finished_at"] or "-",
            str(row["run_count"]),
            row["last_error"] or "",
        )
    console.print(table)


@app.command("recheck-domain")
def recheck_domain(
    domain_id: int = typer.Argument(..., help="Domain ID"),
    database: str | None = typer.Option(None, "--database", "-d", help="sqlite path"),
) -> None:
    """Put a domain back to ns_pending for the next sweep."""
    settings = _settings(database)
    db = Database.open(settings.database_path)
    try:
        domain = request_recheck(EntityStore(db), domain_id)
    except FleetError as exc:
        _fail(exc)
    finally:
        db.close()
    console.print(f"[green]✓[/green] {domain.hostname} queued for recheck ({domain.status.value})")


@app.command("reschedule-post")
def reschedule(
    post_id: int = typer.Argument(..., help="Post ID"),
    at: str | None = typer.Option(None, "--at", help="ISO-8601 time (default: now)"),
    database: str | None = typer.Option(None, "--database", "-d", help="sqlite path"),
) -> None:
    """Schedule a failed or draft post again."""
    settings = _settings(database)
    try:
        when: datetime = from_iso8601(at) if at else utc_now()
    except ValueError:
        err_console.print(f"[bold red]Error[/bold red]: not an ISO-8601 time: {at}")
        raise typer.Exit(code=2) from None

    db = Database.open(settings.database_path)
    try:
        post = reschedule_post(EntityStore(db), post_id, when)
    except FleetError as exc:
        _fail(exc)
    finally:
        db.close()
    console.print(f"[green]✓[/green] post {post.id} scheduled for {to_iso8601(post.scheduled_at)}")


if __name__ == "__main__":
    app()
