"""Activity ledger CLI - serve the API and run sync jobs by hand."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer
from pydantic import BaseModel
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import settings
from .errors import LedgerError

app = typer.Typer(
    name="ledger",
    help="Learning activity ledger - webhook ingestion, backfill and repair",
    no_args_is_help=True,
)
console = Console()

repair_app = typer.Typer(help="Fill missing fields on stored events")
app.add_typer(repair_app, name="repair")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _ensure_tables() -> None:
    if "sqlite" in settings.database_url:
        from .database import engine
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


def _print_report(report: BaseModel, title: str, json_output: bool = False) -> None:
    data = report.model_dump(mode="json")
    if json_output:
        console.print_json(json.dumps(data))
        return

    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in data.items():
        if isinstance(value, list):
            continue
        table.add_row(key, str(value))
    console.print(table)

    for key in ("ambiguous", "error_messages"):
        items = data.get(key) or []
        if items:
            lines = "\n".join(json.dumps(item) if isinstance(item, dict) else str(item) for item in items)
            console.print(Panel(lines, title=key.replace("_", " ").title(), border_style="yellow"))


@app.command("serve")
def serve(
    port: int = typer.Option(8030, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the ledger API."""
    import uvicorn

    console.print(f"[bold cyan]Starting Activity Ledger at http://{host}:{port}[/bold cyan]")
    uvicorn.run("activity_ledger.app:app", host=host, port=port, reload=reload)


@app.command("backfill")
def backfill(
    group_id: str = typer.Argument(..., help="LMS group id"),
    workers: int = typer.Option(None, "--workers", "-w", help="Concurrent subject workers"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Pull quiz attempts and lesson completions for a group."""
    _configure_logging(verbose)
    if not settings.lms_configured:
        console.print("[red]LMS credentials missing. Set LEDGER_LMS_SUBDOMAIN and an API key or token.[/red]")
        raise typer.Exit(1)

    from .database import async_session_factory
    from .sync.backfill import run_backfill
    from .sync.lms_client import LMSClient

    async def _run():
        await _ensure_tables()
        async with LMSClient() as client:
            return await run_backfill(async_session_factory, client, group_id, max_workers=workers)

    try:
        report = asyncio.run(_run())
    except LedgerError as e:
        console.print(f"[red]Backfill failed: {e.message}[/red]")
        raise typer.Exit(1)
    _print_report(report, f"Backfill group {group_id}", json_output)


@app.command("import-csv")
def import_csv(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV file"),
    profile: str = typer.Option("activity", "--profile", "-p", help="Import profile: activity or quiz_export"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Import a historical activity spreadsheet."""
    _configure_logging(verbose)
    from .database import async_session_factory
    from .sync.csv_import import import_spreadsheet

    csv_text = path.read_text(encoding="utf-8-sig")

    async def _run():
        await _ensure_tables()
        async with async_session_factory() as db:
            return await import_spreadsheet(db, csv_text, profile)

    try:
        report = asyncio.run(_run())
    except LedgerError as e:
        console.print(f"[red]Import failed: {e.message}[/red]")
        raise typer.Exit(1)
    _print_report(report, f"Import {path.name}", json_output)


def _run_repair(job, title: str, json_output: bool) -> None:
    from .database import async_session_factory

    async def _run():
        await _ensure_tables()
        async with async_session_factory() as db:
            return await job(db)

    try:
        report = asyncio.run(_run())
    except LedgerError as e:
        console.print(f"[red]Repair failed: {e.message}[/red]")
        raise typer.Exit(1)
    _print_report(report, title, json_output)


@repair_app.command("payload")
def repair_payload(
    field: list[str] = typer.Option(None, "--field", "-f", help="Field to repair (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Recover null fields from each event's raw payload."""
    _configure_logging(False)
    from .services import repair_svc

    _run_repair(
        lambda db: repair_svc.repair_from_payloads(db, field or None, dry_run=dry_run),
        "Payload repair",
        json_output,
    )


@repair_app.command("corrections")
def repair_corrections(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Correction CSV file"),
    field: list[str] = typer.Option(None, "--field", "-f", help="Field to repair (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Apply a correction spreadsheet to existing events."""
    _configure_logging(False)
    from .services import repair_svc

    csv_text = path.read_text(encoding="utf-8-sig")
    _run_repair(
        lambda db: repair_svc.repair_from_corrections(db, csv_text, field or None, dry_run=dry_run),
        "Correction repair",
        json_output,
    )


@repair_app.command("course-names")
def repair_course_names(
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Fill missing course ids/names from the content -> course map."""
    _configure_logging(False)
    from .services import repair_svc

    _run_repair(lambda db: repair_svc.repair_course_names(db, dry_run=dry_run), "Course name repair", json_output)


@repair_app.command("rebuild")
def repair_rebuild(
    dry_run: bool = typer.Option(False, "--dry-run"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Replay stored webhook deliveries that never produced an event."""
    _configure_logging(False)
    from .services import repair_svc

    _run_repair(lambda db: repair_svc.rebuild_from_raw_log(db, dry_run=dry_run), "Raw log rebuild", json_output)


if __name__ == "__main__":
    app()
