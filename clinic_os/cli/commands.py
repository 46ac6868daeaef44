"""CLI commands for clinic_os."""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from clinic_os.config import get_settings

app = typer.Typer(
    name="clinic-os",
    help="Therapy session scheduling and lifecycle management",
    add_completion=False,
)
console = Console()


def _parse_uuid(value: str, name: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {name}: {value}[/red]")
        raise typer.Exit(1)


def _parse_datetime(value: str, name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid {name}: {value} (expected ISO 8601)[/red]")
        raise typer.Exit(1)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting clinic_os API server on {host}:{port}")
    uvicorn.run(
        "clinic_os.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def init_db():
    """Create the database schema."""
    from clinic_os.core.database import get_database_url, init_db as create_schema

    asyncio.run(create_schema())
    console.print(f"[green]Schema ready at {get_database_url()}[/green]")


@app.command()
def slots(
    practitioner_id: str = typer.Argument(..., help="Practitioner UUID"),
    day: str = typer.Argument(..., help="Date (YYYY-MM-DD)"),
    duration: Optional[int] = typer.Option(None, "--duration", "-d", help="Slot length in minutes"),
    therapy_id: Optional[str] = typer.Option(None, "--therapy", "-t", help="Use this therapy's duration"),
):
    """List bookable slots for a practitioner on one day."""
    from clinic_os.core.database import get_session_factory
    from clinic_os.scheduling.errors import SchedulingError
    from clinic_os.scheduling.service import SchedulingService

    pid = _parse_uuid(practitioner_id, "practitioner_id")
    tid = _parse_uuid(therapy_id, "therapy_id") if therapy_id else None
    try:
        target = date.fromisoformat(day)
    except ValueError:
        console.print(f"[red]Invalid date: {day}[/red]")
        raise typer.Exit(1)

    service = SchedulingService(get_session_factory())
    try:
        found = asyncio.run(
            service.list_available_slots(pid, target, duration_minutes=duration, therapy_id=tid)
        )
    except SchedulingError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)

    if not found:
        console.print(f"[yellow]No available slots on {target}.[/yellow]")
        return

    tz = service.resolver.policy.tz
    table = Table(title=f"Available slots {target} ({found[0].duration_minutes} min)")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Slot ID")
    for slot in found:
        table.add_row(
            slot.start_time.astimezone(tz).strftime("%H:%M"),
            slot.end_time.astimezone(tz).strftime("%H:%M"),
            slot.slot_id,
        )
    console.print(table)


@app.command()
def sweep(
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", help="Seconds between passes (default from settings)"
    ),
):
    """Mark no-shows and auto-complete overdue sessions."""
    from clinic_os.core.database import get_session_factory
    from clinic_os.events import create_dispatcher_from_settings
    from clinic_os.scheduling.sweep import SessionSweeper

    sweeper = SessionSweeper(get_session_factory(), dispatcher=create_dispatcher_from_settings())

    if once:
        report = asyncio.run(sweeper.run_once())
        table = Table(title="Sweep Report")
        table.add_column("Rule")
        table.add_column("Sessions")
        table.add_row("no-show", str(len(report.no_shows)))
        table.add_row("auto-completed", str(len(report.auto_completed)))
        table.add_row("stuck completed", str(len(report.stuck_completed)))
        console.print(table)
        for error in report.errors:
            console.print(f"[red]{error}[/red]")
        return

    console.print("[bold]Starting session sweeper...[/bold]")
    console.print("Press Ctrl+C to stop\n")
    try:
        asyncio.run(sweeper.run_forever(interval_seconds=interval))
    except KeyboardInterrupt:
        sweeper.stop()
        console.print("\n[yellow]Sweeper stopped.[/yellow]")


@app.command()
def quote(
    start: str = typer.Argument(..., help="Session start (ISO 8601)"),
    price: str = typer.Argument(..., help="Session price"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate as of this instant"),
):
    """Show the cancellation fee and refund for a session."""
    from clinic_os.scheduling.policy import quote_cancellation

    start_time = _parse_datetime(start, "start")
    as_of = _parse_datetime(now, "now") if now else datetime.now(timezone.utc)
    try:
        amount = Decimal(price)
    except InvalidOperation:
        console.print(f"[red]Invalid price: {price}[/red]")
        raise typer.Exit(1)

    result = quote_cancellation(start_time, amount, as_of)
    console.print(
        Panel(
            f"[bold]Hours until start:[/bold] {result.hours_until_start:.2f}\n"
            f"[bold]Tier:[/bold] {result.tier}\n"
            f"[bold]Cancellation fee:[/bold] {result.cancellation_fee}\n"
            f"[bold]Refund:[/bold] {result.refund_amount}",
            title="Cancellation Quote",
        )
    )


@app.command()
def version():
    """Show version information."""
    from clinic_os import __version__

    console.print(f"clinic_os v{__version__}")
