"""Argus CLI — operator commands for carrier portal scraper sessions.

Mirrors the HTTP API and adds an interactive ``run`` command that walks one
session end to end: start, wait for the operator to log in, confirm, scrape.
Uses Typer for argument parsing and Rich for formatted terminal output.

Usage::

    python -m argus.cli --help
    python -m argus.cli carriers
    python -m argus.cli run --carrier GTL --job-name "GTL weekly"
    python -m argus.cli status <session-id>
    python -m argus.cli export <job-id> --format csv --output gtl.csv
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from argus.carriers import carrier_names, get_carrier_config
from argus.config import settings
from argus.context import ServiceContext
from argus.errors import ArgusError
from argus.scraper.export import export_filename, to_csv, to_json
from argus.scraper.models import SessionRecord, SessionStatus

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & console setup
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="argus",
    help="Argus carrier portal scraper — start, confirm, scrape and export sessions.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True, style="bold red")

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("argus.cli")

STATUS_COLORS = {
    "initializing": "white",
    "waiting_for_login": "yellow",
    "ready": "cyan",
    "scraping": "blue",
    "completed": "green",
    "failed": "red",
}

# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------


def _run(coro: Awaitable[T]) -> T:
    """Execute a coroutine from synchronous CLI context."""
    return asyncio.run(coro)


async def _with_context(fn: Callable[[ServiceContext], Awaitable[T]]) -> T:
    context = ServiceContext.from_settings(settings)
    try:
        await context.startup()
        return await fn(context)
    finally:
        await context.aclose()


def _call(fn: Callable[[ServiceContext], Awaitable[T]], action: str) -> T:
    """Run ``fn`` in a fresh context, turning failures into exit code 1."""
    try:
        return _run(_with_context(fn))
    except ArgusError as exc:
        err_console.print(f"{action} failed: {exc}")
        raise typer.Exit(1)
    except Exception as exc:
        err_console.print(f"{action} failed: {exc}")
        logger.exception("CLI %s command failed", action)
        raise typer.Exit(1)


def _parse_id(value: str, label: str = "session id") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        err_console.print(f"Invalid {label}: {value}")
        raise typer.Exit(1)


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _print_session(record: SessionRecord) -> None:
    table = Table(title=f"Session {record.id}", box=box.ROUNDED)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Status", _colored(record.status.value))
    table.add_row("Page", f"{record.current_page} / {record.total_pages or '?'}")
    table.add_row("Scraped", str(record.scraped_count))
    table.add_row("Browser", record.browser_url or "—")
    table.add_row("Updated", str(record.updated_at or "—"))
    if record.error_message:
        table.add_row("Error", f"[red]{record.error_message}[/red]")
    if record.job is not None:
        table.add_row("Job", f"{record.job.job_name} ({record.job.id})")
        table.add_row("Carrier", record.job.carrier_name)
        table.add_row("Job status", _colored(record.job.status.value))
        table.add_row("Job records", f"{record.job.scraped_records} scraped / {record.job.total_records} total")
    console.print(table)


# ---------------------------------------------------------------------------
# Command: carriers
# ---------------------------------------------------------------------------


@app.command("carriers")
def carriers() -> None:
    """List registered carrier portals and whether credentials are configured."""
    table = Table(title="Carrier Portals", box=box.ROUNDED)
    table.add_column("Carrier", style="cyan", no_wrap=True)
    table.add_column("Login")
    table.add_column("Portal")
    table.add_column("Max Pages", justify="right")
    table.add_column("Rate Limit", justify="right")
    table.add_column("Credentials")
    for name in carrier_names():
        cfg = get_carrier_config(name, settings)
        table.add_row(
            name,
            cfg.login_mode.value,
            cfg.portal_url,
            str(cfg.max_pages or settings.scrape_max_pages),
            f"{cfg.rate_limit_ms if cfg.rate_limit_ms is not None else settings.scrape_rate_limit_ms}ms",
            "[green]yes[/green]" if cfg.username and cfg.password else "[yellow]no[/yellow]",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Commands: session lifecycle
# ---------------------------------------------------------------------------


@app.command("start")
def start(
    job_name: str = typer.Option(..., "--job-name", "-n", help="Human-readable job name"),
    carrier: Optional[str] = typer.Option(
        None, "--carrier", "-c", help="Carrier (default: settings.default_carrier)"
    ),
    user: str = typer.Option("anonymous", "--user", "-u", help="Requesting user e-mail"),
) -> None:
    """Create a job and a session; prepares the browser for automatic-login carriers."""
    result = _call(
        lambda ctx: ctx.manager.start(job_name, requested_by=user, carrier_name=carrier),
        "Start",
    )
    console.print(
        Panel(
            f"[bold cyan]{result.message}[/bold cyan]\n"
            f"Session: [yellow]{result.session_id}[/yellow]\n"
            f"Job:     [yellow]{result.job_id}[/yellow]\n"
            f"Status:  {_colored(result.status.value)}",
            title="Session Started",
            expand=False,
        )
    )


@app.command("confirm")
def confirm(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Confirm the operator has logged in to the portal."""
    sid = _parse_id(session_id)
    record = _call(lambda ctx: ctx.manager.confirm_ready(sid), "Confirm")
    console.print(f"Session {sid} is {_colored(record.status.value)}")


@app.command("scrape")
def scrape(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Scrape a ready session in the foreground until it completes or fails."""
    sid = _parse_id(session_id)

    async def _scrape(ctx: ServiceContext) -> SessionRecord:
        return await ctx.manager.scrape(sid)

    with console.status("[bold green]Scraping...[/bold green]"):
        record = _call(_scrape, "Scrape")
    _print_session(record)
    if record.status is SessionStatus.FAILED:
        raise typer.Exit(1)


@app.command("status")
def status(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Show a session and its job."""
    sid = _parse_id(session_id)
    _print_session(_call(lambda ctx: ctx.manager.status(sid), "Status"))


@app.command("stop")
def stop(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Stop a session; it is recorded as failed with "Stopped by user"."""
    sid = _parse_id(session_id)
    record = _call(lambda ctx: ctx.manager.stop(sid), "Stop")
    console.print(f"Session {sid} is {_colored(record.status.value)}: {record.error_message}")


@app.command("retry")
def retry(session_id: str = typer.Argument(..., help="Failed session id")) -> None:
    """Start a new session for the job of a failed session."""
    sid = _parse_id(session_id)
    result = _call(lambda ctx: ctx.manager.retry(sid), "Retry")
    console.print(
        Panel(
            f"[bold cyan]{result.message}[/bold cyan]\n"
            f"New session: [yellow]{result.session_id}[/yellow]\n"
            f"Job:         [yellow]{result.job_id}[/yellow]",
            title="Session Retried",
            expand=False,
        )
    )


@app.command("sessions")
def sessions(
    status_filter: Optional[str] = typer.Option(
        None, "--status", "-s", help="Only sessions in this status"
    ),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum rows"),
) -> None:
    """List recent sessions."""
    wanted: Optional[SessionStatus] = None
    if status_filter:
        try:
            wanted = SessionStatus(status_filter)
        except ValueError:
            err_console.print(f"Unknown status: {status_filter}")
            raise typer.Exit(1)

    records = _call(lambda ctx: ctx.store.list_sessions(wanted, limit=limit), "Sessions")
    if not records:
        console.print("[yellow]No sessions found.[/yellow]")
        return

    table = Table(title="Recent Sessions", box=box.ROUNDED)
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Carrier")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Page", justify="right")
    table.add_column("Scraped", justify="right")
    table.add_column("Updated")
    for record in records:
        table.add_row(
            str(record.id),
            record.job.carrier_name if record.job else "—",
            record.job.job_name if record.job else "—",
            _colored(record.status.value),
            f"{record.current_page}/{record.total_pages or '?'}",
            str(record.scraped_count),
            str(record.updated_at or "—"),
        )
    console.print(table)


@app.command("export")
def export(
    job_id: str = typer.Argument(..., help="Job id"),
    fmt: str = typer.Option("csv", "--format", "-f", help="csv or json"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output file (default: policies_<job>.<fmt>)"
    ),
) -> None:
    """Write a job's stored policies to a CSV or JSON file."""
    jid = _parse_id(job_id, "job id")
    fmt = fmt.lower()
    if fmt not in ("csv", "json"):
        err_console.print(f"Unsupported format: {fmt}")
        raise typer.Exit(1)

    async def _load(ctx: ServiceContext) -> list[dict[str, Any]]:
        await ctx.store.get_job(jid)
        return await ctx.store.list_policies(jid)

    policies = _call(_load, "Export")
    if not policies:
        err_console.print("No data to export")
        raise typer.Exit(1)

    path = output or Path(export_filename(jid, fmt))
    path.write_text(to_json(policies) if fmt == "json" else to_csv(policies), encoding="utf-8")
    console.print(f"[green]Wrote {len(policies)} policies to {path}[/green]")


@app.command("expire-stale")
def expire_stale(
    minutes: Optional[int] = typer.Option(
        None, "--minutes", "-m", help="Override login_timeout_minutes"
    ),
) -> None:
    """Fail sessions stuck waiting for operator login or stalled mid-scrape."""
    wait = timedelta(minutes=minutes) if minutes is not None else None
    expired = _call(lambda ctx: ctx.manager.expire_stale_sessions(wait), "Expire")
    console.print(f"Expired [bold]{expired}[/bold] session(s)")


# ---------------------------------------------------------------------------
# Command: run (interactive)
# ---------------------------------------------------------------------------


@app.command("run")
def run(
    job_name: str = typer.Option(..., "--job-name", "-n", help="Human-readable job name"),
    carrier: Optional[str] = typer.Option(None, "--carrier", "-c", help="Carrier name"),
    user: str = typer.Option("anonymous", "--user", "-u", help="Requesting user e-mail"),
) -> None:
    """Start a session, wait for the operator to log in, then scrape it.

    The browser handle is held by this process for the whole flow, so the
    operator logs in to the same profile that is then scraped.
    """

    async def _flow(ctx: ServiceContext) -> SessionRecord:
        result = await ctx.manager.start(job_name, requested_by=user, carrier_name=carrier)
        console.print(
            Panel(
                f"[bold cyan]{result.message}[/bold cyan]\n"
                f"Session: [yellow]{result.session_id}[/yellow]",
                title=f"{(carrier or settings.default_carrier).upper()} Session",
                expand=False,
            )
        )
        if result.status is not SessionStatus.WAITING_FOR_LOGIN:
            return await ctx.manager.status(result.session_id)

        proceed = await asyncio.to_thread(
            typer.confirm, "Logged in and ready to scrape?", default=True
        )
        if not proceed:
            return await ctx.manager.stop(result.session_id)

        await ctx.manager.confirm_ready(result.session_id)
        with console.status("[bold green]Scraping...[/bold green]"):
            return await ctx.manager.scrape(result.session_id)

    record = _call(_flow, "Run")
    _print_session(record)
    if record.status is SessionStatus.FAILED:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Command: health
# ---------------------------------------------------------------------------


@app.command("health")
def health() -> None:
    """Run a system health check and display status."""
    console.print(Panel("[bold cyan]Argus System Health Check[/bold cyan]", expand=False))

    try:
        from argus.tasks import _health_check_async

        with console.status("[bold green]Running health checks...[/bold green]"):
            report = _run(_health_check_async())

        status_value = report.get("status", "unknown")
        status_color = {"healthy": "green", "unhealthy": "red"}.get(status_value, "white")
        console.print(f"\nOverall Status: [{status_color}]{status_value.upper()}[/{status_color}]")

        table = Table(box=box.SIMPLE)
        table.add_column("Check", style="cyan")
        table.add_column("Result", style="bold")
        table.add_row("Database", str(report.get("database", "N/A")))
        table.add_row("Waiting for Login", str(report.get("waiting_for_login", "N/A")))
        table.add_row("Scraping", str(report.get("scraping", "N/A")))
        table.add_row("Checked At", str(report.get("timestamp", "N/A")))
        console.print(table)

    except Exception as exc:
        err_console.print(f"Health check failed: {exc}")
        logger.exception("CLI health command failed")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
