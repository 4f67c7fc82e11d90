"""Entry point for the CAMS connection test scheduler."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cams.applications.registry import ApplicationRegistry
from cams.config import settings
from cams.health.engine import RunResult
from cams.health.scheduler import ConnectionTestScheduler
from cams.health.store import ResultStore
from cams.schedules.cadence import Cadence, ScheduleValidationError
from cams.schedules.store import ScheduleStore, utcnow

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel(
        f"Starting CAMS connection test scheduler\n"
        f"Registry: {settings.connections_file}  DB: {settings.db_path}\n"
        f"Tick: {settings.scheduler_tick_seconds:g}s  Concurrency: {settings.scheduler_max_concurrency}",
        style="bold green",
    ))
    uvicorn.run(
        "cams.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


async def _check(application_id: str) -> RunResult:
    registry = ApplicationRegistry(settings.connections_file)
    schedules = ScheduleStore(settings.db_path)
    results = ResultStore(schedules, history_limit=settings.history_limit)
    scheduler = ConnectionTestScheduler(
        registry, schedules, results,
        max_concurrency=settings.scheduler_max_concurrency,
        probe_timeout_s=settings.probe_timeout_seconds,
    )
    try:
        return await scheduler.run_now(application_id)
    finally:
        await scheduler.stop()
        results.close()


def run_check(application_id: str) -> int:
    """Test every active connection of an application once and print the results."""
    with console.status(f"[bold green]Testing connections for {application_id}..."):
        run = asyncio.run(_check(application_id))

    table = Table(title=f"{application_id}: {run.status.value}")
    table.add_column("Connection")
    table.add_column("Type")
    table.add_column("Result")
    table.add_column("Latency", justify="right")
    table.add_column("Message")
    for r in run.results:
        outcome = "[green]pass[/green]" if r.success else f"[red]{r.error.value if r.error else 'fail'}[/red]"
        table.add_row(r.connection_id, r.connection_type, outcome, f"{r.latency_ms:.0f}ms", r.message)
    console.print(table)
    console.print(f"[dim]{run.message} in {run.duration_ms:.0f}ms[/dim]")
    return 0 if run.status.value == "pass" else 1


def run_validate(expression: str) -> int:
    try:
        cadence = Cadence.parse(expression)
    except ScheduleValidationError as e:
        console.print(f"[red]Invalid:[/red] {e}")
        return 1
    console.print(f"[green]Valid:[/green] {cadence.describe()}")
    console.print(f"Next run: {cadence.next_after(utcnow()).isoformat()}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="CAMS Connection Test Scheduler")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server and scheduler")

    check_parser = sub.add_parser("check", help="Test an application's connections once")
    check_parser.add_argument("application_id", help="Application id from the registry")

    validate_parser = sub.add_parser("validate-cadence", help="Validate an interval or cron cadence")
    validate_parser.add_argument("expression", help="e.g. '5m' or '*/15 * * * *'")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "check":
        sys.exit(run_check(args.application_id))
    elif args.command == "validate-cadence":
        sys.exit(run_validate(args.expression))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
