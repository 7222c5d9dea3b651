"""Scan commands: scan, search, watch."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any, Awaitable, Callable, TypeVar

import typer

from predalert.config.settings import Settings
from predalert.engine.scanner import ScanReport, Scanner
from predalert.engine.store import EngineStore
from predalert.ingestion.manager import IntakeOrchestrator
from predalert.notify.base import LogNotifier
from predalert.timeutil import format_duration

T = TypeVar("T")


async def _with_engine(settings: Settings, body: Callable[[Scanner], Awaitable[T]]) -> T:
    store = EngineStore.from_settings(settings)
    intake = IntakeOrchestrator.from_settings(settings, store)
    scanner = Scanner.from_settings(settings, intake, store, LogNotifier())
    try:
        return await body(scanner)
    finally:
        await intake.aclose()
        await store.aclose()


def _echo_report(report: ScanReport) -> None:
    if report.status == "skipped":
        typer.echo("Scan already in progress; skipped.")
        return
    typer.echo(
        f"{report.status}: {report.considered} considered, {report.eligible} eligible, "
        f"{report.alerted} alerted, {report.suppressed} suppressed ({report.duration_ms} ms)"
    )
    for name, status in report.sources.items():
        typer.echo(f"  source {name}: {status}")
    for m in report.decisions:
        typer.echo(
            f"  [{m.confidence:3d}|{m.urgency:3d}] {m.category:<13} {format_duration(m.time_to_resolve_ms):>7}  "
            f"{m.title[:60]}"
        )


def health_report(scanner: Scanner, report: ScanReport) -> dict[str, Any]:
    """Last scan summary plus engine health and breaker states."""
    return {
        "scan": report.summary(),
        "health": scanner.store.health.snapshot(),
        "breakers": scanner.store.breaker_states(),
    }


def scan(ctx: typer.Context) -> None:
    """Run one scan cycle across all enabled sources and log the selected alerts."""
    settings = ctx.obj["settings"]
    report = asyncio.run(_with_engine(settings, lambda s: s.run_scan("manual")))
    _echo_report(report)
    if report.status == "failed":
        raise typer.Exit(1)


def search(
    ctx: typer.Context,
    category: str = typer.Argument(..., help="crypto, politics, sports, entertainment, economics (econ), technology (tech), other"),
) -> None:
    """Scan one category and show its top markets."""
    settings = ctx.obj["settings"]
    try:
        report = asyncio.run(_with_engine(settings, lambda s: s.run_search(category)))
    except ValueError as e:
        typer.echo(str(e))
        raise typer.Exit(2)
    _echo_report(report)


def watch(
    ctx: typer.Context,
    interval: int = typer.Option(None, "--interval", "-i", help="Minutes between scans (overrides config)"),
) -> None:
    """Scan on a fixed interval until interrupted."""
    settings: Settings = ctx.obj["settings"]
    minutes = interval or settings.scan_interval_minutes
    stop_event = asyncio.Event()

    async def body(scanner: Scanner) -> None:
        scanner.store.start_sweeper(settings.sweep_interval_sec)
        await scanner.run_forever(minutes, stop=stop_event)

    loop = asyncio.new_event_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    try:
        typer.echo(f"Scanning every {minutes} min (Ctrl+C to stop)...")
        loop.run_until_complete(_with_engine(settings, body))
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()
    typer.echo("Stopped.")


def health(ctx: typer.Context) -> None:
    """Run one scan and print source health, breaker states and error counts as JSON."""
    settings = ctx.obj["settings"]

    async def body(scanner: Scanner) -> dict[str, Any]:
        return health_report(scanner, await scanner.run_scan("health"))

    typer.echo(json.dumps(asyncio.run(_with_engine(settings, body)), indent=2, default=str))
