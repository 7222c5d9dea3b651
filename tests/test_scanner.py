"""Scan cycle: dispatch, suppression, single-flight, failure reporting, search, determinism."""

import asyncio

import pytest
import pytest_asyncio

from predalert.cli.scan import health_report
from predalert.config.settings import BreakerConfig, DiversityConfig
from predalert.engine.scanner import Scanner
from predalert.engine.store import EngineStore
from predalert.errors import NetworkOrClientError
from predalert.ingestion.manager import IntakeOrchestrator
from predalert.notify.base import LogNotifier
from predalert.timeutil import MS_IN_MINUTE
from test_orchestrator import StubAdapter, raising, returning, unused_client


class FailingNotifier(LogNotifier):
    async def send_market(self, market):
        raise RuntimeError("webhook down")


@pytest_asyncio.fixture
async def client():
    async with unused_client() as c:
        yield c


def build_scanner(clock, client, adapters, notifier=None, **kwargs):
    store = EngineStore(clock=clock, cache_ttl_ms=0)
    intake = IntakeOrchestrator(adapters, store, client)
    return Scanner(intake, store, notifier or LogNotifier(), **kwargs)


def titled(make_market, titles):
    return [make_market(title=t) for t in titles]


@pytest.mark.asyncio
async def test_scan_dispatches_then_suppresses(clock, client, make_market):
    markets = titled(make_market, ["Bitcoin to 100k?", "Senate election?", "NBA finals game 7?"])
    notifier = LogNotifier()
    scanner = build_scanner(clock, client, [StubAdapter("polymarket", returning(markets), clock)], notifier)

    first = await scanner.run_scan("manual")
    assert first.status == "ok"
    assert (first.considered, first.eligible, first.alerted, first.suppressed) == (3, 3, 3, 0)
    assert first.categories == {"crypto": 1, "politics": 1, "sports": 1}
    assert all(m.confidence >= 30 and m.bucket == "24H" and m.explanations for m in notifier.sent)

    second = await scanner.run_scan("manual")
    assert (second.alerted, second.suppressed) == (0, 3)

    clock.advance(60 * MS_IN_MINUTE)
    third = await scanner.run_scan("manual")
    assert third.alerted == 3
    assert len(notifier.sent) == 6
    assert scanner.store.health.scans_successful == 3


@pytest.mark.asyncio
async def test_concurrent_trigger_is_skipped(clock, client, make_market):
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return [make_market(title="Bitcoin slow")]

    scanner = build_scanner(clock, client, [StubAdapter("polymarket", slow, clock)])
    running = asyncio.create_task(scanner.run_scan("scheduled"))
    await asyncio.sleep(0)
    assert scanner.busy
    skipped = await scanner.run_scan("manual")
    assert skipped.status == "skipped"
    release.set()
    done = await running
    assert done.status == "ok"
    assert done.alerted == 1


@pytest.mark.asyncio
async def test_all_sources_failed_queues_scan_failed_alert(clock, client):
    notifier = LogNotifier()
    adapters = [
        StubAdapter("polymarket", raising(NetworkOrClientError("gamma unreachable")), clock),
        StubAdapter("kalshi", raising(NetworkOrClientError("kalshi unreachable")), clock),
    ]
    scanner = build_scanner(clock, client, adapters, notifier)
    report = await scanner.run_scan("manual")
    assert report.status == "failed"
    assert report.sources == {"polymarket": "failed", "kalshi": "failed"}
    assert sorted(a.source for a in notifier.operational) == ["kalshi", "polymarket", "scan_failed"]
    assert scanner.store.health.scans_failed == 1


@pytest.mark.asyncio
async def test_repeated_dispatch_failures_raise_operational_alert(clock, client, make_market):
    markets = titled(make_market, [f"Bitcoin level {k}" for k in range(5)])
    notifier = FailingNotifier()
    scanner = build_scanner(
        clock,
        client,
        [StubAdapter("polymarket", returning(markets), clock)],
        notifier,
        diversity=DiversityConfig(enabled=False),
    )
    report = await scanner.run_scan("manual")
    assert report.alerted == 0
    assert [a.source for a in notifier.operational] == ["alert_send_failed"]
    assert "Failed to send 5 market alerts" in notifier.operational[0].message
    # failed dispatches are not suppressed
    assert not any(scanner.store.suppressor.is_suppressed(m) for m in markets)


@pytest.mark.asyncio
async def test_search_restricts_to_category(clock, client, make_market):
    markets = titled(make_market, ["Bitcoin to 100k?", "Ethereum to 5k?", "Senate election?"])
    notifier = LogNotifier()
    scanner = build_scanner(clock, client, [StubAdapter("polymarket", returning(markets), clock)], notifier)
    report = await scanner.run_search("crypto")
    assert report.alerted == 2
    assert {m.category for m in notifier.sent} == {"crypto"}
    with pytest.raises(ValueError):
        await scanner.run_search("weather")


@pytest.mark.asyncio
async def test_pipeline_is_deterministic(clock, client, make_market):
    base = titled(make_market, ["Bitcoin to 100k?", "Senate election?", "Fed cut in March?", "Oscar winner?"])

    def decisions():
        scanner = build_scanner(clock, client, [])
        picked = scanner.decide([m.model_copy(deep=True) for m in base], now=clock())
        return [(m.market_id, m.confidence, m.urgency, m.bucket, m.category, tuple(m.explanations)) for m in picked]

    assert decisions() == decisions()


@pytest.mark.asyncio
async def test_search_flushes_source_alerts_and_records_scan(clock, client, make_market):
    notifier = LogNotifier()
    adapters = [
        StubAdapter("polymarket", returning(titled(make_market, ["Bitcoin to 100k?"])), clock),
        StubAdapter("kalshi", raising(NetworkOrClientError("kalshi unreachable")), clock),
    ]
    scanner = build_scanner(clock, client, adapters, notifier)
    report = await scanner.run_search("crypto")
    assert report.status == "degraded"
    assert report.alerted == 1
    assert [a.source for a in notifier.operational] == ["kalshi"]
    assert scanner.store.op_alerts.pending == 0
    assert scanner.store.health.scans_successful == 1
    assert scanner.store.health.alerts_sent == 1


@pytest.mark.asyncio
async def test_health_report_shows_breakers_and_source_health(clock, client, make_market):
    adapters = [
        StubAdapter("polymarket", returning(titled(make_market, ["Bitcoin to 100k?"])), clock),
        StubAdapter("kalshi", raising(NetworkOrClientError("kalshi unreachable")), clock),
    ]
    store = EngineStore(clock=clock, breaker_configs={"kalshi": BreakerConfig(failure_threshold=1)})
    scanner = Scanner(IntakeOrchestrator(adapters, store, client), store, LogNotifier())
    report = await scanner.run_scan("health")
    shown = health_report(scanner, report)
    assert shown["scan"]["status"] == "degraded"
    assert shown["health"]["status"] == "degraded"
    assert shown["health"]["sources"]["kalshi"]["failures"] == 1
    assert shown["health"]["errors"]["by_type"] == {"kalshi_fetch_failed": 1}
    assert shown["breakers"]["kalshi"]["state"] == "OPEN"
    assert shown["breakers"]["polymarket"]["state"] == "CLOSED"
