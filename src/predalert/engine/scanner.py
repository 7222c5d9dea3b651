"""Scan cycle - intake, evaluate, select, suppress, dispatch. At most one scan in flight."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from predalert.config.settings import DiversityConfig, Settings, Thresholds
from predalert.engine.scoring import score_market
from predalert.engine.selection import (
    bucket_market,
    categorize,
    category_counts,
    ineligibility_reasons,
    resolve_category,
    select_markets,
)
from predalert.engine.store import EngineStore
from predalert.ingestion.manager import IntakeOrchestrator
from predalert.models import Market
from predalert.notify.base import Notifier

log = structlog.get_logger(__name__)

SEARCH_LIMIT = 10
# Ineligibility reasons are logged for the first few markets only
REASON_LOG_LIMIT = 5
# Raise an operational alert on every Nth failed dispatch
DISPATCH_FAILURE_ALERT_EVERY = 5


@dataclass
class ScanReport:
    reason: str
    status: str = "ok"  # ok | degraded | failed | skipped
    considered: int = 0
    eligible: int = 0
    selected: int = 0
    alerted: int = 0
    suppressed: int = 0
    duration_ms: int = 0
    categories: dict[str, int] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)
    decisions: list[Market] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "status": self.status,
            "considered": self.considered,
            "eligible": self.eligible,
            "selected": self.selected,
            "alerted": self.alerted,
            "suppressed": self.suppressed,
            "duration_ms": self.duration_ms,
            "categories": self.categories,
            "sources": self.sources,
        }


class Scanner:
    """Drives one scan cycle over an IntakeOrchestrator and an EngineStore."""

    def __init__(
        self,
        intake: IntakeOrchestrator,
        store: EngineStore,
        notifier: Notifier,
        *,
        thresholds: Thresholds | None = None,
        diversity: DiversityConfig | None = None,
        scoring_overrides: dict[str, Any] | None = None,
        duplicate_suppression_minutes: float = 60.0,
    ) -> None:
        self.intake = intake
        self.store = store
        self.notifier = notifier
        self.thresholds = thresholds or Thresholds()
        self.diversity = diversity or DiversityConfig()
        self.scoring_overrides = scoring_overrides or {}
        self.duplicate_suppression_minutes = duplicate_suppression_minutes
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, intake: IntakeOrchestrator, store: EngineStore, notifier: Notifier
    ) -> Scanner:
        return cls(
            intake,
            store,
            notifier,
            thresholds=settings.thresholds,
            diversity=settings.diversity,
            scoring_overrides=settings.scoring_overrides,
            duplicate_suppression_minutes=settings.duplicate_suppression_minutes,
        )

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def evaluate(self, markets: list[Market], now: int | None = None) -> list[Market]:
        """Annotate every market in place (ttr, intelligence, score, bucket, urgency, category)."""
        now = self.store.clock() if now is None else now
        for market in markets:
            market.refresh_time_to_resolve(now)
            insights = self.store.intelligence.get_insights(market)
            scored = score_market(market, self.scoring_overrides)
            market.intelligence = insights
            market.confidence = scored.total
            market.score_breakdown = scored.breakdown
            market.explanations = scored.explanations
            market.bucket = bucket_market(market.time_to_resolve_ms)
            market.urgency = insights.urgency
            market.category = categorize(market.title)
            self.store.health.record_market(market.source, market.bucket)
        return markets

    def filter_eligible(self, markets: list[Market], now: int | None = None) -> list[Market]:
        now = self.store.clock() if now is None else now
        eligible: list[Market] = []
        logged = 0
        for market in markets:
            reasons = ineligibility_reasons(market, self.thresholds, now)
            if not reasons:
                eligible.append(market)
                continue
            if logged < REASON_LOG_LIMIT:
                logged += 1
                log.debug("market_ineligible", market_id=market.market_id, reasons=reasons)
        return eligible

    def decide(self, markets: list[Market], now: int | None = None) -> list[Market]:
        """Evaluate, gate and diversify. Suppression is applied at dispatch."""
        now = self.store.clock() if now is None else now
        return select_markets(self.filter_eligible(self.evaluate(markets, now), now), self.diversity)

    async def run_scan(self, reason: str = "manual") -> ScanReport:
        if self._lock.locked():
            log.info("scan_skipped", reason=reason)
            return ScanReport(reason=reason, status="skipped")
        async with self._lock:
            return await self._scan(reason)

    async def _scan(self, reason: str) -> ScanReport:
        store = self.store
        started = store.clock()
        report = ScanReport(reason=reason)
        log.info("scan_started", reason=reason)
        try:
            intake = await self.intake.fetch_all()
            report.sources = {name: r.status.value for name, r in intake.sources.items()}
            report.considered = len(intake.markets)

            now = store.clock()
            eligible = self.filter_eligible(self.evaluate(intake.markets, now), now)
            report.eligible = len(eligible)
            report.categories = category_counts(eligible)
            log.info("scan_categories", **report.categories)

            selected = select_markets(eligible, self.diversity)
            report.selected = len(selected)
            await self._dispatch(selected, report)

            if intake.status == "failed":
                report.status = "failed"
                store.health.record_error("scan_failed")
                store.op_alerts.register("scan_failed", "Market scan failed: every source failed")
                log.error("scan_all_sources_failed", sources=report.sources)
            else:
                report.status = intake.status
        except Exception as e:
            report.duration_ms = store.clock() - started
            store.health.record_scan(report.duration_ms, False)
            store.health.record_error("scan_failed")
            store.op_alerts.register("scan_failed", f"Market scan failed: {e}")
            await self._flush_operational()
            log.exception("scan_crashed", reason=reason)
            raise

        report.duration_ms = store.clock() - started
        store.health.record_scan(
            report.duration_ms, report.status != "failed", considered=report.considered, alerted=report.alerted
        )
        await self._flush_operational()
        if report.considered and not report.eligible:
            log.warning(
                "no_eligible_markets",
                considered=report.considered,
                min_confidence=self.thresholds.min_confidence,
                min_liquidity=self.thresholds.min_liquidity,
            )
        log.info("scan_completed", **{k: v for k, v in report.summary().items() if k not in ("categories", "sources")})
        return report

    async def run_search(self, category: str, reason: str = "search") -> ScanReport:
        """Same pipeline restricted to one category; top SEARCH_LIMIT by urgency + confidence."""
        target = resolve_category(category)
        if target is None:
            raise ValueError(f"unknown category: {category}")
        if self._lock.locked():
            log.info("search_skipped", category=target)
            return ScanReport(reason=reason, status="skipped")
        async with self._lock:
            started = self.store.clock()
            intake = await self.intake.fetch_all()
            report = ScanReport(reason=reason, sources={n: r.status.value for n, r in intake.sources.items()})
            now = self.store.clock()
            matching = [m for m in self.evaluate(intake.markets, now) if m.category == target]
            report.considered = len(matching)
            eligible = self.filter_eligible(matching, now)
            report.eligible = len(eligible)
            report.categories = {target: len(eligible)}
            selected = sorted(eligible, key=lambda m: m.rank_score, reverse=True)[:SEARCH_LIMIT]
            report.selected = len(selected)
            await self._dispatch(selected, report)
            report.status = intake.status
            report.duration_ms = self.store.clock() - started
            self.store.health.record_scan(
                report.duration_ms, report.status != "failed", considered=report.considered, alerted=report.alerted
            )
            await self._flush_operational()
            log.info("search_completed", category=target, found=report.considered, alerted=report.alerted)
            return report

    async def _dispatch(self, selected: list[Market], report: ScanReport) -> None:
        store = self.store
        for market in selected:
            if store.suppressor.is_suppressed(market):
                report.suppressed += 1
                continue
            try:
                await self.notifier.send_market(market)
            except Exception as e:
                failures = store.health.record_error("alert_send_failed")
                log.error("alert_send_failed", market_id=market.market_id, error=str(e), failures=failures)
                if failures % DISPATCH_FAILURE_ALERT_EVERY == 0:
                    store.op_alerts.register(
                        "alert_send_failed", f"Failed to send {failures} market alerts. Last error: {e}"
                    )
                continue
            store.suppressor.mark_sent(market, self.duplicate_suppression_minutes)
            store.health.record_alert(market.source)
            report.alerted += 1
            report.decisions.append(market)

    async def _flush_operational(self) -> None:
        for alert in self.store.op_alerts.drain():
            try:
                await self.notifier.send_operational(alert)
            except Exception as e:
                log.error("op_alert_send_failed", source=alert.source, error=str(e))

    async def run_forever(self, interval_minutes: float, stop: asyncio.Event | None = None) -> None:
        """Scan every interval_minutes until stop is set. A failing scan does not end the loop."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.run_scan("scheduled")
            except Exception as e:
                log.error("scheduled_scan_failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_minutes * 60)
            except asyncio.TimeoutError:
                continue
