"""Intake orchestrator - concurrent multi-source fetch behind cooldown, cache and circuit breakers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx
import structlog

from predalert.config.settings import Settings
from predalert.engine.store import EngineStore
from predalert.errors import TransientSourceError
from predalert.ingestion.base import SourceAdapter
from predalert.ingestion.kalshi.client import KalshiAdapter
from predalert.ingestion.polymarket.gamma import PolymarketAdapter
from predalert.ingestion.result import FetchResult, ResultStatus
from predalert.models import Market

log = structlog.get_logger(__name__)

ADAPTERS: dict[str, type[SourceAdapter]] = {
    "polymarket": PolymarketAdapter,
    "kalshi": KalshiAdapter,
}


def build_adapters(
    settings: Settings,
    *,
    clock: Callable[[], int],
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> list[SourceAdapter]:
    """One adapter per enabled, known source."""
    adapters: list[SourceAdapter] = []
    for name in settings.source_names:
        adapter_cls = ADAPTERS.get(name)
        if adapter_cls is None:
            log.warning("unknown_source", source=name)
            continue
        adapters.append(
            adapter_cls(
                settings.source(name),
                retries=settings.retries,
                retry_base_delay_ms=settings.retry_base_delay_ms,
                rate_limit_pause_ms=settings.rate_limit_pause_ms,
                max_rate_limit_waits=settings.max_rate_limit_waits,
                clock=clock,
                sleep=sleep,
            )
        )
    return adapters


def merge_markets(batches: list[list[Market]]) -> list[Market]:
    """Flatten per-source batches; tradable (priority) first, then soonest to resolve."""
    merged = [m for batch in batches for m in batch]
    merged.sort(key=lambda m: (0 if m.priority else 1, m.time_to_resolve_ms))
    return merged


@dataclass
class IntakeResult:
    markets: list[Market] = field(default_factory=list)
    sources: dict[str, FetchResult[list[Market]]] = field(default_factory=dict)

    @property
    def status(self) -> str:
        """ok, degraded (some source short), or failed (every source failed)."""
        if self.sources and all(r.is_failed for r in self.sources.values()):
            return "failed"
        if any(r.status is not ResultStatus.OK for r in self.sources.values()):
            return "degraded"
        return "ok"

    def counts(self) -> dict[str, int]:
        return {name: len(r.value or []) for name, r in self.sources.items()}


class IntakeOrchestrator:
    """Runs all adapters concurrently; one source failing never affects another."""

    def __init__(
        self,
        adapters: list[SourceAdapter],
        store: EngineStore,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_sec: float = 10.0,
        user_agent: str = "",
    ) -> None:
        self.adapters = adapters
        self.store = store
        self._owns_client = client is None
        headers = {"User-Agent": user_agent} if user_agent else None
        self.client = client or httpx.AsyncClient(timeout=timeout_sec, headers=headers, follow_redirects=True)
        for adapter in adapters:
            adapter.on_rate_limited = self._cooldown_trigger(adapter)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: EngineStore,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> IntakeOrchestrator:
        return cls(
            build_adapters(settings, clock=store.clock, sleep=sleep),
            store,
            client,
            timeout_sec=settings.timeout_sec,
            user_agent=settings.user_agent,
        )

    def _cooldown_trigger(self, adapter: SourceAdapter) -> Callable[[int], None]:
        def trip(_pause_ms: int) -> None:
            until = self.store.cooldown.trip(adapter.source_id, adapter.config.rate_limit_cooldown_ms)
            log.info("source_cooldown_started", source=adapter.source_id, until=until)

        return trip

    async def fetch_all(self) -> IntakeResult:
        results = await asyncio.gather(*(self.fetch_source(a) for a in self.adapters))
        by_source = {a.source_id: r for a, r in zip(self.adapters, results)}
        intake = IntakeResult(
            markets=merge_markets([r.value or [] for r in results]),
            sources=by_source,
        )
        log.info(
            "intake_complete",
            status=intake.status,
            total=len(intake.markets),
            **{f"{name}_markets": n for name, n in intake.counts().items()},
        )
        return intake

    async def fetch_source(self, adapter: SourceAdapter) -> FetchResult[list[Market]]:
        """Cooldown, then cache, then the breaker-guarded network fetch. Never raises."""
        source = adapter.source_id
        store = self.store
        remaining = store.cooldown.remaining_ms(source)
        if remaining > 0:
            log.info("source_in_cooldown", source=source, remaining_ms=remaining)
            return FetchResult.degraded("cooldown")

        cached = store.cache.get(adapter.cache_key)
        if cached is not None:
            log.debug("source_cache_hit", source=source, markets=len(cached))
            return FetchResult.ok(_copies(cached), cached=True)

        started = store.clock()
        result = await store.breaker(source).execute(lambda: adapter.fetch(self.client))
        elapsed = store.clock() - started

        if result.is_ok:
            markets = result.value or []
            store.cache.set(adapter.cache_key, markets)
            # A 429 seen mid-fetch (partial pages) keeps the cooldown it tripped
            if not store.cooldown.is_active(source):
                store.cooldown.clear(source)
            store.health.record_api_call(source, True, elapsed)
            return FetchResult.ok(_copies(markets))

        if isinstance(result.error, TransientSourceError):
            store.cooldown.trip(source, adapter.config.rate_limit_cooldown_ms)
            store.health.record_api_call(source, False, rate_limited=True)
            log.warning("source_rate_limited", source=source, cooldown_ms=adapter.config.rate_limit_cooldown_ms)
            return FetchResult.degraded("rate_limited", error=result.error)

        if result.is_failed:
            store.health.record_api_call(source, False, elapsed)
            store.health.record_error(f"{source}_fetch_failed")
            store.op_alerts.register(source, f"{source} fetch failed: {result.error}", result.error)
            log.error("source_fetch_failed", source=source, error=str(result.error))
        else:
            log.info("source_degraded", source=source, reason=result.reason)
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _copies(markets: list[Market]) -> list[Market]:
    return [m.model_copy(deep=True) for m in markets]
