"""EngineStore - owns all cross-scan state (breakers, cooldowns, cache, history, suppression, alerts, health)."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from predalert.config.settings import BreakerConfig, Settings
from predalert.engine.alerts import OperationalAlerts
from predalert.engine.dedup import DuplicateSuppressor
from predalert.engine.intelligence import MarketIntelligence
from predalert.ingestion.cache import ResponseCache
from predalert.ingestion.circuit_breaker import CircuitBreaker
from predalert.ingestion.rate_limit import SourceCooldown
from predalert.metrics.health import HealthMonitor
from predalert.models import Market
from predalert.timeutil import MS_IN_MINUTE, Clock, now_ms

log = structlog.get_logger(__name__)


class EngineStore:
    """Created once per process, injected into the orchestrator and scanner, closed with aclose()."""

    def __init__(
        self,
        *,
        clock: Clock = now_ms,
        cache_ttl_ms: int = 5 * MS_IN_MINUTE,
        op_alert_ttl_ms: int = 30 * MS_IN_MINUTE,
        breaker_configs: dict[str, BreakerConfig] | None = None,
    ) -> None:
        self.clock = clock
        self._breaker_configs = dict(breaker_configs or {})
        self.breakers: dict[str, CircuitBreaker] = {}
        self.cooldown = SourceCooldown(clock)
        self.cache: ResponseCache[list[Market]] = ResponseCache(cache_ttl_ms, clock)
        self.intelligence = MarketIntelligence(clock)
        self.suppressor = DuplicateSuppressor(clock)
        self.op_alerts = OperationalAlerts(op_alert_ttl_ms, clock)
        self.health = HealthMonitor(clock)
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = now_ms) -> EngineStore:
        return cls(
            clock=clock,
            cache_ttl_ms=settings.cache_ttl_ms,
            op_alert_ttl_ms=settings.op_alert_ttl_ms,
            breaker_configs={name: settings.source(name).breaker for name in settings.source_names},
        )

    def breaker(self, source: str) -> CircuitBreaker:
        """Breaker for source, created on first use from its configured thresholds."""
        if source not in self.breakers:
            cfg = self._breaker_configs.get(source) or BreakerConfig()
            self.breakers[source] = CircuitBreaker(
                source,
                failure_threshold=cfg.failure_threshold,
                reset_timeout_ms=cfg.reset_timeout_ms,
                monitoring_window_ms=cfg.monitoring_window_ms,
                clock=self.clock,
            )
        return self.breakers[source]

    def sweep(self) -> dict[str, int]:
        """Expire cache, cooldown, suppression and alert-throttle entries; age out price history."""
        removed = {
            "cache": self.cache.sweep(),
            "cooldowns": self.cooldown.sweep(),
            "suppression": self.suppressor.sweep(),
            "op_alerts": self.op_alerts.sweep(),
            "history": self.intelligence.cleanup(self.clock()),
        }
        log.debug("store_swept", **removed)
        return removed

    def breaker_states(self) -> dict[str, Any]:
        return {name: b.get_state() for name, b in self.breakers.items()}

    async def _sweep_loop(self, interval_sec: float) -> None:
        while True:
            await asyncio.sleep(interval_sec)
            self.sweep()

    def start_sweeper(self, interval_sec: float = 15 * 60) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval_sec))

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def aclose(self) -> None:
        await self.stop_sweeper()
        log.info("store_closed", health=self.health.overall_status())
