"""Notifier boundary - where selected markets and operational alerts leave the engine."""

from __future__ import annotations

from typing import Protocol

import structlog

from predalert.engine.alerts import OperationalAlert
from predalert.models import Market
from predalert.timeutil import format_duration

log = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def send_market(self, market: Market) -> None: ...

    async def send_operational(self, alert: OperationalAlert) -> None: ...


class LogNotifier:
    """Writes alerts to the structlog stream. Keeps what it sent for inspection."""

    def __init__(self) -> None:
        self.sent: list[Market] = []
        self.operational: list[OperationalAlert] = []

    async def send_market(self, market: Market) -> None:
        self.sent.append(market)
        log.info(
            "market_alert",
            source=market.source,
            market_id=market.market_id,
            title=market.title,
            url=market.url,
            price=round(market.last_price, 3),
            confidence=market.confidence,
            urgency=market.urgency,
            bucket=market.bucket,
            category=market.category,
            resolves_in=format_duration(market.time_to_resolve_ms),
            why=", ".join(market.explanations),
            insight=market.intelligence.summary if market.intelligence else None,
        )

    async def send_operational(self, alert: OperationalAlert) -> None:
        self.operational.append(alert)
        log.warning("operational_alert", source=alert.source, message=alert.message, at=alert.timestamp)
