"""Market intelligence - rolling per-market history, trend/anomaly detection, urgency."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

import structlog

from predalert.models import Anomaly, Market, MarketInsights, TrendResult
from predalert.timeutil import MS_IN_DAY, MS_IN_HOUR, Clock, now_ms

log = structlog.get_logger(__name__)

PRICE_HISTORY_CAP = 50
VOLUME_HISTORY_CAP = 100
HISTORY_MAX_AGE_MS = 7 * MS_IN_DAY


@dataclass(frozen=True)
class PricePoint:
    price: float
    volume: float
    liquidity: float
    time: int  # ms epoch


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MarketIntelligence:
    """Keeps price history (cap 50) and volume history (cap 100) per market id."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self.price_history: dict[str, deque[PricePoint]] = {}
        self.volume_history: dict[str, deque[float]] = {}

    def record_point(self, market: Market) -> deque[PricePoint]:
        history = self.price_history.get(market.market_id)
        if history is None:
            history = deque(maxlen=PRICE_HISTORY_CAP)
            self.price_history[market.market_id] = history
        history.append(
            PricePoint(
                price=market.last_price,
                volume=market.volume_24h or 0.0,
                liquidity=market.liquidity or 0.0,
                time=self._clock(),
            )
        )
        return history

    def detect_trend(self, market: Market) -> TrendResult:
        """Record the current point, then compare the last 5 points with the 5 before them."""
        history = list(self.record_point(market))
        if len(history) < 3:
            return TrendResult()
        recent = history[-5:]
        older = history[-10:-5]
        if not older:
            return TrendResult()

        recent_price = _mean([p.price for p in recent])
        older_price = _mean([p.price for p in older])
        price_pct = (recent_price - older_price) / older_price * 100 if older_price > 0 else 0.0
        recent_volume = _mean([p.volume for p in recent])
        older_volume = _mean([p.volume for p in older])
        volume_pct = (recent_volume - older_volume) / older_volume * 100 if older_volume > 0 else 0.0

        strength = abs(price_pct)
        trend = "neutral"
        confidence = 0.0
        if price_pct > 2 or price_pct < -2:
            rising = price_pct > 2
            if volume_pct > 10:
                trend = "strong_up" if rising else "strong_down"
            else:
                trend = "up" if rising else "down"
            confidence = min(90.0, 50 + strength + (20 if volume_pct > 0 else 0))
        return TrendResult(
            trend=trend,
            strength=min(100.0, strength),
            confidence=min(100.0, confidence),
            price_change_percent=round(price_pct, 2),
            volume_change_percent=round(volume_pct, 2),
        )

    def average_volume(self, market_id: str) -> float:
        return _mean(list(self.volume_history.get(market_id, ())))

    def update_volume_history(self, market_id: str, volume: float) -> None:
        history = self.volume_history.get(market_id)
        if history is None:
            history = deque(maxlen=VOLUME_HISTORY_CAP)
            self.volume_history[market_id] = history
        history.append(volume)

    def detect_anomalies(self, market: Market, trend: TrendResult | None) -> list[Anomaly]:
        anomalies: list[Anomaly] = []
        avg_volume = self.average_volume(market.market_id)
        if avg_volume > 0 and market.volume_24h > avg_volume * 3:
            anomalies.append(
                Anomaly(
                    type="volume_spike",
                    severity="high",
                    message=f"Volume spike: {market.volume_24h / avg_volume * 100:.0f}% of average",
                    value=market.volume_24h,
                    baseline=avg_volume,
                )
            )
        if trend is not None and abs(trend.price_change_percent) > 15:
            anomalies.append(
                Anomaly(
                    type="price_volatility",
                    severity="medium",
                    message=f"Large price movement: {trend.price_change_percent:.2f}%",
                    value=trend.price_change_percent,
                )
            )
        if market.spread < 0.02 and market.liquidity > 10_000:
            anomalies.append(
                Anomaly(
                    type="tight_spread",
                    severity="low",
                    message="Very tight spread with high liquidity",
                    value=market.spread,
                    baseline=market.liquidity,
                )
            )
        if market.time_to_resolve_ms < MS_IN_HOUR and market.volume_24h > 5_000:
            anomalies.append(
                Anomaly(
                    type="resolution_rush",
                    severity="medium",
                    message="High activity approaching resolution",
                    value=market.volume_24h,
                    baseline=market.time_to_resolve_ms,
                )
            )
        return anomalies

    def calculate_urgency(self, market: Market, trend: TrendResult | None, anomalies: list[Anomaly]) -> int:
        urgency = 0
        hours = market.time_to_resolve_ms / MS_IN_HOUR
        if hours < 1:
            urgency += 40
        elif hours < 6:
            urgency += 30
        elif hours < 24:
            urgency += 20

        if trend is not None:
            if trend.trend == "strong_up":
                urgency += 20
            elif trend.trend == "strong_down":
                urgency += 15
            elif trend.trend != "neutral":
                urgency += 10

        urgency += 15 * sum(1 for a in anomalies if a.severity == "high")
        urgency += 5 * sum(1 for a in anomalies if a.severity == "medium")

        if market.liquidity > 20_000:
            urgency += 10
        elif market.liquidity > 10_000:
            urgency += 5
        return max(0, min(100, urgency))

    def get_insights(self, market: Market) -> MarketInsights:
        """Trend, anomalies and urgency for market. Volume history is updated after detection."""
        trend = self.detect_trend(market)
        anomalies = self.detect_anomalies(market, trend)
        urgency = self.calculate_urgency(market, trend, anomalies)
        self.update_volume_history(market.market_id, market.volume_24h or 0.0)
        return MarketInsights(
            trend=trend,
            anomalies=anomalies,
            urgency=urgency,
            summary=generate_summary(trend, anomalies, urgency),
        )

    def cleanup(self, now: int | None = None) -> int:
        """Drop price points older than 7 days and trim volume history. Returns markets removed."""
        now = self._clock() if now is None else now
        prices: dict[str, deque[PricePoint]] = {}
        for market_id, history in self.price_history.items():
            kept = [p for p in history if now - p.time < HISTORY_MAX_AGE_MS]
            if kept:
                prices[market_id] = deque(kept, maxlen=PRICE_HISTORY_CAP)
        volumes = {
            market_id: deque(list(history)[-VOLUME_HISTORY_CAP:], maxlen=VOLUME_HISTORY_CAP)
            for market_id, history in self.volume_history.items()
        }
        removed = len(self.price_history) - len(prices)
        self.price_history = prices
        self.volume_history = volumes
        if removed:
            log.debug("intelligence_cleanup", removed=removed, tracked=len(prices))
        return removed


def generate_summary(trend: TrendResult, anomalies: list[Anomaly], urgency: int) -> str:
    parts: list[str] = []
    if trend.trend not in ("neutral", "unknown") and trend.confidence > 50:
        parts.append(f"{trend.trend.replace('_', ' ')} trend ({trend.confidence:.0f}% confidence)")
    high = sum(1 for a in anomalies if a.severity == "high")
    if high:
        parts.append(f"{high} high-priority anomal{'y' if high == 1 else 'ies'}")
    if urgency > 70:
        parts.append("high urgency - monitor closely")
    elif urgency > 50:
        parts.append("moderate urgency")
    return "; ".join(parts) or "Standard market conditions"
