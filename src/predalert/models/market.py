"""Market - canonical entity, rebuilt every scan."""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, Field

from predalert.models.intelligence import MarketInsights

CATEGORIES = ("crypto", "politics", "sports", "entertainment", "economics", "technology", "other")
BUCKETS = ("1H", "24H", "7D", "EXTENDED")


class Market(BaseModel):
    """Canonical market - source-agnostic."""

    source: str
    market_id: str  # source-prefixed, e.g. "polymarket-123"
    title: str = "Untitled market"
    url: str = ""
    resolves_at: int  # ms epoch
    time_to_resolve_ms: float = math.inf
    last_price: float = Field(0.0, ge=0, le=1, description="Probability/price in [0, 1]")
    volume_24h: float = 0.0
    liquidity: float = 0.0
    price_change_1h: float = 0.0
    price_change_24h: float = 0.0
    price_change: float = 0.0
    volume_change: float | None = None  # explicit momentum signal, when the source has one
    spread: float = 0.0
    created_at: str | int | None = None
    priority: bool = False

    # Assigned during evaluation
    confidence: int = 0
    score_breakdown: dict[str, float] = Field(default_factory=dict)
    explanations: list[str] = Field(default_factory=list)
    bucket: str | None = None
    category: str | None = None
    urgency: int = 0
    intelligence: MarketInsights | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.source, self.market_id)

    @property
    def rank_score(self) -> float:
        """Selection score: urgency + confidence."""
        return float(self.urgency) + float(self.confidence)

    def refresh_time_to_resolve(self, now: int) -> float:
        """Recompute time_to_resolve_ms against now (ms epoch)."""
        self.time_to_resolve_ms = float(self.resolves_at - now)
        return self.time_to_resolve_ms
