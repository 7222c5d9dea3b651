"""Confidence scorer - five weighted factors producing a 0-100 score with explanations."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from predalert.config.settings import deep_merge
from predalert.ingestion.normalize import clamp, safe_number
from predalert.models import Market
from predalert.timeutil import MS_IN_DAY, MS_IN_HOUR

SCORING_DEFAULTS: dict[str, dict[str, float]] = {
    "liquidity": {"weight": 30, "benchmark": 5_000},
    "volume": {"weight": 25, "benchmark": 15_000, "momentum_baseline": 0.4},
    "price": {"weight": 20, "baseline": 0.12},
    "time": {
        "weight": 15,
        "near_resolution_ms": MS_IN_HOUR,
        "mid_resolution_ms": 24 * MS_IN_HOUR,
        "far_resolution_ms": 7 * MS_IN_DAY,
        "decay_ms": 7 * MS_IN_DAY,
    },
    "spread": {"weight": 10, "baseline": 0.12},
}

FACTORS = ("liquidity", "volume", "price", "time", "spread")

PHRASES = {
    "liquidity": "solid liquidity",
    "volume": "notable volume momentum",
    "price": "meaningful price movement",
    "time": "approaching resolution",
    "spread": "tight spread",
}
BASELINE_PHRASE = "meets baseline filters"


@dataclass
class ScoreResult:
    total: int
    breakdown: dict[str, float]
    explanations: list[str]
    normalized: dict[str, float] = field(default_factory=dict)


def merge_scoring(overrides: dict[str, Any] | None = None) -> dict[str, dict[str, float]]:
    """Per-factor overrides layered over SCORING_DEFAULTS. Unknown factors are ignored."""
    known = {k: v for k, v in (overrides or {}).items() if k in SCORING_DEFAULTS and isinstance(v, dict)}
    return deep_merge(SCORING_DEFAULTS, known)


def _ratio(value: float, benchmark: float) -> float:
    return clamp(value / max(benchmark, 1), 0.0, 1.0)


def _spread_tightness(spread: float, baseline: float) -> float:
    return 1 - clamp(abs(spread) / max(baseline, 0.0001), 0.0, 1.0)


def _time_norm(ttr_ms: float, cfg: dict[str, float]) -> float:
    if not math.isfinite(ttr_ms) or ttr_ms <= 0:
        return 0.0
    if ttr_ms <= cfg["near_resolution_ms"]:
        return 1.0
    if ttr_ms <= cfg["mid_resolution_ms"]:
        return 0.75
    if ttr_ms <= cfg["far_resolution_ms"]:
        return 0.4
    over = ttr_ms - cfg["far_resolution_ms"]
    return clamp(1 - over / max(cfg["decay_ms"], 1), 0.0, 1.0) * 0.3


def _price_terms(market: Market) -> list[tuple[float, float]]:
    """(weighted magnitude, raw change) per price signal, in precedence order."""
    changes = (
        (safe_number(market.price_change_1h), 1.0),
        (safe_number(market.price_change_24h), 0.6),
        (safe_number(market.price_change), 0.4),
    )
    return [(abs(change) * factor, change) for change, factor in changes]


def direction_hint(market: Market) -> str:
    """Drift phrase from the dominant weighted price signal; empty when flat."""
    magnitude, change = max(_price_terms(market), key=lambda t: t[0])
    if magnitude <= 0:
        return ""
    return "upward price drift" if change > 0 else "downward price drift"


def build_explanations(breakdown: dict[str, float], market: Market) -> list[str]:
    ranked = sorted(FACTORS, key=lambda k: breakdown[k], reverse=True)
    phrases = [PHRASES[k] for k in ranked[:3] if breakdown[k] > 0]
    if not phrases:
        phrases.append(BASELINE_PHRASE)
    hint = direction_hint(market)
    if hint:
        phrases.append(hint)
    return phrases


def score_market(market: Market, overrides: dict[str, Any] | None = None) -> ScoreResult:
    """Score one market. total is round(sum(breakdown)) clamped to [0, 100]."""
    cfg = merge_scoring(overrides)

    liquidity_norm = _ratio(safe_number(market.liquidity), cfg["liquidity"]["benchmark"])

    volume_change = abs(safe_number(market.volume_change))
    volume_24h = safe_number(market.volume_24h)
    if volume_change > 0:
        volume_norm = clamp(volume_change / max(cfg["volume"]["momentum_baseline"], 0.0001), 0.0, 1.0)
    elif volume_24h > 0:
        volume_norm = _ratio(volume_24h, cfg["volume"]["benchmark"])
    else:
        volume_norm = liquidity_norm * 0.5

    spread_norm = _spread_tightness(safe_number(market.spread, cfg["spread"]["baseline"]), cfg["spread"]["baseline"])

    price_movement = max(t[0] for t in _price_terms(market))
    if price_movement > 0:
        price_norm = clamp(price_movement / max(cfg["price"]["baseline"], 0.0001), 0.0, 1.0)
    else:
        price_norm = liquidity_norm * 0.3 + spread_norm * 0.3

    time_norm = _time_norm(safe_number(market.time_to_resolve_ms, math.inf), cfg["time"])

    normalized = {
        "liquidity": liquidity_norm,
        "volume": volume_norm,
        "price": price_norm,
        "time": time_norm,
        "spread": spread_norm,
    }
    breakdown = {k: round(normalized[k] * cfg[k]["weight"], 2) for k in FACTORS}
    total = int(clamp(round(sum(breakdown.values())), 0, 100))
    return ScoreResult(
        total=total,
        breakdown=breakdown,
        explanations=build_explanations(breakdown, market),
        normalized=normalized,
    )
