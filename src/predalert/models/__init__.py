"""Canonical schema (Pydantic) - Market and intelligence snapshots."""

from predalert.models.intelligence import Anomaly, MarketInsights, TrendResult
from predalert.models.market import BUCKETS, CATEGORIES, Market

__all__ = [
    "Market",
    "MarketInsights",
    "TrendResult",
    "Anomaly",
    "BUCKETS",
    "CATEGORIES",
]
