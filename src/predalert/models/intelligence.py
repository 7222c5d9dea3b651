"""Trend, anomaly and insight snapshots attached to a Market."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Trend = Literal["unknown", "strong_up", "up", "neutral", "down", "strong_down"]
Severity = Literal["high", "medium", "low"]


class TrendResult(BaseModel):
    trend: Trend = "unknown"
    strength: float = 0.0
    confidence: float = 0.0
    price_change_percent: float = 0.0
    volume_change_percent: float = 0.0


class Anomaly(BaseModel):
    type: str
    severity: Severity
    message: str
    value: float | None = None
    baseline: float | None = None


class MarketInsights(BaseModel):
    """Point-in-time intelligence for one market."""

    trend: TrendResult = Field(default_factory=TrendResult)
    anomalies: list[Anomaly] = Field(default_factory=list)
    urgency: int = 0
    summary: str = ""
