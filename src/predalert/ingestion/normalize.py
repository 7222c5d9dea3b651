"""Shared raw-record helpers: safe numeric coercion, field lookup, timestamp parsing."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Iterable

_MISSING = object()


def safe_number(value: Any, fallback: float = 0.0) -> float:
    """Parse value to a finite float, else return fallback."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    return num if math.isfinite(num) else fallback


def clamp(value: float, lo: float, hi: float) -> float:
    if math.isnan(value):
        return lo
    return max(lo, min(hi, value))


def pluck(raw: dict[str, Any], path: str) -> Any:
    """Dotted lookup ('change.h1'); None when any hop is missing."""
    node: Any = raw
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part, _MISSING)
        if node is _MISSING:
            return None
    return node


def first_present(raw: dict[str, Any], paths: Iterable[str]) -> Any:
    """First value that is not None across candidate field paths (in order)."""
    for path in paths:
        value = pluck(raw, path)
        if value is not None:
            return value
    return None


def first_truthy(raw: dict[str, Any], paths: Iterable[str]) -> Any:
    """First non-empty value across candidate field paths (in order)."""
    for path in paths:
        value = pluck(raw, path)
        if value:
            return value
    return None


def parse_timestamp_ms(value: Any) -> int | None:
    """ISO-8601 string or epoch (seconds or ms) -> ms epoch. None when unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        # Heuristic: epoch seconds are < 1e11 until year 5138
        return int(value * 1000) if value < 1e11 else int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").replace(".", "", 1).isdigit():
            return parse_timestamp_ms(float(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None
