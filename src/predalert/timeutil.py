"""Millisecond clock and duration helpers."""

from __future__ import annotations

import math
import time
from typing import Callable

MS_IN_SECOND = 1000
MS_IN_MINUTE = 60 * MS_IN_SECOND
MS_IN_HOUR = 60 * MS_IN_MINUTE
MS_IN_DAY = 24 * MS_IN_HOUR

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall time as ms epoch."""
    return int(time.time() * 1000)


def format_duration(ms: float) -> str:
    """Compact duration for logs, e.g. '2d 4h' or '35m'."""
    if not math.isfinite(ms) or ms < 0:
        return "n/a"
    total_minutes = int(ms // MS_IN_MINUTE)
    if total_minutes <= 0:
        return "under 1m"
    days = total_minutes // (60 * 24)
    hours = (total_minutes % (60 * 24)) // 60
    minutes = total_minutes % 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes and len(parts) < 2:
        parts.append(f"{minutes}m")
    return " ".join(parts[:2])
