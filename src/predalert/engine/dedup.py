"""Duplicate suppression - (source, market_id) re-alert cooldown."""

from __future__ import annotations

from predalert.models import Market
from predalert.timeutil import MS_IN_MINUTE, Clock, now_ms


class DuplicateSuppressor:
    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._until: dict[tuple[str, str], int] = {}

    def is_suppressed(self, market: Market) -> bool:
        expires_at = self._until.get(market.dedup_key)
        return expires_at is not None and expires_at > self._clock()

    def mark_sent(self, market: Market, minutes: float) -> int:
        """Suppress market until now + minutes. Returns the expiry (ms epoch)."""
        expires_at = self._clock() + int(minutes * MS_IN_MINUTE)
        self._until[market.dedup_key] = expires_at
        return expires_at

    def sweep(self) -> int:
        now = self._clock()
        live = {k: v for k, v in self._until.items() if v > now}
        removed = len(self._until) - len(live)
        self._until = live
        return removed

    def __len__(self) -> int:
        return len(self._until)
