"""Operational alerts - per-key throttled queue of source/engine problems for the notifier."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from predalert.errors import TransientSourceError
from predalert.timeutil import MS_IN_MINUTE, Clock, now_ms

log = structlog.get_logger(__name__)

_RATE_LIMIT_MARKERS = ("rate limited", "rate-limited", "429", "503", "too many requests")


@dataclass(frozen=True)
class OperationalAlert:
    source: str
    message: str
    timestamp: int  # ms epoch


def is_rate_limit_noise(source: str, message: str, error: BaseException | None = None) -> bool:
    """Rate limiting is routine and handled by cooldowns; it never becomes an operational alert."""
    if isinstance(error, TransientSourceError):
        return True
    if "rate-limit" in source.lower():
        return True
    text = message.lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


class OperationalAlerts:
    """Queue of pending alerts. A (source, message) key is emitted at most once per ttl_ms."""

    def __init__(self, ttl_ms: int = 30 * MS_IN_MINUTE, clock: Clock = now_ms) -> None:
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._last_emitted: dict[tuple[str, str], int] = {}
        self._pending: list[OperationalAlert] = []

    def register(self, source: str, message: str, error: BaseException | None = None) -> bool:
        """Queue an alert. False when filtered as rate-limit noise or throttled."""
        if is_rate_limit_noise(source, message, error):
            log.debug("op_alert_rate_limit_suppressed", source=source, message=message)
            return False
        now = self._clock()
        key = (source, message)
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.ttl_ms:
            return False
        self._last_emitted[key] = now
        self._pending.append(OperationalAlert(source=source, message=message, timestamp=now))
        log.warning("op_alert_registered", source=source, message=message)
        return True

    def drain(self) -> list[OperationalAlert]:
        pending, self._pending = self._pending, []
        return pending

    def sweep(self) -> int:
        now = self._clock()
        live = {k: t for k, t in self._last_emitted.items() if now - t < self.ttl_ms}
        removed = len(self._last_emitted) - len(live)
        self._last_emitted = live
        return removed

    @property
    def pending(self) -> int:
        return len(self._pending)
