"""TTL response cache keyed by request signature - lazy expiry on read plus periodic sweep."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from predalert.timeutil import Clock, now_ms

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: int  # ms epoch


class ResponseCache(Generic[T]):
    """In-memory TTL cache."""

    def __init__(self, ttl_ms: int = 5 * 60 * 1000, clock: Clock = now_ms) -> None:
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: T, ttl_ms: int | None = None) -> None:
        ttl = self.ttl_ms if ttl_ms is None else ttl_ms
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def sweep(self) -> int:
        """Drop expired entries. Returns number removed."""
        now = self._clock()
        live = {k: e for k, e in self._entries.items() if e.expires_at > now}
        removed = len(self._entries) - len(live)
        self._entries = live
        return removed

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
