"""Retry with exponential backoff, bounded 429/503 handling, and per-source cooldown."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from predalert.errors import (
    FetchError,
    FetchErrorKind,
    NetworkOrClientError,
    TransientSourceError,
    is_rate_limit_status,
)
from predalert.timeutil import Clock, now_ms

log = structlog.get_logger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class SourceCooldown:
    """Per-source next-allowed timestamp. Set when a source reports 429/503."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._until: dict[str, int] = {}

    def trip(self, source: str, duration_ms: int) -> int:
        """Start (or extend) the cooldown. Returns the new expiry."""
        until = max(self._until.get(source, 0), self._clock() + duration_ms)
        self._until[source] = until
        return until

    def remaining_ms(self, source: str) -> int:
        return max(0, self._until.get(source, 0) - self._clock())

    def is_active(self, source: str) -> bool:
        return self.remaining_ms(source) > 0

    def clear(self, source: str) -> None:
        self._until.pop(source, None)

    def sweep(self) -> int:
        """Drop elapsed cooldowns. Returns number removed."""
        now = self._clock()
        live = {k: v for k, v in self._until.items() if v > now}
        removed = len(self._until) - len(live)
        self._until = live
        return removed


def backoff_delay_ms(attempt: int, base_delay_ms: float = 750) -> float:
    """Delay before retry number attempt+1. Exponential backoff."""
    return base_delay_ms * (2 ** attempt)


def retry_after_ms(response: httpx.Response | None, default_ms: int) -> int:
    """Retry-After header (seconds) in ms, else default_ms."""
    if response is None:
        return default_ms
    header = response.headers.get("retry-after")
    if not header:
        return default_ms
    try:
        seconds = float(header)
    except ValueError:
        return default_ms
    return int(seconds * 1000) if seconds > 0 else default_ms


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, FetchError):
        return error.status
    return None


def _kind_of(error: BaseException) -> FetchErrorKind:
    status = _status_of(error)
    if status is not None and 400 <= status < 500:
        return FetchErrorKind.CLIENT
    if isinstance(error, FetchError):
        return error.kind
    return FetchErrorKind.NETWORK


async def fetch_with_retry(
    op: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay_ms: int = 750,
    rate_limit_pause_ms: int = 5_000,
    max_rate_limit_waits: int = 2,
    source: str = "",
    on_rate_limited: Callable[[int], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Run op, retrying failures. 429/503 waits Retry-After (or rate_limit_pause_ms) without
    spending the retry budget, at most max_rate_limit_waits times, then raises
    TransientSourceError. Other errors back off base_delay_ms * 2**attempt and raise
    NetworkOrClientError once retries are exhausted.
    """
    attempt = 0
    rate_limit_waits = 0
    while True:
        try:
            return await op()
        except TransientSourceError:
            raise
        except (httpx.HTTPError, FetchError) as e:
            status = _status_of(e)
            if is_rate_limit_status(status):
                response = e.response if isinstance(e, httpx.HTTPStatusError) else None
                pause_ms = retry_after_ms(response, rate_limit_pause_ms)
                if on_rate_limited is not None:
                    on_rate_limited(pause_ms)
                if rate_limit_waits >= max_rate_limit_waits:
                    raise TransientSourceError(
                        f"{source or 'source'} rate limited (HTTP {status})",
                        source=source,
                        status=status,
                        retry_after_ms=pause_ms,
                    ) from e
                rate_limit_waits += 1
                log.warning("rate_limited", source=source, status=status, pause_ms=pause_ms, wait=rate_limit_waits)
                await sleep(pause_ms / 1000.0)
                continue
            if attempt >= retries:
                raise NetworkOrClientError(
                    f"{source or 'source'} request failed after {attempt + 1} attempts: {e}",
                    source=source,
                    status=status,
                    kind=_kind_of(e),
                ) from e
            delay_ms = backoff_delay_ms(attempt, base_delay_ms)
            log.warning("request_retry", source=source, attempt=attempt, delay_ms=delay_ms, error=str(e))
            attempt += 1
            await sleep(delay_ms / 1000.0)
