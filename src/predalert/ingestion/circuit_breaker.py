"""Per-source circuit breaker - CLOSED / OPEN / HALF_OPEN with a sliding failure window."""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from predalert.errors import CircuitOpenError
from predalert.ingestion.result import FetchResult
from predalert.timeutil import Clock, now_ms

log = structlog.get_logger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Isolates a failing source. execute() never raises the wrapped operation's error;
    it returns a tagged FetchResult instead.

    Half-open policy: a failure while HALF_OPEN is appended to the live failure window
    and reopens the circuit only if the window count re-crosses failure_threshold.
    Otherwise the breaker stays HALF_OPEN and its success counter restarts.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60_000,
        monitoring_window_ms: int = 60_000,
        success_threshold: int = 2,
        clock: Clock = now_ms,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.monitoring_window_ms = monitoring_window_ms
        self.success_threshold = success_threshold
        self._clock = clock
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.success_count = 0
        self.last_failure_time: int | None = None
        self.next_attempt_time: int | None = None
        self._recent_failures: deque[int] = deque()
        self._trial_in_flight = False

    def _prune(self, now: int) -> None:
        while self._recent_failures and now - self._recent_failures[0] >= self.monitoring_window_ms:
            self._recent_failures.popleft()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> FetchResult[T]:
        """Run operation under the breaker. OPEN short-circuits to fallback (or a degraded empty result)."""
        now = self._clock()
        self._prune(now)

        if self.state is BreakerState.OPEN:
            if self.next_attempt_time is not None and now < self.next_attempt_time:
                return await self._short_circuit(fallback)
            self.state = BreakerState.HALF_OPEN
            self.success_count = 0
            log.info("circuit_half_open", breaker=self.name)

        if self.state is BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                return await self._short_circuit(fallback)
            self._trial_in_flight = True

        try:
            value = await operation()
        except Exception as e:
            self._on_failure()
            log.warning("circuit_call_failed", breaker=self.name, state=self.state.value, error=str(e))
            if fallback is None:
                return FetchResult.failed(e)
            try:
                return FetchResult.degraded("fallback", value=await fallback(), error=e)
            except Exception as fallback_error:
                log.warning("circuit_fallback_failed", breaker=self.name, error=str(fallback_error))
                return FetchResult.failed(fallback_error)
        finally:
            self._trial_in_flight = False
        self._on_success()
        return FetchResult.ok(value)

    async def _short_circuit(self, fallback: Callable[[], Awaitable[T]] | None) -> FetchResult[T]:
        err = CircuitOpenError(self.name, self.next_attempt_time)
        if fallback is None:
            return FetchResult.degraded("circuit_open", error=err)
        try:
            return FetchResult.degraded("circuit_open", value=await fallback(), error=err)
        except Exception as fallback_error:
            log.warning("circuit_fallback_failed", breaker=self.name, error=str(fallback_error))
            return FetchResult.failed(fallback_error)

    def _on_success(self) -> None:
        self.failures = 0
        self._recent_failures.clear()
        if self.state is BreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = BreakerState.CLOSED
                self.success_count = 0
                self.next_attempt_time = None
                log.info("circuit_closed", breaker=self.name)
        else:
            self.state = BreakerState.CLOSED

    def _on_failure(self) -> None:
        now = self._clock()
        self.failures += 1
        self.last_failure_time = now
        self._recent_failures.append(now)
        if self.state is BreakerState.HALF_OPEN:
            self.success_count = 0
        if len(self._recent_failures) >= self.failure_threshold:
            self.state = BreakerState.OPEN
            self.next_attempt_time = now + self.reset_timeout_ms
            log.warning(
                "circuit_opened",
                breaker=self.name,
                recent_failures=len(self._recent_failures),
                retry_at=self.next_attempt_time,
            )

    @property
    def recent_failure_count(self) -> int:
        self._prune(self._clock())
        return len(self._recent_failures)

    def get_state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "recent_failures": self.recent_failure_count,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": self.next_attempt_time,
        }

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.success_count = 0
        self.last_failure_time = None
        self.next_attempt_time = None
        self._recent_failures = deque()
        self._trial_in_flight = False
