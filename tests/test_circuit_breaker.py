"""Circuit breaker state machine tests."""

import asyncio

import pytest

from predalert.errors import CircuitOpenError
from predalert.ingestion.circuit_breaker import BreakerState, CircuitBreaker
from predalert.ingestion.result import ResultStatus


async def ok():
    return ["m1"]


async def boom():
    raise RuntimeError("source down")


@pytest.mark.asyncio
async def test_opens_after_threshold_and_short_circuits(clock):
    b = CircuitBreaker("poly", failure_threshold=3, reset_timeout_ms=60_000, monitoring_window_ms=60_000, clock=clock)
    for _ in range(3):
        result = await b.execute(boom)
        assert result.status is ResultStatus.FAILED
        assert isinstance(result.error, RuntimeError)
    assert b.state is BreakerState.OPEN
    assert b.next_attempt_time == clock() + 60_000

    calls = []

    async def tracked():
        calls.append(1)
        return ["x"]

    async def fallback():
        return ["cached"]

    result = await b.execute(tracked)
    assert result.status is ResultStatus.DEGRADED
    assert result.reason == "circuit_open"
    assert isinstance(result.error, CircuitOpenError)
    result = await b.execute(tracked, fallback=fallback)
    assert result.value == ["cached"]
    assert calls == []


@pytest.mark.asyncio
async def test_half_open_two_successes_close(clock):
    b = CircuitBreaker("poly", failure_threshold=2, reset_timeout_ms=60_000, monitoring_window_ms=60_000, clock=clock)
    await b.execute(boom)
    await b.execute(boom)
    assert b.state is BreakerState.OPEN
    clock.advance(60_000)
    result = await b.execute(ok)
    assert result.is_ok
    assert b.state is BreakerState.HALF_OPEN
    await b.execute(ok)
    assert b.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens_when_window_recrosses_threshold(clock):
    b = CircuitBreaker("kalshi", failure_threshold=2, reset_timeout_ms=60_000, monitoring_window_ms=120_000, clock=clock)
    await b.execute(boom)
    await b.execute(boom)
    clock.advance(60_000)
    await b.execute(boom)
    assert b.state is BreakerState.OPEN
    assert b.next_attempt_time == clock() + 60_000


@pytest.mark.asyncio
async def test_half_open_failure_below_threshold_stays_half_open(clock):
    b = CircuitBreaker("kalshi", failure_threshold=2, reset_timeout_ms=60_000, monitoring_window_ms=60_000, clock=clock)
    await b.execute(boom)
    await b.execute(boom)
    clock.advance(60_000)
    await b.execute(ok)
    assert b.success_count == 1
    await b.execute(boom)
    assert b.state is BreakerState.HALF_OPEN
    assert b.success_count == 0


@pytest.mark.asyncio
async def test_success_clears_failure_window(clock):
    b = CircuitBreaker("poly", failure_threshold=3, clock=clock)
    await b.execute(boom)
    await b.execute(boom)
    await b.execute(ok)
    await b.execute(boom)
    await b.execute(boom)
    assert b.state is BreakerState.CLOSED
    assert b.recent_failure_count == 2


@pytest.mark.asyncio
async def test_failures_outside_window_do_not_count(clock):
    b = CircuitBreaker("poly", failure_threshold=3, monitoring_window_ms=1_000, clock=clock)
    for _ in range(3):
        await b.execute(boom)
        clock.advance(1_000)
    assert b.state is BreakerState.CLOSED


@pytest.mark.asyncio
async def test_failure_with_fallback_is_degraded(clock):
    b = CircuitBreaker("poly", clock=clock)

    async def fallback():
        return ["stale"]

    result = await b.execute(boom, fallback=fallback)
    assert result.status is ResultStatus.DEGRADED
    assert result.reason == "fallback"
    assert result.value == ["stale"]


@pytest.mark.asyncio
async def test_only_one_half_open_trial_at_a_time(clock):
    b = CircuitBreaker("poly", failure_threshold=1, reset_timeout_ms=1_000, clock=clock)
    await b.execute(boom)
    clock.advance(1_000)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return ["trial"]

    trial = asyncio.create_task(b.execute(slow))
    await asyncio.sleep(0)
    concurrent = await b.execute(ok)
    assert concurrent.reason == "circuit_open"
    release.set()
    result = await trial
    assert result.value == ["trial"]
    assert b.state is BreakerState.HALF_OPEN


def test_reset_and_state_snapshot(clock):
    b = CircuitBreaker("poly", clock=clock)
    b.state = BreakerState.OPEN
    b.reset()
    state = b.get_state()
    assert state["state"] == "CLOSED"
    assert state["recent_failures"] == 0
