"""Shared fixtures: fake ms clock, recorded sleeps, market factory."""

import pytest

from predalert.models import Market
from predalert.timeutil import MS_IN_HOUR

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordedSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return RecordedSleep()


@pytest.fixture
def make_market(clock):
    counter = {"n": 0}

    def factory(**overrides) -> Market:
        counter["n"] += 1
        ttr = overrides.pop("ttr", 2 * MS_IN_HOUR)
        fields = {
            "source": "polymarket",
            "market_id": f"polymarket-{counter['n']}",
            "title": f"Market {counter['n']}",
            "resolves_at": clock() + int(ttr),
            "time_to_resolve_ms": float(ttr),
            "last_price": 0.5,
            "volume_24h": 20_000,
            "liquidity": 10_000,
            "spread": 0.02,
        }
        fields.update(overrides)
        return Market(**fields)

    return factory
