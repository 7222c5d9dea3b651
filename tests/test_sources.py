"""Normalizer and source adapter tests (HTTP mocked with httpx.MockTransport)."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from predalert.config.settings import SourceConfig
from predalert.errors import FetchError, MappingError, TransientSourceError
from predalert.ingestion.base import extract_next_data_markets
from predalert.ingestion.kalshi.client import KalshiAdapter
from predalert.ingestion.kalshi.client import parse_market as parse_kalshi
from predalert.ingestion.normalize import first_present, parse_timestamp_ms, safe_number
from predalert.ingestion.polymarket.gamma import PolymarketAdapter
from predalert.ingestion.polymarket.gamma import parse_market as parse_polymarket
from predalert.timeutil import MS_IN_HOUR

NOW = 1_700_000_000_000


def iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def gamma_row(market_id="123", **extra):
    row = {
        "id": market_id,
        "question": "Will BTC close above 100k?",
        "slug": "btc-100k",
        "endDate": iso(NOW + 2 * MS_IN_HOUR),
        "bestBid": 0.45,
        "bestAsk": 0.50,
        "lastTradePrice": 0.47,
        "volume24hr": "12000",
        "liquidityNum": 8000,
        "oneHourPriceChange": 0.03,
        "acceptingOrders": True,
    }
    row.update(extra)
    return row


def kalshi_row(ticker="KXBTC-25", **extra):
    row = {
        "ticker": ticker,
        "title": "Bitcoin above 100k on Friday?",
        "close_time": iso(NOW + 3 * MS_IN_HOUR),
        "yes_bid": 40,
        "yes_ask": 44,
        "last_price": 42,
        "volume_24h": 900,
        "open_interest": 3000,
        "status": "active",
    }
    row.update(extra)
    return row


def next_data_html(markets):
    payload = {"props": {"pageProps": {"dehydratedState": {"queries": [{"state": {"data": {"markets": markets}}}]}}}}
    return f'<html><body><script id="__NEXT_DATA__" type="application/json">{json.dumps(payload)}</script></body></html>'


def test_helpers():
    assert safe_number("12.5") == 12.5
    assert safe_number("n/a", 3.0) == 3.0
    assert safe_number(float("inf")) == 0.0
    assert parse_timestamp_ms("2024-01-01T00:00:00Z") == 1_704_067_200_000
    assert parse_timestamp_ms(1_704_067_200) == 1_704_067_200_000
    assert parse_timestamp_ms("1704067200000") == 1_704_067_200_000
    assert parse_timestamp_ms("not a date") is None
    assert first_present({"change": {"h1": 0.2}}, ("change1h", "change.h1")) == 0.2


def test_polymarket_parse():
    m = parse_polymarket(gamma_row(), NOW)
    assert m.market_id == "polymarket-123"
    assert m.title == "Will BTC close above 100k?"
    assert m.url == "https://polymarket.com/market/btc-100k"
    assert m.time_to_resolve_ms == 2 * MS_IN_HOUR
    assert m.spread == pytest.approx(0.05)
    assert m.last_price == pytest.approx(0.47)
    assert m.volume_24h == 12000
    assert m.liquidity == 8000
    assert m.price_change_1h == pytest.approx(0.03)
    assert m.priority is True


def test_polymarket_defaults_and_outcome_prices():
    row = gamma_row(outcomePrices='["0.62", "0.38"]', acceptingOrders=False)
    for key in ("bestBid", "bestAsk", "lastTradePrice"):
        row.pop(key)
    m = parse_polymarket(row, NOW)
    assert m.spread == 0.15
    assert m.last_price == pytest.approx(0.62)
    assert m.priority is False


def test_polymarket_rejections():
    assert parse_polymarket(gamma_row(archived=True), NOW) is None
    assert parse_polymarket(gamma_row(endDate=iso(NOW - 1000)), NOW) is None
    assert parse_polymarket(gamma_row(endDate=None), NOW) is None
    with pytest.raises(MappingError):
        parse_polymarket(gamma_row(market_id=None, slug=None), NOW)


def test_polymarket_token_expiration_fallback():
    row = gamma_row(endDate=None, tokens=[{"outcome": "Yes", "expiration_date": NOW + MS_IN_HOUR}])
    m = parse_polymarket(row, NOW)
    assert m.time_to_resolve_ms == MS_IN_HOUR


def test_kalshi_parse():
    m = parse_kalshi(kalshi_row(), NOW)
    assert m.market_id == "kalshi-KXBTC-25"
    assert m.url == "https://kalshi.com/markets/KXBTC-25"
    assert m.last_price == pytest.approx(0.42)
    assert m.spread == pytest.approx(0.04)
    assert m.liquidity == 3000
    assert m.priority is True


def test_kalshi_rejections_and_defaults():
    assert parse_kalshi(kalshi_row(status="settled"), NOW) is None
    m = parse_kalshi(kalshi_row(yes_bid=None, yes_ask=None, status="initialized"), NOW)
    assert m.spread == 0.10
    assert m.priority is False


def test_extract_next_data_markets():
    html = next_data_html([gamma_row("1"), gamma_row("2"), "junk"])
    rows = extract_next_data_markets(html)
    assert [r["id"] for r in rows] == ["1", "2"]
    assert extract_next_data_markets("<html></html>") == []


def poly_config(**overrides):
    fields = {
        "api_base": "https://gamma.test/markets",
        "scrape_url": "https://poly.test/markets",
        "page_limit": 2,
        "max_pages": 3,
        "page_delay_ms": 0,
    }
    fields.update(overrides)
    return SourceConfig(**fields)


@pytest.mark.asyncio
async def test_polymarket_paginates_until_short_page(sleeps):
    offsets = []

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        assert request.url.params["closed"] == "false"
        rows = [gamma_row("1"), gamma_row("2")] if offset == 0 else [gamma_row("3")]
        return httpx.Response(200, json=rows)

    adapter = PolymarketAdapter(poly_config(), retries=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        markets = await adapter.fetch(client)
    assert offsets == [0, 2]
    assert [m.market_id for m in markets] == ["polymarket-1", "polymarket-2", "polymarket-3"]


@pytest.mark.asyncio
async def test_polymarket_falls_back_to_scrape(sleeps):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "gamma.test":
            return httpx.Response(500)
        return httpx.Response(200, text=next_data_html([gamma_row("9")]))

    adapter = PolymarketAdapter(poly_config(max_pages=1), retries=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        markets = await adapter.fetch(client)
    assert [m.market_id for m in markets] == ["polymarket-9"]


@pytest.mark.asyncio
async def test_polymarket_rate_limit_is_not_scraped(sleeps):
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(429)

    adapter = PolymarketAdapter(poly_config(), retries=0, max_rate_limit_waits=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransientSourceError):
            await adapter.fetch(client)
    assert hosts == ["gamma.test"]


@pytest.mark.asyncio
async def test_malformed_records_are_skipped(sleeps):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[gamma_row("1"), {"question": "no id"}])

    adapter = PolymarketAdapter(poly_config(page_limit=10), retries=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        markets = await adapter.fetch(client)
    assert len(markets) == 1
    assert adapter.skipped_records == 1


@pytest.mark.asyncio
async def test_kalshi_cursor_paging(sleeps):
    cursors = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursor = request.url.params.get("cursor")
        cursors.append(cursor)
        assert request.url.params["status"] == "open"
        if cursor is None:
            return httpx.Response(200, json={"markets": [kalshi_row("A")], "cursor": "next"})
        return httpx.Response(200, json={"markets": [kalshi_row("B")], "cursor": ""})

    config = SourceConfig(api_base="https://kalshi.test/markets", page_limit=1, max_pages=5, page_delay_ms=0)
    adapter = KalshiAdapter(config, retries=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        markets = await adapter.fetch(client)
    assert cursors == [None, "next"]
    assert [m.market_id for m in markets] == ["kalshi-A", "kalshi-B"]


def kalshi_config(**overrides):
    fields = {
        "api_base": "https://kalshi.test/trade-api/v2/markets",
        "scrape_url": "https://kalshi.test/markets",
        "max_pages": 1,
        "page_delay_ms": 0,
    }
    fields.update(overrides)
    return SourceConfig(**fields)


def kalshi_handler(api_status, scrape_html, hosts=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if hosts is not None:
            hosts.append(request.url.path)
        if "trade-api" in request.url.path:
            return httpx.Response(api_status)
        return httpx.Response(200, text=scrape_html)

    return handler


@pytest.mark.asyncio
async def test_kalshi_api_failure_uses_scrape(sleeps):
    html = next_data_html([kalshi_row("S1")])
    adapter = KalshiAdapter(kalshi_config(), retries=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(kalshi_handler(500, html))) as client:
        markets = await adapter.fetch(client)
    assert [m.market_id for m in markets] == ["kalshi-S1"]


@pytest.mark.asyncio
async def test_kalshi_api_failure_with_empty_scrape_raises(sleeps):
    adapter = KalshiAdapter(kalshi_config(), retries=0, clock=lambda: NOW, sleep=sleeps)
    transport = httpx.MockTransport(kalshi_handler(500, "<html><body>maintenance</body></html>"))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(FetchError) as excinfo:
            await adapter.fetch(client)
    assert excinfo.value.status == 500


@pytest.mark.asyncio
async def test_kalshi_api_failure_without_scrape_url_raises(sleeps):
    adapter = KalshiAdapter(kalshi_config(scrape_url=""), retries=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(kalshi_handler(502, ""))) as client:
        with pytest.raises(FetchError):
            await adapter.fetch(client)


@pytest.mark.asyncio
async def test_kalshi_rate_limit_is_not_scraped(sleeps):
    paths = []
    adapter = KalshiAdapter(kalshi_config(), retries=0, max_rate_limit_waits=0, clock=lambda: NOW, sleep=sleeps)
    async with httpx.AsyncClient(transport=httpx.MockTransport(kalshi_handler(429, "", paths))) as client:
        with pytest.raises(TransientSourceError):
            await adapter.fetch(client)
    assert paths == ["/trade-api/v2/markets"]
