"""Polymarket Gamma API adapter - paginated market discovery with page-scrape fallback."""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from predalert.errors import (
    FetchError,
    FetchErrorKind,
    MappingError,
    NetworkOrClientError,
    TransientSourceError,
)
from predalert.ingestion.base import SourceAdapter
from predalert.ingestion.normalize import (
    clamp,
    first_present,
    first_truthy,
    parse_timestamp_ms,
    safe_number,
)
from predalert.models import Market

log = structlog.get_logger(__name__)

SOURCE_ID = "polymarket"
DEFAULT_SPREAD = 0.15
# Stop paginating once this many currently-valid markets are in hand
ENOUGH_VALID_MARKETS = 100

_ID_FIELDS = ("id", "market_id", "condition_id", "conditionId", "question_id", "slug", "market_slug")
_TITLE_FIELDS = ("title", "question", "ticker")
# Ordered close-time candidates (Gamma first, then CLOB and legacy shapes)
_CLOSE_FIELDS = (
    "endDate",
    "end_date_iso",
    "closeTime",
    "expiresAt",
    "closing_time",
    "end_date",
    "game_start_time",
)
_TOKEN_CLOSE_FIELDS = ("expiration_date", "expirationDate", "expiresAt")


def _outcome_price(raw: dict[str, Any]) -> Any:
    """First outcome price from Gamma's outcomePrices (list or JSON-encoded string)."""
    prices = raw.get("outcomePrices")
    if isinstance(prices, str):
        try:
            prices = json.loads(prices)
        except (json.JSONDecodeError, TypeError):
            return None
    if isinstance(prices, list) and prices:
        return prices[0]
    return None


def _close_time(raw: dict[str, Any]) -> Any:
    closes_at = first_truthy(raw, _CLOSE_FIELDS)
    if closes_at:
        return closes_at
    tokens = raw.get("tokens")
    if isinstance(tokens, list):
        for token in tokens:
            if isinstance(token, dict):
                value = first_truthy(token, _TOKEN_CLOSE_FIELDS)
                if value:
                    return value
    return None


def parse_market(raw: dict[str, Any], now: int) -> Market | None:
    """Convert a Gamma/CLOB market object to canonical Market. None when archived, undated or expired."""
    if raw.get("archived"):
        return None
    market_id = first_truthy(raw, _ID_FIELDS)
    if not market_id:
        raise MappingError("polymarket record has no id")
    resolves_at = parse_timestamp_ms(_close_time(raw))
    if resolves_at is None or resolves_at - now <= 0:
        return None
    try:
        slug = raw.get("slug") or raw.get("market_slug")
        url = raw.get("url") or (
            f"https://polymarket.com/market/{slug}" if slug else f"https://polymarket.com/market/{market_id}"
        )

        best_bid = safe_number(first_present(raw, ("bestBid", "yesBid", "yes.bid")))
        best_ask = safe_number(first_present(raw, ("bestAsk", "yesAsk", "yes.ask")))
        spread = max(best_ask - best_bid, 0.0) if best_bid > 0 and best_ask > 0 else DEFAULT_SPREAD

        mid = (best_bid + best_ask) / 2 if best_bid and best_ask else 0.0
        price_raw = first_present(raw, ("lastPrice", "lastTradePrice", "yesPrice", "price", "midPrice"))
        if price_raw is None:
            price_raw = _outcome_price(raw)
        last_price = clamp(safe_number(price_raw, mid), 0.0, 1.0)

        accepting = raw.get("acceptingOrders") is True or raw.get("accepting_orders") is True
        return Market(
            source=SOURCE_ID,
            market_id=f"polymarket-{market_id}",
            title=str(first_truthy(raw, _TITLE_FIELDS) or "Untitled market"),
            url=str(url),
            resolves_at=resolves_at,
            time_to_resolve_ms=float(resolves_at - now),
            last_price=last_price,
            volume_24h=safe_number(
                first_present(raw, ("volume24hr", "volume24h", "volume_24h", "totalVolume24h", "lastDayVolume"))
            ),
            liquidity=safe_number(
                first_present(raw, ("liquidityNum", "liquidity", "bestBidSize", "orderbook.total_yes", "yes.liquidity"))
            ),
            price_change_1h=safe_number(first_present(raw, ("oneHourPriceChange", "change1h", "change.h1", "delta1h"))),
            price_change_24h=safe_number(
                first_present(raw, ("oneDayPriceChange", "change24h", "change.h24", "delta24h"))
            ),
            price_change=safe_number(first_present(raw, ("oneWeekPriceChange", "priceChange"))),
            spread=spread,
            created_at=first_truthy(raw, ("createdAt", "created_at", "opened_at", "created_time")),
            priority=accepting,
            extra={"slug": slug, "accepting_orders": accepting},
        )
    except (TypeError, ValueError) as e:
        raise MappingError(f"polymarket market {market_id}: {e}") from e


def _page_rows(payload: Any) -> list[Any]:
    """Gamma returns a bare list; other shapes wrap it."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "events", "markets", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


class PolymarketAdapter(SourceAdapter):
    """Polymarket: Gamma REST pages, falling back to a markets-page scrape."""

    source_id = SOURCE_ID

    def normalize(self, raw: dict[str, Any], now: int) -> Market | None:
        return parse_market(raw, now)

    async def fetch(self, client: httpx.AsyncClient) -> list[Market]:
        try:
            markets = await self._fetch_api(client)
        except TransientSourceError:
            raise
        except FetchError as e:
            log.warning("polymarket_api_failed", error=str(e), status=e.status)
            return await self.scrape_fallback(client, cause=e)
        if not markets:
            log.warning("polymarket_no_valid_markets", api_base=self.config.api_base)
            return await self.scrape_fallback(client, cause=None)
        return markets

    async def _fetch_api(self, client: httpx.AsyncClient) -> list[Market]:
        limit = self.config.page_limit
        raw_rows: list[dict[str, Any]] = []
        markets: list[Market] = []
        last_error: FetchError | None = None
        for page in range(self.config.max_pages):
            params = {
                "order": "id",
                "ascending": "false",
                "closed": "false",
                "limit": limit,
                "offset": page * limit,
            }
            try:
                resp = await self._request(lambda: client.get(self.config.api_base, params=params))
            except TransientSourceError:
                if raw_rows:
                    log.warning("polymarket_page_rate_limited", page=page + 1, stopping=True)
                    break
                raise
            except FetchError as e:
                last_error = e
                log.warning("polymarket_page_failed", page=page + 1, error=str(e))
                continue
            try:
                rows = _page_rows(resp.json())
            except ValueError as e:
                last_error = NetworkOrClientError(
                    f"polymarket page {page + 1}: invalid JSON", source=SOURCE_ID, kind=FetchErrorKind.CLIENT
                )
                log.warning("polymarket_page_invalid", page=page + 1, error=str(e))
                continue
            if not rows:
                break
            raw_rows.extend(r for r in rows if isinstance(r, dict))
            markets.extend(self.normalize_all(rows))
            log.debug("polymarket_page", page=page + 1, rows=len(rows), valid=len(markets))
            if len(rows) < limit or len(markets) >= ENOUGH_VALID_MARKETS:
                break
            await self._pause(self.config.page_delay_ms)
        if not raw_rows:
            raise last_error or FetchError(
                f"No markets returned from Polymarket API at {self.config.api_base}", source=SOURCE_ID
            )
        log.info("polymarket_fetched", raw=len(raw_rows), valid=len(markets))
        return markets
