"""Kalshi REST adapter - public v2 market list with cursor paging and page-scrape fallback."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from predalert.errors import FetchError, MappingError, TransientSourceError
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

SOURCE_ID = "kalshi"
DEFAULT_SPREAD = 0.10
REJECTED_STATUSES = frozenset({"settled", "finalized", "determined", "closed", "expired"})
TRADABLE_STATUSES = frozenset({"active", "open"})

_CLOSE_FIELDS = ("close_time", "close_time_iso", "expiration_time", "end_date", "settlement_time")


def _cents_to_prob(value: float) -> float:
    """Kalshi quotes in cents (0-100); some payloads already use [0, 1]."""
    return value / 100 if value > 1 else value


def parse_market(raw: dict[str, Any], now: int) -> Market | None:
    """Convert a Kalshi market object to canonical Market. None when settled, undated or expired."""
    status = str(raw.get("status") or "").lower()
    if status in REJECTED_STATUSES:
        return None
    market_id = first_truthy(raw, ("id", "market_id", "ticker"))
    if not market_id:
        raise MappingError("kalshi record has no id/ticker")
    resolves_at = parse_timestamp_ms(first_truthy(raw, _CLOSE_FIELDS))
    if resolves_at is None or resolves_at - now <= 0:
        return None
    try:
        ticker = raw.get("ticker")
        url = raw.get("url") or (
            f"https://kalshi.com/markets/{ticker}" if ticker else f"https://kalshi.com/events/{market_id}"
        )
        yes_bid = safe_number(first_present(raw, ("yes_bid", "order_book.yes_bid", "orderbook.yes_bid", "bid_yes")))
        yes_ask = safe_number(first_present(raw, ("yes_ask", "order_book.yes_ask", "orderbook.yes_ask", "ask_yes")))
        spread = max(yes_ask - yes_bid, 0.0) / 100 if yes_bid > 0 and yes_ask > 0 else DEFAULT_SPREAD

        price_raw = first_present(raw, ("last_price", "last_price_cents", "yes_price", "ticker_price"))
        if price_raw is None:
            price_raw = yes_bid or yes_ask
        last_price = clamp(_cents_to_prob(safe_number(price_raw)), 0.0, 1.0)

        return Market(
            source=SOURCE_ID,
            market_id=f"kalshi-{market_id}",
            title=str(first_truthy(raw, ("title", "question", "name", "ticker")) or "Untitled market"),
            url=str(url),
            resolves_at=resolves_at,
            time_to_resolve_ms=float(resolves_at - now),
            last_price=last_price,
            volume_24h=safe_number(first_present(raw, ("volume_24h", "volume24h", "volume.day", "total_volume"))),
            liquidity=safe_number(first_present(raw, ("open_interest", "liquidity", "order_book.liquidity", "float"))),
            price_change_1h=safe_number(first_present(raw, ("price_change_1h", "change1h"))) / 100,
            price_change_24h=safe_number(first_present(raw, ("price_change_24h", "change24h"))) / 100,
            spread=spread,
            created_at=first_truthy(raw, ("listed_time", "created_time", "open_time")),
            priority=status in TRADABLE_STATUSES,
            extra={"ticker": ticker, "status": status or None},
        )
    except (TypeError, ValueError) as e:
        raise MappingError(f"kalshi market {market_id}: {e}") from e


class KalshiAdapter(SourceAdapter):
    """Kalshi: unauthenticated v2 market list, falling back to a markets-page scrape."""

    source_id = SOURCE_ID

    def normalize(self, raw: dict[str, Any], now: int) -> Market | None:
        return parse_market(raw, now)

    async def fetch(self, client: httpx.AsyncClient) -> list[Market]:
        try:
            markets = await self._fetch_api(client)
        except TransientSourceError:
            raise
        except FetchError as e:
            log.warning("kalshi_api_failed", error=str(e), status=e.status)
            return await self.scrape_fallback(client, cause=e)
        if not markets:
            log.warning("kalshi_no_valid_markets", api_base=self.config.api_base)
            return await self.scrape_fallback(client, cause=None)
        return markets

    async def _fetch_api(self, client: httpx.AsyncClient) -> list[Market]:
        if not self.config.api_base:
            return []
        markets: list[Market] = []
        cursor: str | None = None
        for page in range(self.config.max_pages):
            params: dict[str, Any] = {"status": "open", "limit": self.config.page_limit}
            if cursor:
                params["cursor"] = cursor
            resp = await self._request(
                lambda: client.get(self.config.api_base, params=params, headers={"Accept": "application/json"})
            )
            try:
                payload = resp.json()
            except ValueError as e:
                raise FetchError(f"kalshi page {page + 1}: invalid JSON", source=SOURCE_ID) from e
            rows = payload.get("markets") if isinstance(payload, dict) else None
            if not rows:
                break
            markets.extend(self.normalize_all(rows))
            cursor = payload.get("cursor") or None
            if not cursor:
                break
            await self._pause(self.config.page_delay_ms)
        log.info("kalshi_fetched", valid=len(markets))
        return markets
