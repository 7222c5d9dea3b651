"""Abstract source adapter for pluggable market-data sources (Polymarket, Kalshi, ...)."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable

import httpx
import structlog
from bs4 import BeautifulSoup

from predalert.config.settings import SourceConfig
from predalert.errors import FetchError, MappingError
from predalert.ingestion.rate_limit import fetch_with_retry
from predalert.models import Market
from predalert.timeutil import Clock, now_ms

log = structlog.get_logger(__name__)

def extract_next_data_markets(html: str) -> list[dict[str, Any]]:
    """Pull market records out of a Next.js page's __NEXT_DATA__ script (dehydrated react-query state)."""
    soup = BeautifulSoup(html, "html.parser")
    tag = soup.find("script", id="__NEXT_DATA__")
    if tag is None or not tag.string:
        return []
    try:
        parsed = json.loads(tag.string)
    except json.JSONDecodeError:
        return []
    queries = (
        ((parsed.get("props") or {}).get("pageProps") or {}).get("dehydratedState") or {}
    ).get("queries") or []
    markets: list[dict[str, Any]] = []
    for query in queries:
        if not isinstance(query, dict):
            continue
        data = (query.get("state") or {}).get("data")
        if isinstance(data, dict) and isinstance(data.get("markets"), list):
            markets.extend(m for m in data["markets"] if isinstance(m, dict))
    return markets


class SourceAdapter(ABC):
    """Fetch raw records from one source and map them to canonical Markets. Implement per source."""

    source_id: str = ""

    def __init__(
        self,
        config: SourceConfig,
        *,
        retries: int = 3,
        retry_base_delay_ms: int = 750,
        rate_limit_pause_ms: int = 5_000,
        max_rate_limit_waits: int = 2,
        clock: Clock = now_ms,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.config = config
        self.retries = retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self.rate_limit_pause_ms = rate_limit_pause_ms
        self.max_rate_limit_waits = max_rate_limit_waits
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        # Set by the orchestrator so every observed 429/503 trips the source cooldown
        self.on_rate_limited: Callable[[int], None] | None = None
        self.skipped_records = 0

    @property
    def cache_key(self) -> str:
        return f"{self.source_id}:markets"

    @abstractmethod
    def normalize(self, raw: dict[str, Any], now: int) -> Market | None:
        """Map one raw record. None when rejected (archived, expired, no close time); MappingError when malformed."""
        ...

    @abstractmethod
    async def fetch(self, client: httpx.AsyncClient) -> list[Market]:
        """Return canonical Markets, or raise FetchError."""
        ...

    async def scrape(self, client: httpx.AsyncClient) -> list[Market]:
        """Fallback: parse the public markets page."""
        if not self.config.scrape_url:
            return []
        resp = await self._request(
            lambda: client.get(self.config.scrape_url, headers={"Accept": "text/html"})
        )
        raw = extract_next_data_markets(resp.text)
        markets = self.normalize_all(raw)
        log.info("scraped_markets", source=self.source_id, raw=len(raw), mapped=len(markets))
        return markets

    async def scrape_fallback(self, client: httpx.AsyncClient, cause: FetchError | None) -> list[Market]:
        """Scrape after an API failure or an empty API result. An empty or failed scrape re-raises cause."""
        try:
            scraped = await self.scrape(client)
        except (httpx.HTTPError, FetchError) as e:
            log.warning("scrape_failed", source=self.source_id, error=str(e))
            if cause is not None:
                raise cause from e
            return []
        if not scraped and cause is not None:
            raise cause
        return scraped

    def normalize_all(self, rows: Iterable[Any]) -> list[Market]:
        """Map a batch, skipping malformed records without aborting the batch."""
        now = self._clock()
        markets: list[Market] = []
        for row in rows:
            if not isinstance(row, dict):
                self.skipped_records += 1
                continue
            try:
                market = self.normalize(row, now)
            except MappingError as e:
                self.skipped_records += 1
                log.warning("skip_market", source=self.source_id, error=str(e))
                continue
            if market is not None:
                markets.append(market)
        return markets

    async def _request(self, send: Callable[[], Awaitable[httpx.Response]]) -> httpx.Response:
        async def op() -> httpx.Response:
            resp = await send()
            resp.raise_for_status()
            return resp

        return await fetch_with_retry(
            op,
            retries=self.retries,
            base_delay_ms=self.retry_base_delay_ms,
            rate_limit_pause_ms=self.rate_limit_pause_ms,
            max_rate_limit_waits=self.max_rate_limit_waits,
            source=self.source_id,
            on_rate_limited=self.on_rate_limited,
            sleep=self._sleep,
        )

    async def _pause(self, ms: int) -> None:
        if ms > 0:
            await self._sleep(ms / 1000.0)
