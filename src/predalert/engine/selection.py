"""Eligibility gate, time buckets, keyword categorization and category-diverse selection."""

from __future__ import annotations

import math
import re
from typing import Iterable

from predalert.config.settings import DiversityConfig, Thresholds
from predalert.ingestion.normalize import parse_timestamp_ms, safe_number
from predalert.models import Market
from predalert.timeutil import MS_IN_DAY, MS_IN_HOUR, MS_IN_MINUTE, now_ms

# Outer edge of the bucket ladder
MAX_BUCKET_MS = 30 * MS_IN_DAY

# Ordered: first category with a whole-word keyword hit wins
CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "crypto",
        (
            "bitcoin", "btc", "ethereum", "eth", "solana", "sol", "crypto", "cryptocurrency",
            "dogecoin", "doge", "cardano", "ada", "polygon", "matic", "avalanche", "avax",
            "chainlink", "link", "litecoin", "ltc", "xrp", "ripple", "usdc", "usdt", "stablecoin",
            "defi", "nft", "web3", "blockchain", "altcoin", "meme coin", "shiba", "token",
            "up or down", "updown", "up/down", "bull", "bear", "pump", "dump",
        ),
    ),
    (
        "politics",
        (
            "election", "president", "senate", "congress", "trump", "biden", "democrat", "republican",
            "vote", "poll", "polling", "candidate", "primary", "impeachment", "supreme court",
            "congressional", "governor", "mayor", "political", "policy", "legislation", "bill",
        ),
    ),
    (
        "sports",
        (
            "nfl", "nba", "mlb", "nhl", "super bowl", "world series", "playoff", "championship",
            "game", "match", "tournament", "sport", "team", "player", "score", "win", "lose",
            "football", "basketball", "baseball", "hockey", "soccer", "tennis", "golf",
        ),
    ),
    (
        "entertainment",
        (
            "oscar", "grammy", "emmy", "award", "movie", "film", "tv show", "celebrity",
            "actor", "actress", "music", "album", "song", "concert", "box office", "streaming",
        ),
    ),
    (
        "economics",
        (
            "gdp", "inflation", "unemployment", "fed", "federal reserve", "interest rate",
            "stock market", "dow", "s&p", "nasdaq", "economy", "recession", "gdp growth",
            "jobs report", "cpi", "ppi", "retail sales", "housing",
        ),
    ),
    (
        "technology",
        (
            "apple", "microsoft", "google", "meta", "facebook", "tesla", "ai", "artificial intelligence",
            "chatgpt", "openai", "nvidia", "amd", "intel", "iphone", "product launch", "tech",
        ),
    ),
)

CATEGORY_ORDER: tuple[str, ...] = tuple(name for name, _ in CATEGORY_RULES) + ("other",)

CATEGORY_ALIASES = {"tech": "technology", "econ": "economics"}


def _compile(keywords: Iterable[str]) -> re.Pattern[str]:
    alternation = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)")


_CATEGORY_PATTERNS = tuple((name, _compile(keywords)) for name, keywords in CATEGORY_RULES)


def categorize(title: str | None) -> str:
    """Category for a market title. 'other' when no rule matches."""
    if not title:
        return "other"
    text = title.lower()
    for name, pattern in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return name
    return "other"


def resolve_category(name: str) -> str | None:
    """Canonical category for user input (aliases allowed). None when unknown."""
    key = name.strip().lower()
    key = CATEGORY_ALIASES.get(key, key)
    return key if key in CATEGORY_ORDER else None


def bucket_market(ttr_ms: float) -> str | None:
    if not math.isfinite(ttr_ms) or ttr_ms <= 0:
        return None
    if ttr_ms <= MS_IN_HOUR:
        return "1H"
    if ttr_ms <= MS_IN_DAY:
        return "24H"
    if ttr_ms <= 7 * MS_IN_DAY:
        return "7D"
    if ttr_ms <= MAX_BUCKET_MS:
        return "EXTENDED"
    return None


def ineligibility_reasons(market: Market, thresholds: Thresholds, now: int | None = None) -> list[str]:
    """Every failing eligibility check, as short log-friendly strings. Empty means eligible."""
    ttr = market.time_to_resolve_ms
    if not math.isfinite(ttr) or ttr <= 0:
        return ["not resolving in the future"]
    reasons: list[str] = []
    if math.isfinite(thresholds.max_resolution_ms) and ttr > thresholds.max_resolution_ms:
        reasons.append(f"resolution {ttr / MS_IN_DAY:.0f}d > {thresholds.max_resolution_ms / MS_IN_DAY:.0f}d")
    elif market.bucket is None and ttr > MAX_BUCKET_MS:
        reasons.append("no bucket assigned")
    if safe_number(market.confidence) < thresholds.min_confidence:
        reasons.append(f"confidence {market.confidence} < {thresholds.min_confidence:g}")
    if safe_number(market.liquidity) < thresholds.min_liquidity:
        reasons.append(f"liquidity {market.liquidity:.0f} < {thresholds.min_liquidity:g}")
    if thresholds.max_market_age_minutes and market.created_at:
        created = parse_timestamp_ms(market.created_at)
        if created is not None:
            age_minutes = ((now if now is not None else now_ms()) - created) / MS_IN_MINUTE
            if age_minutes > thresholds.max_market_age_minutes:
                reasons.append(f"age {age_minutes:.0f}m > {thresholds.max_market_age_minutes:g}m")
    return reasons


def is_eligible(market: Market, thresholds: Thresholds, now: int | None = None) -> bool:
    return not ineligibility_reasons(market, thresholds, now)


def _by_rank(markets: Iterable[Market]) -> list[Market]:
    return sorted(markets, key=lambda m: m.rank_score, reverse=True)


def select_with_diversity(markets: list[Market], max_per_category: int = 3, max_total: int = 10) -> list[Market]:
    """
    Round 1 takes the best market per category in CATEGORY_ORDER, repeating up to
    max_per_category rounds. Round 2 backfills the best leftovers, allowing each category
    at most 2 * max_per_category backfilled picks.
    """
    if not markets or max_total <= 0:
        return []
    pools: dict[str, list[Market]] = {}
    for market in _by_rank(markets):
        pools.setdefault(market.category or categorize(market.title), []).append(market)
    order = [c for c in CATEGORY_ORDER if c in pools] + [c for c in pools if c not in CATEGORY_ORDER]

    selected: list[Market] = []
    for _ in range(max_per_category):
        for category in order:
            if len(selected) >= max_total:
                return selected
            if pools[category]:
                selected.append(pools[category].pop(0))

    backfilled: dict[str, int] = {}
    leftovers = _by_rank(m for pool in pools.values() for m in pool)
    for market in leftovers:
        if len(selected) >= max_total:
            break
        category = market.category or categorize(market.title)
        if backfilled.get(category, 0) < 2 * max_per_category:
            selected.append(market)
            backfilled[category] = backfilled.get(category, 0) + 1
    return selected


def select_markets(markets: list[Market], diversity: DiversityConfig) -> list[Market]:
    """Diversity selection when enabled and worthwhile, else top max_total by urgency + confidence."""
    if diversity.enabled and len(markets) > diversity.max_per_category:
        return select_with_diversity(markets, diversity.max_per_category, diversity.max_total)
    return _by_rank(markets)[: diversity.max_total]


def category_counts(markets: Iterable[Market]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for market in markets:
        category = market.category or "other"
        counts[category] = counts.get(category, 0) + 1
    return counts
