"""TOML config loading and profiles."""

from __future__ import annotations

import copy
import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from predalert.timeutil import MS_IN_DAY, MS_IN_MINUTE

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"

DEFAULT_USER_AGENT = "PredAlert/0.1 (+https://github.com/predalert/predalert)"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base. Override values take precedence; base is untouched."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    directory = _find_config_dir(config_dir)
    default_path = directory / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = directory / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = deep_merge(base, overlay)
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir)
    return Settings.from_dict(raw)


class Thresholds(BaseModel):
    """Eligibility gate."""

    min_confidence: float = 30
    min_liquidity: float = 500
    max_resolution_ms: float = 30 * MS_IN_DAY
    max_market_age_minutes: float | None = 4 * 24 * 60


class DiversityConfig(BaseModel):
    enabled: bool = True
    max_per_category: int = Field(3, ge=1)
    max_total: int = Field(10, ge=1)


class BreakerConfig(BaseModel):
    """Per-source circuit breaker thresholds."""

    failure_threshold: int = Field(5, ge=1)
    reset_timeout_ms: int = 60_000
    monitoring_window_ms: int = 60_000


class SourceConfig(BaseModel):
    """One market-data source."""

    enabled: bool = True
    api_base: str = ""
    scrape_url: str = ""
    page_limit: int = 1000
    max_pages: int = 5
    page_delay_ms: int = 500
    rate_limit_cooldown_ms: int = 5 * MS_IN_MINUTE
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)


_SOURCE_DEFAULTS: dict[str, dict[str, Any]] = {
    "polymarket": {
        "api_base": "https://gamma-api.polymarket.com/markets",
        "scrape_url": "https://polymarket.com/markets",
        "breaker": {"failure_threshold": 5, "reset_timeout_ms": 60_000, "monitoring_window_ms": 60_000},
    },
    "kalshi": {
        "api_base": "https://api.elections.kalshi.com/trade-api/v2/markets",
        "scrape_url": "https://kalshi.com/markets",
        "rate_limit_cooldown_ms": 30 * MS_IN_MINUTE,
        "breaker": {"failure_threshold": 3, "reset_timeout_ms": 300_000, "monitoring_window_ms": 60_000},
    },
}


class Settings:
    """Application settings from TOML config."""

    def __init__(
        self,
        *,
        scan: dict[str, Any] | None = None,
        http: dict[str, Any] | None = None,
        thresholds: dict[str, Any] | None = None,
        diversity: dict[str, Any] | None = None,
        scoring: dict[str, Any] | None = None,
        sources: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.scan = scan or {}
        self.http = http or {}
        self.thresholds_raw = thresholds or {}
        self.diversity_raw = diversity or {}
        self.scoring = scoring or {}
        self.sources = sources or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            scan=raw.get("scan"),
            http=raw.get("http"),
            thresholds=raw.get("thresholds"),
            diversity=raw.get("diversity"),
            scoring=raw.get("scoring"),
            sources=raw.get("sources"),
            logging=raw.get("logging"),
        )

    # Convenience accessors with defaults
    @property
    def scan_interval_minutes(self) -> int:
        return max(1, min(int(self.scan.get("interval_minutes", 1)), 60))

    @property
    def duplicate_suppression_minutes(self) -> float:
        return float(self.scan.get("duplicate_suppression_minutes", 60))

    @property
    def sweep_interval_sec(self) -> float:
        return float(self.scan.get("sweep_interval_sec", 15 * 60))

    @property
    def cache_ttl_ms(self) -> int:
        return int(self.scan.get("cache_ttl_ms", 5 * MS_IN_MINUTE))

    @property
    def op_alert_ttl_ms(self) -> int:
        return int(self.scan.get("op_alert_ttl_ms", 30 * MS_IN_MINUTE))

    @property
    def user_agent(self) -> str:
        return self.http.get("user_agent", DEFAULT_USER_AGENT)

    @property
    def timeout_sec(self) -> float:
        return float(self.http.get("timeout_ms", 10_000)) / 1000.0

    @property
    def retries(self) -> int:
        return int(self.http.get("retries", 3))

    @property
    def retry_base_delay_ms(self) -> int:
        return int(self.http.get("retry_base_delay_ms", 750))

    @property
    def rate_limit_pause_ms(self) -> int:
        return int(self.http.get("rate_limit_pause_ms", 5_000))

    @property
    def max_rate_limit_waits(self) -> int:
        return int(self.http.get("max_rate_limit_waits", 2))

    @property
    def thresholds(self) -> Thresholds:
        return Thresholds(**self.thresholds_raw)

    @property
    def diversity(self) -> DiversityConfig:
        return DiversityConfig(**self.diversity_raw)

    @property
    def scoring_overrides(self) -> dict[str, Any]:
        return dict(self.scoring)

    def source(self, name: str) -> SourceConfig:
        """Source config for name, layered over built-in defaults."""
        raw = deep_merge(_SOURCE_DEFAULTS.get(name, {}), self.sources.get(name) or {})
        return SourceConfig(**raw)

    @property
    def source_names(self) -> list[str]:
        names = list(_SOURCE_DEFAULTS)
        names.extend(n for n in self.sources if n not in names)
        return [n for n in names if self.source(n).enabled]

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
