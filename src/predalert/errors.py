"""Error taxonomy for source intake and record mapping."""

from __future__ import annotations

from enum import Enum

RATE_LIMIT_STATUSES = frozenset({429, 503})


class FetchErrorKind(str, Enum):
    TRANSIENT = "transient"  # rate limited / temporarily unavailable
    CLIENT = "client"  # 4xx other than 429, bad payload
    NETWORK = "network"  # connect/read errors, timeouts, 5xx


class PredAlertError(Exception):
    """Base for all package errors."""


class FetchError(PredAlertError):
    """A source could not deliver markets."""

    kind: FetchErrorKind = FetchErrorKind.NETWORK

    def __init__(self, message: str, *, source: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.status = status


class TransientSourceError(FetchError):
    """429/503 from a source. Sets the source cooldown; never an operational alert."""

    kind = FetchErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        source: str = "",
        status: int | None = None,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message, source=source, status=status)
        self.retry_after_ms = retry_after_ms


class NetworkOrClientError(FetchError):
    """Retries exhausted for a non-rate-limit failure."""

    def __init__(
        self,
        message: str,
        *,
        source: str = "",
        status: int | None = None,
        kind: FetchErrorKind = FetchErrorKind.NETWORK,
    ) -> None:
        super().__init__(message, source=source, status=status)
        self.kind = kind


class MappingError(PredAlertError):
    """A single raw record could not be mapped to a Market."""


class CircuitOpenError(PredAlertError):
    """Raised internally when a breaker short-circuits; surfaces only as a degraded result."""

    def __init__(self, name: str, retry_at_ms: int | None) -> None:
        super().__init__(f"circuit '{name}' is open")
        self.name = name
        self.retry_at_ms = retry_at_ms


def is_rate_limit_status(status: int | None) -> bool:
    return status in RATE_LIMIT_STATUSES
