"""Tagged fetch result: Ok | Degraded | Failed."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ResultStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"  # circuit open, cooldown, or fallback served
    FAILED = "failed"


@dataclass
class FetchResult(Generic[T]):
    """Outcome of a guarded call. value is None unless OK, or DEGRADED with fallback data."""

    status: ResultStatus
    value: T | None = None
    reason: str | None = None
    error: BaseException | None = None
    cached: bool = False

    @classmethod
    def ok(cls, value: T, *, cached: bool = False) -> FetchResult[T]:
        return cls(ResultStatus.OK, value=value, cached=cached)

    @classmethod
    def degraded(
        cls, reason: str, value: T | None = None, error: BaseException | None = None
    ) -> FetchResult[T]:
        return cls(ResultStatus.DEGRADED, value=value, reason=reason, error=error)

    @classmethod
    def failed(cls, error: BaseException, reason: str | None = None) -> FetchResult[T]:
        return cls(ResultStatus.FAILED, reason=reason or str(error), error=error)

    @property
    def is_ok(self) -> bool:
        return self.status is ResultStatus.OK

    @property
    def is_failed(self) -> bool:
        return self.status is ResultStatus.FAILED
