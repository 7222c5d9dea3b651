"""Health metrics - per-source API outcomes, scan timings, alert counts, uptime."""

from __future__ import annotations

from collections import deque
from typing import Any

from predalert.timeutil import Clock, format_duration, now_ms


class SourceHealth:
    """Rolling API health for one source."""

    def __init__(self, window: int = 100) -> None:
        self.success = 0
        self.failures = 0
        self.rate_limited = 0
        self.last_success: int | None = None
        self.last_failure: int | None = None
        self.fetched = 0
        self.alerts = 0
        self._response_times: deque[float] = deque(maxlen=window)

    def push_response_time(self, ms: float) -> None:
        self._response_times.append(ms)

    @property
    def avg_response_ms(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failures": self.failures,
            "rate_limited": self.rate_limited,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
            "avg_response_ms": round(self.avg_response_ms, 1),
            "fetched": self.fetched,
            "alerts": self.alerts,
        }


class HealthMonitor:
    """Operational counters for scans and sources. In-memory only."""

    def __init__(self, clock: Clock = now_ms, response_window: int = 100) -> None:
        self._clock = clock
        self._window = response_window
        self.started_at = clock()
        self.sources: dict[str, SourceHealth] = {}
        self.scans_total = 0
        self.scans_successful = 0
        self.scans_failed = 0
        self.last_scan_time: int | None = None
        self.last_scan_duration_ms: float | None = None
        self.avg_scan_duration_ms = 0.0
        self.markets_processed = 0
        self.alerts_sent = 0
        self.by_bucket: dict[str, int] = {}
        self.errors_total = 0
        self.errors_by_type: dict[str, int] = {}

    def _source(self, name: str) -> SourceHealth:
        if name not in self.sources:
            self.sources[name] = SourceHealth(self._window)
        return self.sources[name]

    def record_api_call(
        self, source: str, success: bool, duration_ms: float | None = None, rate_limited: bool = False
    ) -> None:
        api = self._source(source)
        now = self._clock()
        if rate_limited:
            api.rate_limited += 1
            api.last_failure = now
            self.errors_total += 1
        elif success:
            api.success += 1
            api.last_success = now
            if duration_ms is not None:
                api.push_response_time(duration_ms)
        else:
            api.failures += 1
            api.last_failure = now
            self.errors_total += 1

    def record_scan(self, duration_ms: float, success: bool, considered: int = 0, alerted: int = 0) -> None:
        self.scans_total += 1
        self.last_scan_time = self._clock()
        self.last_scan_duration_ms = duration_ms
        if success:
            self.scans_successful += 1
            n = self.scans_successful
            self.avg_scan_duration_ms = (self.avg_scan_duration_ms * (n - 1) + duration_ms) / n
        else:
            self.scans_failed += 1
        self.markets_processed += considered
        self.alerts_sent += alerted

    def record_market(self, source: str, bucket: str | None) -> None:
        self._source(source).fetched += 1
        if bucket:
            self.by_bucket[bucket] = self.by_bucket.get(bucket, 0) + 1

    def record_alert(self, source: str) -> None:
        self._source(source).alerts += 1

    def record_error(self, error_type: str) -> int:
        """Count an error by type. Returns the running count for that type."""
        self.errors_total += 1
        self.errors_by_type[error_type] = self.errors_by_type.get(error_type, 0) + 1
        return self.errors_by_type[error_type]

    def overall_status(self) -> str:
        """healthy: calls made and none failed; degraded: some source still succeeding; else unhealthy."""
        failures = sum(s.failures for s in self.sources.values())
        successes = sum(s.success for s in self.sources.values())
        if failures == 0 and successes > 0:
            return "healthy"
        if any(s.success > 0 for s in self.sources.values()):
            return "degraded"
        return "unhealthy"

    @property
    def uptime_ms(self) -> int:
        return self._clock() - self.started_at

    def snapshot(self) -> dict[str, Any]:
        success_rate = (self.scans_successful / self.scans_total * 100) if self.scans_total else 0.0
        return {
            "status": self.overall_status(),
            "uptime": format_duration(self.uptime_ms),
            "scans": {
                "total": self.scans_total,
                "successful": self.scans_successful,
                "failed": self.scans_failed,
                "success_rate": round(success_rate, 1),
                "avg_duration_ms": round(self.avg_scan_duration_ms),
                "last_scan_time": self.last_scan_time,
            },
            "markets": {
                "processed": self.markets_processed,
                "alerts": self.alerts_sent,
                "by_bucket": dict(self.by_bucket),
            },
            "sources": {name: s.as_dict() for name, s in self.sources.items()},
            "errors": {"total": self.errors_total, "by_type": dict(self.errors_by_type)},
        }
