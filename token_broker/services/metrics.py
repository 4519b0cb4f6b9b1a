"""
In-process instrumentation for token brokering.

Counters and gauges are labelled per store with the ``env``/``sigla``/``lojaId``
labels dashboards already use; ``snapshot()`` renders everything as a
JSON-serializable dict for the ``/metrics`` endpoint.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Tuple

from token_broker.models.tenant import TenantKey

LabelSet = Tuple[Tuple[str, str], ...]


def _labels(**labels: str) -> LabelSet:
    return tuple(sorted(labels.items()))


@dataclass
class LatencySummary:
    """Running count/sum/max of observed durations."""

    count: int = 0
    total_seconds: float = 0.0
    max_seconds: float = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total_seconds += seconds
        self.max_seconds = max(self.max_seconds, seconds)

    @property
    def avg_seconds(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_seconds / self.count

    def to_dict(self) -> Dict:
        return {
            "count": self.count,
            "avg_seconds": round(self.avg_seconds, 4),
            "max_seconds": round(self.max_seconds, 4),
        }


class TokenMetrics:
    """
    Thread-safe counters, gauges and latency summaries.

    Usage:
        metrics = TokenMetrics()
        metrics.cache_hit(tenant)
        metrics.observe_google_request("oauth_refresh", 0.21)
        metrics.snapshot()
    """

    COUNTERS = (
        "google_token_refresh_total",
        "google_token_refresh_error_total",
        "google_token_cache_hit_total",
        "google_token_cache_miss_total",
        "http_requests_total",
        "http_request_errors_total",
    )
    GAUGES = (
        "google_token_expires_at_timestamp_seconds",
        "google_store_last_seen_timestamp_seconds",
    )

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelSet, int]] = {
            name: defaultdict(int) for name in self.COUNTERS
        }
        self._gauges: Dict[str, Dict[LabelSet, float]] = {name: {} for name in self.GAUGES}
        self._latencies: Dict[str, Dict[LabelSet, LatencySummary]] = {
            "google_request_duration_seconds": defaultdict(LatencySummary),
            "http_request_duration_seconds": defaultdict(LatencySummary),
        }

    def _inc(self, name: str, labels: LabelSet) -> None:
        with self._lock:
            self._counters[name][labels] += 1

    def _set(self, name: str, labels: LabelSet, value: float) -> None:
        with self._lock:
            self._gauges[name][labels] = value

    def _observe(self, name: str, labels: LabelSet, seconds: float) -> None:
        with self._lock:
            self._latencies[name][labels].observe(seconds)

    def cache_hit(self, tenant: TenantKey) -> None:
        self._inc("google_token_cache_hit_total", _labels(**tenant.labels()))

    def cache_miss(self, tenant: TenantKey) -> None:
        self._inc("google_token_cache_miss_total", _labels(**tenant.labels()))

    def refresh_started(self, tenant: TenantKey) -> None:
        self._inc("google_token_refresh_total", _labels(**tenant.labels()))

    def refresh_failed(self, tenant: TenantKey, reason: str) -> None:
        self._inc(
            "google_token_refresh_error_total", _labels(reason=reason, **tenant.labels())
        )

    def token_expires_at(self, tenant: TenantKey, expires_at_ms: int) -> None:
        self._set(
            "google_token_expires_at_timestamp_seconds",
            _labels(**tenant.labels()),
            expires_at_ms // 1000,
        )

    def store_seen(self, tenant: TenantKey, at: Optional[float] = None) -> None:
        self._set(
            "google_store_last_seen_timestamp_seconds",
            _labels(**tenant.labels()),
            int(at if at is not None else time.time()),
        )

    def observe_google_request(self, endpoint: str, seconds: float) -> None:
        self._observe("google_request_duration_seconds", _labels(endpoint=endpoint), seconds)

    def observe_http_request(
        self, method: str, route: str, status_code: int, seconds: float
    ) -> None:
        labels = _labels(method=method, route=route, status_code=str(status_code))
        self._observe("http_request_duration_seconds", labels, seconds)
        self._inc("http_requests_total", labels)
        if status_code >= 400:
            self._inc("http_request_errors_total", labels)

    def counter_value(self, name: str, **labels: str) -> int:
        with self._lock:
            return self._counters[name].get(_labels(**labels), 0)

    def gauge_value(self, name: str, **labels: str) -> Optional[float]:
        with self._lock:
            return self._gauges[name].get(_labels(**labels))

    def snapshot(self) -> Dict:
        """Render every series as ``{name: [{"labels": {...}, "value": ...}]}``."""
        with self._lock:
            result: Dict[str, list] = {}
            for name, series in {**self._counters, **self._gauges}.items():
                result[name] = [
                    {"labels": dict(labels), "value": value} for labels, value in series.items()
                ]
            for name, series in self._latencies.items():
                result[name] = [
                    {"labels": dict(labels), **summary.to_dict()}
                    for labels, summary in series.items()
                ]
            return result

    def reset(self) -> None:
        with self._lock:
            for series in self._counters.values():
                series.clear()
            for series in self._gauges.values():
                series.clear()
            for series in self._latencies.values():
                series.clear()


# Global metrics instance
_metrics: Optional[TokenMetrics] = None


def get_metrics() -> TokenMetrics:
    """Get the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = TokenMetrics()
    return _metrics


__all__ = ["LatencySummary", "TokenMetrics", "get_metrics"]
