"""
Observability metrics for the acceleration layer.

Tracks:
- Latency percentiles (p50, p95, p99) per endpoint
- Cache hits / misses / sets per category (search, tabs, suggestions)
- Prefetch outcomes
- Request and error counts per endpoint
"""

import statistics
import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Dict, Optional

CACHE_CATEGORIES = ("search", "tabs", "suggestions", "other")
CACHE_OPERATIONS = ("hits", "misses", "sets")
PREFETCH_OUTCOMES = ("accepted", "ignored", "cached", "skipped_cached", "failed")

_OPERATION_ALIASES = {"hit": "hits", "miss": "misses", "set": "sets"}


class MetricsCollector:
    """
    In-memory metrics collector.

    Counters are per process; the /metrics endpoint reports the view of the
    worker that served the request.
    """

    def __init__(self, window_size: int = 1000):
        """
        Initialize metrics collector.

        Args:
            window_size: Number of recent samples to keep for percentiles
        """
        self.window_size = window_size
        self._lock = threading.Lock()

        # Latency tracking (sliding window)
        self.latencies: Dict[str, deque] = defaultdict(lambda: deque(maxlen=window_size))

        # Cache metrics per category
        self.cache_counts: Dict[str, Dict[str, int]] = {
            category: {op: 0 for op in CACHE_OPERATIONS} for category in CACHE_CATEGORIES
        }

        self.prefetch_counts: Dict[str, int] = {outcome: 0 for outcome in PREFETCH_OUTCOMES}

        # Request counters
        self.request_counts: Dict[str, int] = defaultdict(int)
        self.error_counts: Dict[str, int] = defaultdict(int)

        self.start_time = datetime.utcnow()
        self.last_reset = datetime.utcnow()

    def record_latency(self, endpoint: str, latency_ms: float):
        """Record a latency sample for an endpoint."""
        with self._lock:
            self.latencies[endpoint].append(latency_ms)
            self.request_counts[endpoint] += 1

    def record_cache_event(self, category: str, operation: str):
        """Record a cache hit/miss/set for a category."""
        operation = _OPERATION_ALIASES.get(operation, operation)
        if operation not in CACHE_OPERATIONS:
            return
        if category not in self.cache_counts:
            category = "other"
        with self._lock:
            self.cache_counts[category][operation] += 1

    def record_prefetch(self, outcome: str):
        with self._lock:
            self.prefetch_counts[outcome] = self.prefetch_counts.get(outcome, 0) + 1

    def record_error(self, endpoint: str):
        """Record an error for an endpoint."""
        with self._lock:
            self.error_counts[endpoint] += 1

    def get_totals(self) -> Dict[str, int]:
        totals = {op: 0 for op in CACHE_OPERATIONS}
        for counts in self.cache_counts.values():
            for op in CACHE_OPERATIONS:
                totals[op] += counts[op]
        return totals

    def get_cache_hit_rate(self, category: Optional[str] = None) -> float:
        """Get the cache hit rate as a percentage (all categories when None)."""
        counts = self.get_totals() if category is None else self.cache_counts.get(category)
        if not counts:
            return 0.0
        total = counts["hits"] + counts["misses"]
        if total == 0:
            return 0.0
        return (counts["hits"] / total) * 100.0

    def get_percentile(self, endpoint: str, percentile: float) -> Optional[float]:
        """
        Get a latency percentile for an endpoint.

        Args:
            endpoint: Endpoint name
            percentile: Percentile (0-100)

        Returns:
            Latency in ms, or None if insufficient data
        """
        if endpoint not in self.latencies or len(self.latencies[endpoint]) == 0:
            return None

        values = sorted(self.latencies[endpoint])
        if len(values) < 10:  # Need at least 10 samples for meaningful percentiles
            return None

        index = int(len(values) * (percentile / 100.0))
        index = min(index, len(values) - 1)
        return values[index]

    def get_error_rate(self, endpoint: str) -> float:
        total_requests = self.request_counts[endpoint]
        if total_requests == 0:
            return 0.0
        return (self.error_counts[endpoint] / total_requests) * 100.0

    def get_cache_summary(self) -> Dict:
        summary = {}
        for category in CACHE_CATEGORIES:
            counts = dict(self.cache_counts[category])
            counts["hit_rate_pct"] = round(self.get_cache_hit_rate(category), 2)
            summary[category] = counts
        total = self.get_totals()
        total["hit_rate_pct"] = round(self.get_cache_hit_rate(), 2)
        summary["total"] = total
        return summary

    def get_summary(self) -> Dict:
        """
        Get a summary of all metrics.

        Returns:
            Dict with cache, prefetch and per-endpoint metrics
        """
        uptime_seconds = (datetime.utcnow() - self.start_time).total_seconds()

        summary = {
            "uptime_seconds": uptime_seconds,
            "cache": self.get_cache_summary(),
            "prefetch": dict(self.prefetch_counts),
            "endpoints": {},
        }

        for endpoint in list(self.request_counts.keys()):
            p50 = self.get_percentile(endpoint, 50)
            p95 = self.get_percentile(endpoint, 95)
            p99 = self.get_percentile(endpoint, 99)

            endpoint_metrics = {
                "total_requests": self.request_counts[endpoint],
                "total_errors": self.error_counts[endpoint],
                "error_rate_pct": round(self.get_error_rate(endpoint), 2),
            }

            if p50 is not None:
                endpoint_metrics["latency_p50_ms"] = round(p50, 2)
            if p95 is not None:
                endpoint_metrics["latency_p95_ms"] = round(p95, 2)
            if p99 is not None:
                endpoint_metrics["latency_p99_ms"] = round(p99, 2)

            if len(self.latencies[endpoint]) > 0:
                endpoint_metrics["latency_avg_ms"] = round(
                    statistics.mean(self.latencies[endpoint]), 2
                )

            summary["endpoints"][endpoint] = endpoint_metrics

        return summary

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.latencies.clear()
            for counts in self.cache_counts.values():
                for op in CACHE_OPERATIONS:
                    counts[op] = 0
            self.prefetch_counts = {outcome: 0 for outcome in PREFETCH_OUTCOMES}
            self.request_counts.clear()
            self.error_counts.clear()
            self.last_reset = datetime.utcnow()


# Global metrics collector instance
metrics_collector = MetricsCollector()


def record_request_metrics(endpoint: str, latency_ms: float, is_error: bool = False):
    """
    Record latency and error status for one request.

    Args:
        endpoint: Endpoint path (e.g. "/search", "/cache-check")
        latency_ms: Total request latency in milliseconds
        is_error: Whether this request resulted in an error
    """
    metrics_collector.record_latency(endpoint, latency_ms)
    if is_error:
        metrics_collector.record_error(endpoint)
