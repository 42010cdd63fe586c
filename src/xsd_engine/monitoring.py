"""In-process performance counters for the engine and its HTTP service.

Components record lightweight events here (model cache hits and misses,
engine operations such as ``build`` or ``validate``, HTTP requests) and the
service reads them back as JSON-ready summaries. Nothing is exported to an
external backend.

Example::

    from xsd_engine.monitoring import get_monitor
    monitor = get_monitor()
    monitor.record_operation("validate", duration=0.004, success=False)
    print(monitor.get_performance_summary()["operations"]["validate"]["failures"])  # -> 1
"""

from __future__ import annotations

import json
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class CacheMetrics:
    """Schema model cache counters.

    Attributes:
        hit_rate: hits / total_requests (0..1), updated on every lookup.
        average_response_time: Mean lookup time in seconds.
        cache_size: Current number of cached models.
    """

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    total_requests: int = 0
    hit_rate: float = 0.0
    average_response_time: float = 0.0
    cache_size: int = 0


@dataclass
class OperationMetrics:
    """Aggregates for one kind of engine operation or HTTP endpoint.

    Attributes:
        count: Number of invocations.
        failures: Invocations that failed (raised, or HTTP status >= 400).
        total_time: Cumulative duration in seconds.
        durations: Rolling window of recent durations.
    """

    count: int = 0
    failures: int = 0
    total_time: float = 0.0
    last_seen: Optional[datetime] = None
    durations: deque = field(default_factory=lambda: deque(maxlen=100))

    @property
    def average_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.count if self.count else 0.0

    def add(self, duration: float, failed: bool, detailed: bool) -> None:
        self.count += 1
        self.total_time += duration
        self.last_seen = datetime.now()
        if failed:
            self.failures += 1
        if detailed:
            self.durations.append(duration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "failures": self.failures,
            "failure_rate_percent": round(self.failure_rate * 100, 2),
            "average_time_ms": round(self.average_time * 1000, 3),
            "max_recent_time_ms": round(max(self.durations, default=0.0) * 1000, 3),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }


class PerformanceMonitor:
    """Thread-safe registry of counters shared by one process."""

    def __init__(self, enable_detailed_tracking: bool = True):
        """Initialize the monitor.

        Args:
            enable_detailed_tracking: Keep the rolling duration windows; turn
                off to save the per-event append.
        """
        self.enable_detailed_tracking = enable_detailed_tracking
        self.start_time = datetime.now()
        self._lock = threading.RLock()
        self.cache_metrics = CacheMetrics()
        self.operations: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self.endpoints: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self.recent_errors: deque = deque(maxlen=100)

    # ---------------- Cache ---------------- #

    def record_cache_hit(self, response_time: float = 0.0) -> None:
        with self._lock:
            self.cache_metrics.hits += 1
            self.cache_metrics.total_requests += 1
            self._update_cache_metrics(response_time)

    def record_cache_miss(self, response_time: float = 0.0) -> None:
        with self._lock:
            self.cache_metrics.misses += 1
            self.cache_metrics.total_requests += 1
            self._update_cache_metrics(response_time)

    def record_cache_eviction(self) -> None:
        with self._lock:
            self.cache_metrics.evictions += 1

    def update_cache_size(self, cache_size: int) -> None:
        with self._lock:
            self.cache_metrics.cache_size = cache_size

    def _update_cache_metrics(self, response_time: float) -> None:
        total = self.cache_metrics.total_requests
        self.cache_metrics.hit_rate = self.cache_metrics.hits / total
        if response_time > 0:
            current_avg = self.cache_metrics.average_response_time
            self.cache_metrics.average_response_time = (
                current_avg * (total - 1) + response_time
            ) / total

    # ---------------- Operations ---------------- #

    def record_operation(self, name: str, duration: float, success: bool = True) -> None:
        """Record one engine operation (``build``, ``validate``, ``decode``, ``encode``).

        Args:
            name: Operation name.
            duration: Wall-clock seconds spent.
            success: False when the operation raised or produced violations.
        """
        with self._lock:
            self.operations[name].add(duration, not success, self.enable_detailed_tracking)

    def record_endpoint_request(
        self, endpoint: str, response_time: float, status_code: int = 200
    ) -> None:
        """Record an HTTP request; status codes >= 400 count as failures."""
        with self._lock:
            failed = status_code >= 400
            self.endpoints[endpoint].add(response_time, failed, self.enable_detailed_tracking)
            if failed:
                self.recent_errors.append(
                    {
                        "endpoint": endpoint,
                        "status_code": status_code,
                        "timestamp": datetime.now().isoformat(),
                    }
                )

    # ---------------- Reporting ---------------- #

    def get_performance_summary(self) -> Dict[str, Any]:
        """Return a snapshot with ``cache``, ``operations``, ``api`` and ``errors`` sections."""
        with self._lock:
            errors_by_status: Dict[int, int] = defaultdict(int)
            for error in self.recent_errors:
                errors_by_status[error["status_code"]] += 1
            busiest = sorted(
                self.endpoints.items(), key=lambda item: item[1].count, reverse=True
            )[:10]
            return {
                "timestamp": datetime.now().isoformat(),
                "uptime_seconds": round((datetime.now() - self.start_time).total_seconds(), 3),
                "cache": self.get_cache_analytics(),
                "operations": {
                    name: metrics.to_dict() for name, metrics in sorted(self.operations.items())
                },
                "api": {
                    "total_requests": sum(m.count for m in self.endpoints.values()),
                    "top_endpoints": [
                        {"endpoint": endpoint, **metrics.to_dict()}
                        for endpoint, metrics in busiest
                    ],
                },
                "errors": {
                    "recent_errors_by_status": dict(errors_by_status),
                    "total_recent_errors": len(self.recent_errors),
                },
            }

    def get_cache_analytics(self) -> Dict[str, Any]:
        with self._lock:
            metrics = self.cache_metrics
            return {
                "hit_rate_percent": round(metrics.hit_rate * 100, 2),
                "hits": metrics.hits,
                "misses": metrics.misses,
                "evictions": metrics.evictions,
                "total_requests": metrics.total_requests,
                "average_response_time_ms": round(metrics.average_response_time * 1000, 3),
                "cache_size": metrics.cache_size,
                "recommendations": self._get_cache_recommendations(),
            }

    def _get_cache_recommendations(self) -> List[str]:
        recommendations = []
        metrics = self.cache_metrics
        if metrics.total_requests and metrics.hit_rate < 0.5:
            recommendations.append(
                "Less than half of model lookups hit the cache. Consider a longer TTL."
            )
        if metrics.evictions > metrics.hits:
            recommendations.append(
                "Models expire more often than they are reused. Consider a longer TTL."
            )
        return recommendations

    def export_metrics(self, file_path: Path) -> None:
        """Write the performance summary to ``file_path`` as JSON."""
        with open(file_path, "w") as f:
            json.dump(self.get_performance_summary(), f, indent=2, default=str)

    def reset_metrics(self) -> None:
        """Reset all counters (tests, manual re-baselining)."""
        with self._lock:
            self.cache_metrics = CacheMetrics()
            self.operations.clear()
            self.endpoints.clear()
            self.recent_errors.clear()
            self.start_time = datetime.now()


_monitor: Optional[PerformanceMonitor] = None


def get_monitor() -> PerformanceMonitor:
    """Return the process-wide monitor, creating it on first use."""
    global _monitor
    if _monitor is None:
        _monitor = PerformanceMonitor()
    return _monitor


def initialize_monitor(enable_detailed_tracking: bool = True) -> PerformanceMonitor:
    """Replace the process-wide monitor with a fresh instance."""
    global _monitor
    _monitor = PerformanceMonitor(enable_detailed_tracking)
    return _monitor
