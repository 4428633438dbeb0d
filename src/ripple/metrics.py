"""In-memory telemetry for ripple.

Tracks:
- Persistence operation timing, with a warning for slow operations
- Bus publish latency per event type, retries included
- Cache hits and misses per cache
- HTTP request timing per route
- Named counters for fan-out activity (published, dropped, failed events)

Exposed on the /metrics endpoint.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def to_dict(self) -> dict:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(avg, 2),
            "min_ms": round(self.min_ms, 2) if self.count else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0

    def to_dict(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": round(self.hits / total * 100, 2) if total else 0.0,
        }


@dataclass
class Metrics:
    """Process-wide metrics collector. Safe to update from executor threads."""

    _lock: Lock = field(default_factory=Lock)
    db_operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    publishes: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    cache_stats: dict[str, CacheStats] = field(default_factory=lambda: defaultdict(CacheStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.db_operations[operation].record(duration_ms)

    def record_publish(self, event_type: str, duration_ms: float) -> None:
        with self._lock:
            self.publishes[event_type].record(duration_ms)

    def record_cache_hit(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].hits += 1

    def record_cache_miss(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].misses += 1

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def get_counter(self, counter: str) -> int:
        with self._lock:
            return self.counters.get(counter, 0)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "db_operations": {k: v.to_dict() for k, v in self.db_operations.items()},
                "publishes": {k: v.to_dict() for k, v in self.publishes.items()},
                "cache": {k: v.to_dict() for k, v in self.cache_stats.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Clear everything (tests)."""
        with self._lock:
            self.db_operations.clear()
            self.publishes.clear()
            self.cache_stats.clear()
            self.request_stats.clear()
            self.counters.clear()
            self._start_time = time.time()


metrics = Metrics()


@contextmanager
def timed_db_operation(operation: str):
    """Time a persistence operation.

    Usage:
        with timed_db_operation("insert_message"):
            db.insert_message(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_db_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow DB operation: {operation} took {duration_ms:.1f}ms")


@contextmanager
def timed_publish(event_type: str):
    """Time a bus publish. Publishes that end in an error are not recorded."""
    start = time.perf_counter()
    yield
    metrics.record_publish(event_type, (time.perf_counter() - start) * 1000)
