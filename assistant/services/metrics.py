"""In-process counters and histograms for the cache and provider path.

Transport (Prometheus, OTLP, logs) is left to whoever reads snapshot().
"""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

CACHE_HIT = "cache.hit"
CACHE_MISS = "cache.miss"
CACHE_JOIN = "cache.join"
CACHE_EVICTION = "cache.eviction"
CACHE_EXPIRED = "cache.expired"
CACHE_PRODUCER_FAILURE = "cache.producer_failure"
CACHE_WAIT_TIMEOUT = "cache.wait_timeout"
PROVIDER_LATENCY_MS = "provider.latency_ms"
PROVIDER_FAILURE = "provider.failure"
PROVIDER_RETRY = "provider.retry"
SESSION_APPEND_FAILURE = "session.append_failure"

DEFAULT_BUCKETS_MS: Tuple[float, ...] = (50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000)


@dataclass
class Histogram:
    """Fixed-bucket histogram. counts[i] holds observations <= buckets[i]; the last slot is overflow."""
    buckets: Tuple[float, ...] = DEFAULT_BUCKETS_MS
    counts: List[int] = field(default_factory=list)
    total: float = 0.0
    n: int = 0

    def __post_init__(self):
        if not self.counts:
            self.counts = [0] * (len(self.buckets) + 1)

    def observe(self, value: float) -> None:
        self.counts[bisect.bisect_left(self.buckets, value)] += 1
        self.total += value
        self.n += 1

    def to_dict(self) -> Dict:
        return {
            "count": self.n,
            "sum": round(self.total, 3),
            "buckets": {str(b): c for b, c in zip(self.buckets, self.counts)},
            "overflow": self.counts[-1],
        }


class Metrics:
    """Thread-safe counter / histogram registry."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._histograms: Dict[str, Histogram] = {}

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            hist = self._histograms.get(name)
            if hist is None:
                hist = self._histograms[name] = Histogram()
            hist.observe(value)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> Dict:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "histograms": {k: h.to_dict() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        """Clear all series (for tests)."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
