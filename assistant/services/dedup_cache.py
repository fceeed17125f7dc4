"""Bounded LRU/TTL response cache with single-flight coordination.

Concurrent identical requests share one producer call; repeated requests are
served from memory until their TTL lapses or they are evicted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from assistant.errors import Timeout
from assistant.services import metrics as m
from assistant.services.metrics import Metrics
from assistant.types import Completion, Fingerprint

logger = logging.getLogger("assistant.cache")

Producer = Callable[[], Completion]
Weigher = Callable[[Completion], int]

HIT = "hit"
JOINED = "joined"
PRODUCED = "produced"


def count_weigher(completion: Completion) -> int:
    return 1


def chars_weigher(completion: Completion) -> int:
    return max(1, len(completion.text))


WEIGHERS: Dict[str, Weigher] = {"count": count_weigher, "chars": chars_weigher}


@dataclass
class CacheEntry:
    fingerprint: Fingerprint
    completion: Completion
    created_at: float
    last_access: float
    weight: int


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    joins: int = 0
    evictions: int = 0
    expirations: int = 0
    failures: int = 0
    wait_timeouts: int = 0
    size: int = 0
    weight: int = 0
    in_flight: int = 0


class _InFlight:
    """One pending producer call and the callers waiting on it."""

    __slots__ = ("fingerprint", "future", "waiters")

    def __init__(self, fingerprint: Fingerprint):
        self.fingerprint = fingerprint
        self.future: Future = Future()
        self.waiters = 1


class DedupCache:
    """
    Fingerprint -> Completion cache with join-or-create semantics.

    - The entry map and the in-flight map are one logical structure under
      one lock; a fingerprint is in at most one of them.
    - The lock is only held for map work. Each producer runs on its own
      thread, so a slow provider never blocks unrelated fingerprints.
    - Failures are delivered to every waiter and never cached.
    - A caller whose timeout elapses detaches with Timeout; the producer
      keeps running and still populates the cache.
    """

    def __init__(
        self,
        max_weight: int = 1000,
        ttl_s: float = 600.0,
        *,
        weigher: Weigher = count_weigher,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[Metrics] = None,
    ):
        if max_weight <= 0:
            raise ValueError("max_weight must be positive")
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.max_weight = max_weight
        self.ttl_s = ttl_s
        self._weigher = weigher
        self._clock = clock
        self._metrics = metrics

        self._lock = threading.Lock()
        self._entries: OrderedDict[Fingerprint, CacheEntry] = OrderedDict()
        self._inflight: Dict[Fingerprint, _InFlight] = {}
        self._weight = 0
        self._stats = CacheStats()
        self._closed = False

        self._producers: Set[threading.Thread] = set()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ----------------------------
    # Resolve
    # ----------------------------
    def resolve(self, fingerprint: Fingerprint, producer: Producer, timeout: Optional[float] = None) -> Completion:
        """
        Return the cached completion for fingerprint, join an in-flight call
        for it, or start one with producer. Raises whatever the producer
        raised, or Timeout if this caller's timeout elapses first.
        """
        return self.resolve_outcome(fingerprint, producer, timeout)[0]

    def resolve_outcome(
        self,
        fingerprint: Fingerprint,
        producer: Producer,
        timeout: Optional[float] = None,
    ) -> Tuple[Completion, str]:
        """resolve(), also reporting how: HIT, JOINED or PRODUCED."""
        with self._lock:
            if self._closed:
                raise RuntimeError("cache is closed")
            entry = self._lookup_locked(fingerprint, self._clock(), touch=True)
            if entry is not None:
                self._stats.hits += 1
                self._emit(m.CACHE_HIT)
                return entry.completion, HIT
            flight = self._inflight.get(fingerprint)
            if flight is not None:
                flight.waiters += 1
                self._stats.joins += 1
                self._emit(m.CACHE_JOIN)
                started = False
            else:
                flight = _InFlight(fingerprint)
                self._inflight[fingerprint] = flight
                self._stats.misses += 1
                self._emit(m.CACHE_MISS)
                started = True

        if started:
            logger.debug("Cache miss %s: calling producer", fingerprint[:12])
            thread = threading.Thread(
                target=self._produce,
                args=(flight, producer),
                name=f"cache-producer-{fingerprint[:8]}",
                daemon=True,
            )
            with self._lock:
                self._producers.add(thread)
            thread.start()
        else:
            logger.debug("Joined in-flight call %s", fingerprint[:12])
        return self._wait(flight, timeout), PRODUCED if started else JOINED

    def _produce(self, flight: _InFlight, producer: Producer) -> None:
        try:
            completion = producer()
            if not isinstance(completion, Completion):
                raise TypeError(f"producer returned {type(completion).__name__}, expected Completion")
        except Exception as e:
            self._finish(flight, error=e)
        else:
            self._finish(flight, completion=completion)
        finally:
            with self._lock:
                self._producers.discard(threading.current_thread())

    def _finish(
        self,
        flight: _InFlight,
        completion: Optional[Completion] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Retire the flight (and store the entry) atomically, then wake every waiter."""
        with self._lock:
            if self._inflight.get(flight.fingerprint) is flight:
                del self._inflight[flight.fingerprint]
            if error is None:
                self._store_locked(flight.fingerprint, completion, self._clock())
            else:
                self._stats.failures += 1
                self._emit(m.CACHE_PRODUCER_FAILURE)
            waiters = flight.waiters
        if error is None:
            logger.debug("Delivered %s to %d waiter(s)", flight.fingerprint[:12], waiters)
            flight.future.set_result(completion)
        else:
            logger.info("Producer for %s failed (%s); delivered to %d waiter(s)",
                        flight.fingerprint[:12], error, waiters)
            flight.future.set_exception(error)

    def _wait(self, flight: _InFlight, timeout: Optional[float]) -> Completion:
        try:
            return flight.future.result(timeout=timeout)
        except FutureTimeout:
            if flight.future.done():
                return flight.future.result()
            with self._lock:
                flight.waiters -= 1
                self._stats.wait_timeouts += 1
            self._emit(m.CACHE_WAIT_TIMEOUT)
            raise Timeout(
                "Timed out waiting for the provider response",
                {"fingerprint": flight.fingerprint[:12], "timeout_s": timeout},
            ) from None

    # ----------------------------
    # Entry bookkeeping (lock held)
    # ----------------------------
    def _lookup_locked(self, fingerprint: Fingerprint, now: float, touch: bool) -> Optional[CacheEntry]:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if now - entry.created_at >= self.ttl_s:
            self._remove_locked(fingerprint)
            self._stats.expirations += 1
            self._emit(m.CACHE_EXPIRED)
            return None
        if touch:
            entry.last_access = now
            self._entries.move_to_end(fingerprint)
        return entry

    def _store_locked(self, fingerprint: Fingerprint, completion: Completion, now: float) -> None:
        weight = self._weigher(completion)
        if weight > self.max_weight:
            logger.debug("Not caching %s: weight %d exceeds bound %d", fingerprint[:12], weight, self.max_weight)
            return
        if fingerprint in self._entries:
            self._remove_locked(fingerprint)
        self._entries[fingerprint] = CacheEntry(fingerprint, completion, now, now, weight)
        self._weight += weight
        while self._weight > self.max_weight:
            oldest, _ = next(iter(self._entries.items()))
            self._remove_locked(oldest)
            self._stats.evictions += 1
            self._emit(m.CACHE_EVICTION)

    def _remove_locked(self, fingerprint: Fingerprint) -> Optional[CacheEntry]:
        entry = self._entries.pop(fingerprint, None)
        if entry is not None:
            self._weight -= entry.weight
        return entry

    def _emit(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.incr(name)

    # ----------------------------
    # Maintenance
    # ----------------------------
    def get(self, fingerprint: Fingerprint) -> Optional[Completion]:
        """Peek without loading, counting or touching recency."""
        with self._lock:
            entry = self._lookup_locked(fingerprint, self._clock(), touch=False)
            return entry.completion if entry else None

    def invalidate(self, fingerprint: Fingerprint) -> bool:
        """Drop one entry. In-flight calls are left alone."""
        with self._lock:
            return self._remove_locked(fingerprint) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._weight = 0

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [fp for fp, e in self._entries.items() if now - e.created_at >= self.ttl_s]
            for fp in expired:
                self._remove_locked(fp)
            self._stats.expirations += len(expired)
        if expired:
            if self._metrics is not None:
                self._metrics.incr(m.CACHE_EXPIRED, len(expired))
            logger.debug("Swept %d expired entries", len(expired))
        return len(expired)

    def start_sweeper(self, interval_s: float) -> None:
        """Run sweep() every interval_s seconds on a daemon thread until close()."""
        if self._sweeper is not None:
            return

        def _loop():
            while not self._stop.wait(interval_s):
                self.sweep()

        self._sweeper = threading.Thread(target=_loop, name="cache-sweeper", daemon=True)
        self._sweeper.start()

    def stats(self) -> CacheStats:
        with self._lock:
            s = self._stats
            return CacheStats(
                hits=s.hits, misses=s.misses, joins=s.joins, evictions=s.evictions,
                expirations=s.expirations, failures=s.failures, wait_timeouts=s.wait_timeouts,
                size=len(self._entries), weight=self._weight, in_flight=len(self._inflight),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: Fingerprint) -> bool:
        return self.get(fingerprint) is not None

    def close(self, wait: bool = True) -> None:
        """Stop the sweeper. When wait is True, block until in-flight producers finish."""
        with self._lock:
            self._closed = True
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join()
            self._sweeper = None
        if wait:
            with self._lock:
                producers = list(self._producers)
            for thread in producers:
                thread.join()
