"""
Query result cache.

Provides an asyncio LRU cache keyed by query fingerprint with:

- TTL expiry per entry
- invalidation by corpus version comparison
- single-flight: concurrent misses on one fingerprint share one computation
- hit/miss/eviction/coalesced counters
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def fingerprint(
    normalized_text: str,
    filters: Iterable[tuple[str, Any]],
    strategy: str,
    top_k: int,
) -> str:
    """Stable SHA-256 over the query shape."""
    payload = json.dumps(
        {
            "text": normalized_text,
            "filters": sorted([key, value] for key, value in filters),
            "strategy": strategy,
            "top_k": top_k,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    fingerprint: str
    results: T
    corpus_version: int
    created_at: float
    ttl: float

    def is_valid(self, corpus_version: int, now: float) -> bool:
        return self.corpus_version == corpus_version and now - self.created_at <= self.ttl


@dataclass
class CacheStats:
    hits: int
    misses: int
    evictions: int
    coalesced: int
    size: int
    capacity: int


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0


class ResultCache:
    """
    LRU cache of search results with per-fingerprint single-flight.

    Runs on one event loop; no await happens between a lookup and the
    bookkeeping that follows it, so no lock is needed.
    """

    def __init__(
        self,
        capacity: int = 1024,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock
        self._store: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._flights: dict[tuple[str, int], _Flight] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._coalesced = 0

    def __len__(self) -> int:
        return len(self._store)

    async def get_or_compute(
        self,
        key: str,
        corpus_version: int,
        compute: Callable[[], Awaitable[T]],
        cacheable: Callable[[T], bool] | None = None,
    ) -> T:
        """Return the cached value or compute it once for all concurrent callers.

        Results rejected by cacheable are handed to every waiter of the flight
        but are not stored. When every waiter has gone (timeout or
        cancellation) the computation is cancelled.
        """
        entry = self._store.get(key)
        if entry is not None:
            if entry.is_valid(corpus_version, self._clock()):
                self._store.move_to_end(key, last=True)
                self._hits += 1
                return entry.results
            del self._store[key]

        flight_key = (key, corpus_version)
        flight = self._flights.get(flight_key)
        if flight is None:
            self._misses += 1
            task = asyncio.ensure_future(
                self._run(flight_key, corpus_version, compute, cacheable)
            )
            flight = _Flight(task=task)
            self._flights[flight_key] = flight
        else:
            self._coalesced += 1

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                flight.task.cancel()
                if self._flights.get(flight_key) is flight:
                    del self._flights[flight_key]

    async def _run(
        self,
        flight_key: tuple[str, int],
        corpus_version: int,
        compute: Callable[[], Awaitable[T]],
        cacheable: Callable[[T], bool] | None,
    ) -> T:
        try:
            result = await compute()
            if cacheable is None or cacheable(result):
                self._set(flight_key[0], result, corpus_version)
            return result
        finally:
            flight = self._flights.get(flight_key)
            if flight is not None and flight.task is asyncio.current_task():
                del self._flights[flight_key]

    def _set(self, key: str, value: Any, corpus_version: int) -> None:
        entry = CacheEntry(
            fingerprint=key,
            results=value,
            corpus_version=corpus_version,
            created_at=self._clock(),
            ttl=self._ttl,
        )
        if key in self._store:
            self._store[key] = entry
            self._store.move_to_end(key, last=True)
            return
        while len(self._store) >= self._capacity:
            self._store.popitem(last=False)
            self._evictions += 1
        self._store[key] = entry

    def invalidate(self) -> int:
        """Drop every entry; returns how many were removed."""
        removed = len(self._store)
        self._store.clear()
        if removed:
            logger.info("cache_invalidated", extra={"removed": removed})
        return removed

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            coalesced=self._coalesced,
            size=len(self._store),
            capacity=self._capacity,
        )
