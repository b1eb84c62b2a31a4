"""Single-flight TTL cache for extractor results.

Concurrent requests for the same (source, drug, options) key share one
in-flight fetch. Callers await the shared task through asyncio.shield, so a
caller that times out or is cancelled does not kill the fetch for the others.
Successful results are kept for the TTL; failures are never cached.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T")
CacheKey = tuple[str, str, str]


def options_hash(options: BaseModel) -> str:
    """Stable short hash of an options model."""
    payload = json.dumps(options.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


def make_key(source_type: str, drug_name: str, options: BaseModel) -> CacheKey:
    return (source_type, drug_name.strip().lower(), options_hash(options))


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    size: int = 0
    in_flight: int = 0


@dataclass
class _Entry:
    value: Any
    expires_at: float


class SingleFlightCache:
    """TTL cache with in-flight request coalescing."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the cache.

        Args:
            ttl: Seconds a successful result stays fresh
            clock: Monotonic clock (injectable for tests)
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._in_flight: dict[CacheKey, asyncio.Task] = {}
        self._waiters: dict[CacheKey, int] = {}
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._coalesced = 0

    async def get_or_fetch(self, key: CacheKey, fetch: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for key, joining or starting a fetch when needed."""
        entry = self._entries.get(key)
        if entry is not None:
            if entry.expires_at > self._clock():
                self._hits += 1
                return entry.value
            del self._entries[key]

        task = self._in_flight.get(key)
        if task is not None:
            self._coalesced += 1
        else:
            self._misses += 1
            task = asyncio.ensure_future(fetch())
            self._in_flight[key] = task
            task.add_done_callback(partial(self._on_done, key, self._generation))

        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]

    def _on_done(self, key: CacheKey, generation: int, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            logger.debug(f"Not caching failed fetch for {key}: {exc!r}")
            return
        if generation == self._generation:
            self._entries[key] = _Entry(task.result(), self._clock() + self.ttl)

    def cancel_in_flight(self, only_orphaned: bool = False) -> int:
        """Cancel in-flight fetches. Returns how many were cancelled.

        Args:
            only_orphaned: Leave fetches that a caller is still awaiting
        """
        cancelled = 0
        for key, task in list(self._in_flight.items()):
            if only_orphaned and self._waiters.get(key):
                continue
            del self._in_flight[key]
            task.cancel()
            cancelled += 1
        return cancelled

    def clear(self) -> None:
        """Drop all cached values and reset statistics.

        Fetches still in flight complete for their waiters but are not stored.
        """
        self._entries.clear()
        self._generation += 1
        self._hits = self._misses = self._coalesced = 0

    def stats(self) -> CacheStats:
        now = self._clock()
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            coalesced=self._coalesced,
            size=sum(1 for entry in self._entries.values() if entry.expires_at > now),
            in_flight=len(self._in_flight),
        )
