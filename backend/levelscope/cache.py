"""
Levelscope: Candle Series Store

In-process cache of TimeframeDatasets keyed by (symbol, timeframe) with a
TTL per entry. Concurrent requests for a key that is being fetched share
one in-flight task instead of issuing duplicate provider calls.

The cache is an explicit object handed to the aggregator; there is no
module-level instance.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from levelscope.models import TimeframeDataset

log = structlog.get_logger(__name__)

CacheKey = tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    dataset: TimeframeDataset
    expires_at: float


class DatasetCache:
    """Keyed dataset store with expiry and single-flight fills.

    Usage:
        cache = DatasetCache(ttl_seconds=30)
        dataset = await cache.get_or_fetch("BTCUSDT", "1h", loader)
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._collapsed = 0

    @staticmethod
    def _key(symbol: str, timeframe: str) -> CacheKey:
        return symbol.upper(), timeframe

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, symbol: str, timeframe: str) -> Optional[TimeframeDataset]:
        """Return a live entry, evicting it if it has expired."""
        key = self._key(symbol, timeframe)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.dataset

    def put(self, symbol: str, dataset: TimeframeDataset) -> None:
        key = self._key(symbol, dataset.timeframe)
        self._entries[key] = CacheEntry(dataset, self._clock() + self._ttl)

    async def get_or_fetch(
        self,
        symbol: str,
        timeframe: str,
        loader: Callable[[], Awaitable[TimeframeDataset]],
    ) -> TimeframeDataset:
        """Return the cached dataset or load it, collapsing concurrent loads.

        Waiters are shielded, so a caller that times out does not cancel
        the shared fetch for the others.
        """
        cached = self.get(symbol, timeframe)
        if cached is not None:
            self._hits += 1
            log.debug("cache.hit", symbol=symbol, timeframe=timeframe)
            return cached

        key = self._key(symbol, timeframe)
        task = self._inflight.get(key)
        if task is None:
            self._misses += 1
            task = asyncio.ensure_future(self._fill(symbol, loader))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._release, key))
        else:
            self._collapsed += 1
            log.debug("cache.collapsed", symbol=symbol, timeframe=timeframe)
        return await asyncio.shield(task)

    async def _fill(
        self,
        symbol: str,
        loader: Callable[[], Awaitable[TimeframeDataset]],
    ) -> TimeframeDataset:
        dataset = await loader()
        self.put(symbol, dataset)
        return dataset

    def _release(self, key: CacheKey, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Waiters re-raise failures themselves; mark them retrieved here.
        if not task.cancelled():
            task.exception()

    def invalidate(self, symbol: Optional[str] = None, timeframe: Optional[str] = None) -> int:
        """Drop matching entries. No arguments clears everything."""
        keys = [
            k for k in self._entries
            if (symbol is None or k[0] == symbol.upper())
            and (timeframe is None or k[1] == timeframe)
        ]
        for k in keys:
            del self._entries[k]
        if keys:
            log.info("cache.invalidated", symbol=symbol, timeframe=timeframe, count=len(keys))
        return len(keys)

    def clear(self) -> None:
        self.invalidate()

    def stats(self) -> dict:
        """Counters and live keys, for health and debugging endpoints."""
        now = self._clock()
        live = sorted(f"{s}:{tf}" for (s, tf), e in self._entries.items() if e.expires_at > now)
        return {
            "entries": len(live),
            "keys": live,
            "in_flight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "collapsed": self._collapsed,
            "ttl_seconds": self._ttl,
        }
