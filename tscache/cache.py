# tscache/cache.py
# Purpose: In-memory expiring cache for upstream time-series payloads.
# Why: Reduce calls to the market-data provider and protect against rate limits.
# Pitfalls: Not persistent; resets if the process restarts. Not thread-safe:
#   every method must run on the event loop that owns the cache.

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from tscache.errors import RefreshFetchError, UpstreamFetchError, UpstreamTimeoutError
from tscache.observability import (
    CACHE_COALESCED,
    CACHE_HITS,
    CACHE_LOADS,
    CACHE_MISSES,
    CACHE_REFRESH,
    CACHE_REFRESH_SKIPPED,
)

logger = logging.getLogger("tscache.cache")

Loader = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    stored_at: float

    def age(self, now: float) -> float:
        return now - self.stored_at


class ExpiringCache:
    """
    Key -> payload store with a fixed TTL and a periodic background refresh.

    - get() never calls a loader; expired entries are dropped when read (lazy eviction).
    - fetch_or_load() coalesces concurrent misses for a key into one loader call.
    - Each entry remembers the loader that produced it so the refresh loop can
      redo the same fetch. Refresh only touches entries that are still valid,
      and a failed refresh keeps the previous entry.

    Durations are in seconds; `clock` must be monotonic.
    """

    def __init__(
        self,
        ttl_s: float = 600.0,
        refresh_interval_s: float = 60.0,
        *,
        fetch_timeout_s: float = 10.0,
        refresh_jitter_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = float(ttl_s)
        self.refresh_interval_s = float(refresh_interval_s)
        self.fetch_timeout_s = float(fetch_timeout_s)
        self.refresh_jitter_s = float(refresh_jitter_s)
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._loaders: dict[str, Loader] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._refreshing = False
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # storage & validity
    # ------------------------------------------------------------------
    def _is_valid(self, entry: CacheEntry) -> bool:
        return entry.age(self._clock()) <= self.ttl_s

    def get(self, key: str) -> Any | None:
        """Return the payload if the entry is still valid, else evict it and return None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_valid(entry):
            # expired
            self._entries.pop(key, None)
            self._loaders.pop(key, None)
            logger.debug("evicted expired entry %s", key, extra={"cache_key": key})
            return None
        return entry.data

    def set(self, key: str, data: Any, *, loader: Loader | None = None) -> None:
        """Store `data` stamped now. Without a loader the entry is never refreshed."""
        self._entries[key] = CacheEntry(data=data, stored_at=self._clock())
        if loader is None:
            self._loaders.pop(key, None)
        else:
            self._loaders[key] = loader

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        self._loaders.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._loaders.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and self._is_valid(entry)

    # ------------------------------------------------------------------
    # cache-aside loading
    # ------------------------------------------------------------------
    async def fetch_or_load(self, key: str, loader: Loader) -> Any:
        data = self.get(key)
        if data is not None:
            CACHE_HITS.inc()
            logger.debug("cache hit %s", key, extra={"cache_key": key, "outcome": "hit"})
            return data

        CACHE_MISSES.inc()
        logger.debug("cache miss %s", key, extra={"cache_key": key, "outcome": "miss"})
        return await self._join(key, loader)

    def _join(self, key: str, loader: Loader) -> Awaitable[Any]:
        """Await the in-flight load for `key`, starting one if there is none."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._load(key, loader))
            self._inflight[key] = task
            task.add_done_callback(partial(self._forget, key))
        else:
            CACHE_COALESCED.inc()
        # shield: a cancelled waiter must not cancel the load other waiters share
        return asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # mark retrieved even if every waiter went away
            task.exception()

    async def _load(self, key: str, loader: Loader) -> Any:
        try:
            data = await asyncio.wait_for(loader(), timeout=self.fetch_timeout_s)
        except asyncio.TimeoutError as exc:
            CACHE_LOADS.labels(outcome="timeout").inc()
            raise UpstreamTimeoutError(
                f"upstream fetch for {key} timed out after {self.fetch_timeout_s:g}s"
            ) from exc
        except Exception:
            CACHE_LOADS.labels(outcome="error").inc()
            raise

        if data is None:
            CACHE_LOADS.labels(outcome="error").inc()
            raise UpstreamFetchError(f"upstream fetch for {key} returned no data")

        CACHE_LOADS.labels(outcome="ok").inc()
        self.set(key, data, loader=loader)
        return data

    # ------------------------------------------------------------------
    # background refresh
    # ------------------------------------------------------------------
    async def refresh_once(self) -> int:
        """
        Re-run the stored loader for every entry that is still valid.
        Returns how many entries were refreshed. Failures are logged and skipped.
        """
        if self._refreshing:
            CACHE_REFRESH_SKIPPED.inc()
            logger.info("refresh pass still running; skipping")
            return 0

        self._refreshing = True
        refreshed = failed = 0
        try:
            for key in list(self._entries):
                if self.refresh_jitter_s > 0:
                    await asyncio.sleep(random.uniform(0.0, self.refresh_jitter_s))

                entry = self._entries.get(key)
                loader = self._loaders.get(key)
                if entry is None or loader is None:
                    continue
                if not self._is_valid(entry):
                    # left for lazy eviction
                    CACHE_REFRESH.labels(outcome="expired").inc()
                    continue
                if key in self._inflight:
                    continue

                try:
                    await self._join(key, loader)
                except Exception as exc:
                    failed += 1
                    CACHE_REFRESH.labels(outcome="error").inc()
                    logger.warning(
                        "%s",
                        RefreshFetchError(key, exc),
                        exc_info=exc,
                        extra={"cache_key": key, "outcome": "refresh_error"},
                    )
                    continue
                refreshed += 1
                CACHE_REFRESH.labels(outcome="ok").inc()
        finally:
            self._refreshing = False

        if refreshed or failed:
            logger.info("refresh pass: %d refreshed, %d failed", refreshed, failed)
        return refreshed

    async def _refresh_loop(self) -> None:
        logger.info(
            "refresh loop started (interval=%gs, ttl=%gs)", self.refresh_interval_s, self.ttl_s
        )
        while True:
            await asyncio.sleep(self.refresh_interval_s)
            try:
                await self.refresh_once()
            except Exception:
                logger.exception("refresh pass crashed; will retry next interval")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic refresh task on the running loop (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._refresh_loop(), name="tscache-refresh"
        )

    async def stop(self) -> None:
        """Cancel the refresh task and any loads still in flight."""
        task, self._task = self._task, None
        pending = list(self._inflight.values())
        if task is not None:
            pending.append(task)
        if not pending:
            return
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if task is not None:
            logger.info("refresh loop stopped")
