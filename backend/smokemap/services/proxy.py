"""TTL cache in front of upstream-derived response documents.

``CachedProxy.get_or_compute`` serves a document from the cache store when
a fresh entry exists and otherwise awaits the supplied coroutine, stores its
result and returns it. Cache trouble never fails a request: read and write
errors are logged and the freshly computed document is still returned.

Two request flags change the flow:

- ``debug`` bypasses the cache completely (no read, no write).
- ``force_refresh`` skips the read but still stores the new document.

Neither flag is part of the cache key. Stale files are swept on a small
random fraction of requests rather than on every call.

Two identical requests arriving together may both miss and both compute;
writes are atomic, so the later one simply replaces the earlier entry.

Example:
    Cache an air quality lookup:
        >>> proxy = CachedProxy(cache.InMemoryCacheStore(ttl_seconds=43200))
        >>> doc = await proxy.get_or_compute(
        ...     "airquality",
        ...     {"lat": "44.05", "lon": "-121.31"},
        ...     lambda: fetch_air_quality(...),
        ... )
        >>> doc["cache_info"]["cached"]
        False
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import random
import time
from typing import TYPE_CHECKING, Any

from smokemap.core import errors
from smokemap.db import cache

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from smokemap.core import config

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _format_time(timestamp: float) -> str:
    return datetime.datetime.fromtimestamp(
        timestamp,
        tz=datetime.UTC,
    ).strftime(TIME_FORMAT)


class CachedProxy:
    """Read-through cache for computed response documents."""

    def __init__(
        self,
        store: cache.CacheStoreProtocol,
        *,
        sweep_probability: float = 0.01,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the proxy.

        Args:
            store: Backing cache store; its TTL governs freshness.
            sweep_probability: Chance of sweeping per request.
            clock: Source of the current POSIX time.
            rng: Uniform [0, 1) source used for the sweep lottery.
        """
        self.store = store
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng

    @property
    def ttl_hours(self) -> float:
        return self.store.ttl_seconds / 3600

    async def maybe_sweep(self) -> int:
        """Sweep expired entries with the configured probability."""
        if self._rng() >= self.sweep_probability:
            return 0
        try:
            return await asyncio.to_thread(self.store.sweep)
        except OSError as exc:
            logger.warning("Cache sweep failed: %s", exc)
            return 0

    async def _read(self, key: str) -> dict[str, Any] | None:
        try:
            if not await asyncio.to_thread(self.store.is_valid, key):
                return None
            entry = await asyncio.to_thread(self.store.get, key)
        except errors.CacheError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if entry is None:
            return None

        document = dict(entry.payload)
        document["cache_info"] = {
            "cached": True,
            "cache_key": key,
            "cache_time": _format_time(entry.created_at),
            "expires_at": _format_time(
                entry.created_at + self.store.ttl_seconds
            ),
            "cache_duration_hours": self.ttl_hours,
        }
        return document

    async def _write(self, key: str, document: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.store.put, key, document)
        except errors.CacheError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def get_or_compute(
        self,
        namespace: str,
        params: Mapping[str, Any],
        compute: Callable[[], Awaitable[dict[str, Any]]],
        *,
        debug: bool = False,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        """Return a cached document or compute, store and return a new one.

        Args:
            namespace: Dataset kind prefixed to the cache key.
            params: Request parameters identifying the document.
            compute: Coroutine factory producing the document on a miss.
            debug: Bypass the cache entirely.
            force_refresh: Ignore any cached entry but store the result.

        Returns:
            The document with a ``cache_info`` block attached.

        Raises:
            Whatever ``compute`` raises; cache errors are never raised.
        """
        await self.maybe_sweep()
        key = cache.cache_key(namespace, params)

        if not debug and not force_refresh:
            cached = await self._read(key)
            if cached is not None:
                logger.debug("Cache hit for %s", key)
                return cached

        document = await compute()
        if not debug:
            await self._write(key, document)

        result = dict(document)
        result["cache_info"] = {
            "cached": False,
            "cache_key": key,
            "cache_duration_hours": self.ttl_hours,
            "generated_at": _format_time(self._clock()),
        }
        return result


def get_proxy(
    settings: config.Settings,
    store: cache.CacheStoreProtocol,
) -> CachedProxy:
    """Factory for the proxy using the configured sweep probability."""
    return CachedProxy(store, sweep_probability=settings.cache_sweep_probability)
