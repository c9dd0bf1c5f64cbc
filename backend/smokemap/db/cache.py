"""Cache stores and key derivation for upstream response documents.

Keys are derived from a canonical encoding of the request parameters, so
two requests that differ only in parameter order or in volatile flags such
as ``debug`` share one entry. The file store writes each document to a
temporary file inside the cache directory and renames it into place; the
file's modification time is the entry's creation time.

Example:
    Store and read back a document:
        >>> from smokemap.db import cache
        >>> store = cache.InMemoryCacheStore(ttl_seconds=3600)
        >>> key = cache.cache_key("airquality", {"lat": "44.1", "lon": "-121.3"})
        >>> store.put(key, {"data": [1, 2, 3]})
        >>> store.get(key).payload
        {'data': [1, 2, 3]}
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import time
import urllib.parse
from typing import TYPE_CHECKING, Any, Protocol

from smokemap.core import errors
from smokemap.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Callable, Iterable, Mapping

    from smokemap.core import config

logger = logging.getLogger(__name__)

VOLATILE_PARAMS = frozenset({"debug", "force_refresh"})
CACHE_SUFFIX = ".json"


def canonical_params(
    params: Mapping[str, Any],
    volatile: Iterable[str] = VOLATILE_PARAMS,
) -> str:
    """Encode request parameters in a stable, order-independent form.

    Args:
        params: Request parameters; ``None`` values are dropped.
        volatile: Parameter names that must not influence the key.

    Returns:
        URL-encoded query string with keys sorted.
    """
    skip = set(volatile)
    items = sorted(
        (str(name), str(value))
        for name, value in params.items()
        if name not in skip and value is not None
    )
    return urllib.parse.urlencode(items)


def cache_key(namespace: str, params: Mapping[str, Any]) -> str:
    """Derive the cache key for a request.

    Args:
        namespace: Dataset kind used as key prefix (e.g. ``"airquality"``).
        params: Request parameters.

    Returns:
        ``<namespace>_<sha256 hex digest>`` of the canonical parameters.
    """
    digest = hashlib.sha256(canonical_params(params).encode("utf-8"))
    return f"{namespace}_{digest.hexdigest()}"


class CacheStoreProtocol(Protocol):
    """Protocol interface for keyed, expiring document storage.

    Implementations provide an in-memory backend for tests and a
    filesystem backend for production.
    """

    ttl_seconds: float

    def get(self, key: str) -> db_models.CacheEntry | None: ...

    def put(self, key: str, payload: dict[str, Any]) -> None: ...

    def is_valid(self, key: str) -> bool: ...

    def sweep(self) -> int: ...


class InMemoryCacheStore(CacheStoreProtocol):
    """Simple in-memory store for tests and local development.

    Data is lost when the process exits.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: dict[str, db_models.CacheEntry] = {}

    def get(self, key: str) -> db_models.CacheEntry | None:
        return self._store.get(key)

    def put(self, key: str, payload: dict[str, Any]) -> None:
        # Round-trip through JSON so callers see the same types as on disk.
        try:
            document = json.loads(json.dumps(payload))
        except (TypeError, ValueError) as exc:
            raise errors.CacheError(f"Failed to encode {key}: {exc}") from exc
        self._store[key] = db_models.CacheEntry(key, document, self._clock())

    def is_valid(self, key: str) -> bool:
        entry = self._store.get(key)
        return entry is not None and entry.is_fresh(
            self.ttl_seconds,
            self._clock(),
        )

    def sweep(self) -> int:
        now = self._clock()
        stale = [
            key
            for key, entry in self._store.items()
            if not entry.is_fresh(self.ttl_seconds, now)
        ]
        for key in stale:
            del self._store[key]
        return len(stale)


class FileCacheStore(CacheStoreProtocol):
    """Filesystem-backed store keeping one JSON document per key.

    Writes go to a temporary file in the cache directory followed by an
    atomic ``os.replace`` so readers never observe a partial document.
    """

    def __init__(
        self,
        cache_dir: pathlib.Path,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store, creating ``cache_dir`` if needed.

        Args:
            cache_dir: Directory that holds the cache files.
            ttl_seconds: Entry lifetime.
            clock: Source of the current POSIX time.
        """
        self.cache_dir = cache_dir
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> pathlib.Path:
        """Return the file path backing ``key``."""
        return self.cache_dir / f"{key}{CACHE_SUFFIX}"

    def get(self, key: str) -> db_models.CacheEntry | None:
        """Read an entry, regardless of its age.

        A file that does not decode to a JSON object is treated as
        corrupted: it is removed and reported as a miss.

        Raises:
            CacheError: If the file exists but cannot be read.
        """
        path = self.path_for(key)
        try:
            created_at = path.stat().st_mtime
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise errors.CacheError(f"Failed to read {path}: {exc}") from exc

        try:
            payload = json.loads(raw)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("Removing corrupted cache entry %s", path.name)
            with contextlib.suppress(OSError):
                path.unlink(missing_ok=True)
            return None

        return db_models.CacheEntry(key, payload, created_at)

    def put(self, key: str, payload: dict[str, Any]) -> None:
        """Write an entry via temp file and atomic rename.

        Raises:
            CacheError: If encoding, writing or renaming fails. The
                temporary file is removed before raising.
        """
        try:
            data = json.dumps(payload, indent=2)
        except (TypeError, ValueError) as exc:
            raise errors.CacheError(f"Failed to encode {key}: {exc}") from exc

        target = self.path_for(key)
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.cache_dir,
                prefix=f".{key}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
                tmp.flush()
            now = self._clock()
            os.utime(tmp_name, (now, now))
            os.replace(tmp_name, target)
        except OSError as exc:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise errors.CacheError(f"Failed to write {target}: {exc}") from exc

    def is_valid(self, key: str) -> bool:
        try:
            created_at = self.path_for(key).stat().st_mtime
        except OSError:
            return False
        return self._clock() - created_at < self.ttl_seconds

    def sweep(self) -> int:
        """Delete every cache file whose age reached the TTL.

        Returns:
            Number of files removed.
        """
        now = self._clock()
        removed = 0
        for path in self.cache_dir.glob(f"*{CACHE_SUFFIX}"):
            try:
                if now - path.stat().st_mtime >= self.ttl_seconds:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Cache sweep skipped %s: %s", path.name, exc)
        if removed:
            logger.info("Cache sweep removed %d expired entries", removed)
        return removed


def get_cache_store(settings: config.Settings) -> CacheStoreProtocol:
    """Factory function to create the cache store.

    Args:
        settings: Application settings with cache directory and TTL.

    Returns:
        FileCacheStore instance for production use.
    """
    return FileCacheStore(settings.cache_dir, settings.cache_ttl_seconds)
