"""Data models for cached response documents.

This module defines the record kept by the cache stores. A CacheEntry pairs
the deterministic key derived from a request's parameters with the fully
formed response document and the time it was written.

Example:
    Creating a CacheEntry and checking its freshness:
        >>> from smokemap.db.models import CacheEntry
        >>> entry = CacheEntry(
        ...     key="airquality_3f2a...",
        ...     payload={"data": []},
        ...     created_at=1_700_000_000.0,
        ... )
        >>> entry.is_fresh(ttl_seconds=3600, now=1_700_000_100.0)
        True
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import Any


@dataclasses.dataclass(frozen=True)
class CacheEntry:
    """A cached response document.

    Entries are never mutated: a refresh writes a new entry that replaces
    the old one atomically.

    Attributes:
        key: Namespaced content hash of the canonical request parameters.
        payload: Deserialized JSON document.
        created_at: POSIX timestamp of the successful write.
    """

    key: str
    payload: dict[str, Any]
    created_at: float

    def age(self, now: float) -> float:
        """Seconds elapsed since the entry was written."""
        return now - self.created_at

    def is_fresh(self, ttl_seconds: float, now: float) -> bool:
        """Return True while the entry is younger than ``ttl_seconds``."""
        return self.age(now) < ttl_seconds

    def created_at_datetime(self) -> datetime.datetime:
        """Creation time as an aware UTC datetime."""
        return datetime.datetime.fromtimestamp(self.created_at, tz=datetime.UTC)
