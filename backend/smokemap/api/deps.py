"""Shared FastAPI dependencies for the smokemap routers.

Routers receive an upstream gateway and a cache-backed proxy through
``fastapi.Depends`` so tests can swap either for an in-memory or mocked
version with ``app.dependency_overrides``.
"""

import logging
from collections.abc import AsyncIterator

import fastapi

from smokemap.core import config, errors
from smokemap.db import cache
from smokemap.services import gateway, proxy

logger = logging.getLogger(__name__)


async def get_gateway(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> AsyncIterator[gateway.Gateway]:
    """Yield a gateway whose HTTP client lives for one request.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Yields:
        Gateway configured with timeout, User-Agent and token session.
    """
    async with gateway.open_gateway(settings) as upstream:
        yield upstream


def get_proxy(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> proxy.CachedProxy:
    """Resolve the cache-backed proxy dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        CachedProxy over the file cache store in production.
    """
    return proxy.get_proxy(settings, cache.get_cache_store(settings))


def http_error(exc: errors.SmokeMapError) -> fastapi.HTTPException:
    """Translate a smokemap error into the HTTP error a router raises."""
    status_code = errors.http_status_for(exc)
    if status_code >= 500:
        logger.warning("Upstream request failed: %s", exc)
    return fastapi.HTTPException(status_code=status_code, detail=str(exc))
