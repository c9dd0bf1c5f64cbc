"""Smoke forecast endpoint serving one time slice for a region."""

from typing import Any

import fastapi

from smokemap.api import deps
from smokemap.core import config, errors
from smokemap.services import gateway, proxy, smoke

router = fastapi.APIRouter(prefix="/api/smoke", tags=["smoke"])


def _get_service(
    upstream: gateway.Gateway = fastapi.Depends(deps.get_gateway),  # noqa: B008
    cache: proxy.CachedProxy = fastapi.Depends(deps.get_proxy),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> smoke.SmokeService:
    """Resolve the smoke service dependency.

    Args:
        upstream: Gateway (injected via FastAPI Depends).
        cache: Cache-backed proxy (injected via FastAPI Depends).
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        SmokeService defaulting to the configured region.
    """
    return smoke.SmokeService(
        upstream,
        settings.smoke_url,
        default_bounds=settings.region_bounds,
        cache=cache,
    )


@router.get("")
async def get_smoke(
    time_start: int = fastapi.Query(..., alias="timeStart"),
    time_end: int = fastapi.Query(..., alias="timeEnd"),
    bounds: str | None = None,
    nationwide: bool = False,
    debug: bool = False,
    force_refresh: bool = False,
    service: smoke.SmokeService = fastapi.Depends(_get_service),  # noqa: B008
) -> dict[str, Any]:
    """Return smoke polygons for a time range as a FeatureCollection.

    Args:
        time_start: Range start in epoch milliseconds.
        time_end: Range end in epoch milliseconds.
        bounds: ``xmin,ymin,xmax,ymax``; defaults to the configured region.
        nationwide: Ignore bounds and return every feature.
        debug: Bypass the cache.
        force_refresh: Skip the cached copy but store the new one.
        service: Smoke service (injected via FastAPI Depends).

    Returns:
        GeoJSON FeatureCollection with canonical geometries, plus
        ``filtering_info``, ``dropped_features`` and ``cache_info``.

    Raises:
        HTTPException: 400 for an invalid time range, 502/504 when the
            upstream fails.
    """
    try:
        query = smoke.SmokeQuery(
            time_start=time_start,
            time_end=time_end,
            bounds=bounds,
            nationwide=nationwide,
        )
        return await service.cached_query(
            query,
            debug=debug,
            force_refresh=force_refresh,
        )
    except errors.SmokeMapError as exc:
        raise deps.http_error(exc) from exc
