"""Wildfire incident and perimeter proxy endpoint.

Proxies the fire feature service, filters the features to the requested
bounds on the server, and caches the filtered document.

Example:
    Incidents inside a viewport:
        >>> response = client.get(
        ...     "/api/fires",
        ...     params={"endpoint": "incidents", "bounds": "-123,44,-121,46"},
        ... )
        >>> response.json()["filtering_info"]["filtered_count"]

    Perimeters created in the last week, joined to incidents:
        >>> client.get(
        ...     "/api/fires",
        ...     params={"endpoint": "perimeters", "days": 7,
        ...             "match_incidents": True},
        ... )
"""

from typing import Any

import fastapi

from smokemap.api import deps
from smokemap.core import config, errors
from smokemap.services import fires, gateway, proxy

router = fastapi.APIRouter(prefix="/api/fires", tags=["fires"])

CACHE_NAMESPACE = "fires"
AUTH_HINT = (
    "ArcGIS token needed. Configure ARCGIS_USERNAME and ARCGIS_PASSWORD."
)


def _get_service(
    upstream: gateway.Gateway = fastapi.Depends(deps.get_gateway),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> fires.FireService:
    """Resolve the fire service dependency.

    Args:
        upstream: Gateway (injected via FastAPI Depends).
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        FireService bound to the configured layer URLs.
    """
    return fires.FireService(
        upstream,
        fires.endpoint_urls(settings),
        record_count=settings.fire_result_record_count,
    )


@router.get("")
async def get_fires(
    endpoint: str = "incidents",
    bounds: str | None = None,
    days: int | None = None,
    where: str | None = None,
    bbox: str | None = None,
    fields: str | None = None,
    match_incidents: bool = False,
    debug: bool = False,
    force_refresh: bool = False,
    service: fires.FireService = fastapi.Depends(_get_service),  # noqa: B008
    cache: proxy.CachedProxy = fastapi.Depends(deps.get_proxy),  # noqa: B008
) -> dict[str, Any]:
    """Return fire incidents or perimeters for a region.

    Args:
        endpoint: ``incidents``, ``perimeters`` or ``perimeters_current``.
        bounds: ``xmin,ymin,xmax,ymax`` for server-side filtering.
        days: Only perimeters created within this many days.
        where: WHERE clause replacing the default.
        bbox: Envelope forwarded to the feature service.
        fields: Field list replacing ``*``.
        match_incidents: Join perimeters to incidents by fire name.
        debug: Bypass the cache.
        force_refresh: Skip the cached copy but store the new one.
        service: Fire service (injected via FastAPI Depends).
        cache: Cache-backed proxy (injected via FastAPI Depends).

    Returns:
        The provider document with ``filtering_info`` (when bounds were
        given), ``endpoint_info`` and ``cache_info``.

    Raises:
        HTTPException: 400 for an unknown endpoint, 401 when the layer
            needs credentials that are not configured, 502/504 when the
            upstream fails.
    """
    try:
        query = fires.FireQuery(
            endpoint=endpoint,
            bounds=bounds,
            days=days,
            where=where,
            bbox=bbox,
            fields=fields,
            match_incidents=match_incidents,
        )
        return await cache.get_or_compute(
            CACHE_NAMESPACE,
            query.to_params(),
            lambda: service.query(query),
            debug=debug,
            force_refresh=force_refresh,
        )
    except errors.AuthRequired as exc:
        raise fastapi.HTTPException(
            status_code=401,
            detail=f"{AUTH_HINT} ({exc})",
        ) from exc
    except errors.SmokeMapError as exc:
        raise deps.http_error(exc) from exc
