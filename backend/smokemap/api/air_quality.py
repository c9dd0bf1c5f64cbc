"""Air quality proxy endpoint with TTL caching.

Serves Open-Meteo air quality data for a single location (``lat``/``lon``)
or several (``coords=lat,lon;lat,lon``), reshaped around the US AQI.
"""

from typing import Any

import fastapi

from smokemap.api import deps
from smokemap.core import config, errors
from smokemap.services import air_quality, gateway, proxy

router = fastapi.APIRouter(prefix="/api/air-quality", tags=["air-quality"])

CACHE_NAMESPACE = "airquality"


def _get_service(
    upstream: gateway.Gateway = fastapi.Depends(deps.get_gateway),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> air_quality.AirQualityService:
    return air_quality.AirQualityService(upstream, settings.air_quality_url)


@router.get("")
async def get_air_quality(
    lat: float | None = None,
    lon: float | None = None,
    coords: str | None = None,
    request_type: str = fastapi.Query("current", alias="type"),
    dt: int | None = None,
    center_date: str | None = None,
    hourly: str | None = None,
    current: str | None = None,
    timezone: str | None = None,
    domains: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    debug: bool = False,
    force_refresh: bool = False,
    service: air_quality.AirQualityService = fastapi.Depends(_get_service),  # noqa: B008
    cache: proxy.CachedProxy = fastapi.Depends(deps.get_proxy),  # noqa: B008
) -> dict[str, Any]:
    """Return hourly air quality for one or more locations.

    ``debug`` returns the planned upstream request instead of fetching
    and never touches the cache. ``force_refresh`` skips the cached copy
    but still stores the fresh result.

    Raises:
        HTTPException: 400 for invalid parameters, 502/504 when the
            upstream fails or no location produced data.
    """
    try:
        query = air_quality.AirQualityQuery(
            type=request_type,
            dt=dt,
            center_date=center_date,
            hourly=hourly,
            current=current,
            timezone=timezone,
            domains=domains,
            start_date=start_date,
            end_date=end_date,
            start_time=start_time,
            end_time=end_time,
        )
        params = {"lat": lat, "lon": lon, "coords": coords, **query.to_params()}
        return await cache.get_or_compute(
            CACHE_NAMESPACE,
            params,
            lambda: service.lookup(
                query,
                lat=lat,
                lon=lon,
                coords=coords,
                debug=debug,
            ),
            debug=debug,
            force_refresh=force_refresh,
        )
    except errors.SmokeMapError as exc:
        raise deps.http_error(exc) from exc
