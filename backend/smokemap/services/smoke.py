"""Smoke forecast polygons for one time slice and region.

The smoke layer is a time-enabled map service. A request names a time range
in epoch milliseconds and, unless nationwide data is wanted, an envelope in
geographic degrees. Polygons may come back in Web Mercator; they are
normalized into canonical features, malformed ones are dropped, and the
rest are filtered against the region with the permissive bounding box rule.

Example:
    >>> service = smoke.SmokeService(gw, settings.smoke_url)
    >>> doc = await service.query(
    ...     smoke.SmokeQuery(time_start=1754049600000, time_end=1754053200000)
    ... )
    >>> doc["type"]
    'FeatureCollection'
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any

from smokemap.core import errors
from smokemap.services import geometry, spatial_filter

if TYPE_CHECKING:
    from smokemap.services import gateway, proxy, time_windows

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "smoke"


@dataclasses.dataclass(frozen=True)
class SmokeQuery:
    """A region-scoped time-slice request.

    Attributes:
        time_start: Range start in epoch milliseconds.
        time_end: Range end in epoch milliseconds.
        bounds: ``xmin,ymin,xmax,ymax``; None means the default region.
        nationwide: Skip both the envelope and local filtering.
    """

    time_start: int
    time_end: int
    bounds: str | None = None
    nationwide: bool = False

    def __post_init__(self) -> None:
        if self.time_start < 0 or self.time_end <= self.time_start:
            raise errors.RequestValidationError(
                "timeEnd must be after timeStart and both must be epoch "
                "milliseconds"
            )

    def to_params(self) -> dict[str, Any]:
        return {
            "timeStart": self.time_start,
            "timeEnd": self.time_end,
            "bounds": None if self.nationwide else self.bounds,
            "nationwide": "true" if self.nationwide else None,
        }


def build_params(
    query: SmokeQuery,
    bbox: spatial_filter.BoundingBox | None,
) -> dict[str, str]:
    """Build the map service query for a slice."""
    params = {
        "f": "json",
        "where": "1=1",
        "outFields": "*",
        "returnGeometry": "true",
        "time": f"{query.time_start},{query.time_end}",
    }
    if bbox is not None:
        params.update({
            "geometry": bbox.to_param(),
            "geometryType": "esriGeometryEnvelope",
            "inSR": "4326",
            "spatialRel": "esriSpatialRelIntersects",
        })
    return params


class SmokeService:
    """Fetches, normalizes and filters smoke polygons."""

    def __init__(
        self,
        upstream: gateway.Gateway,
        url: str,
        *,
        default_bounds: str | None = None,
        cache: proxy.CachedProxy | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            upstream: Gateway used for the map service call.
            url: Map service query URL.
            default_bounds: Region used when a query gives no bounds.
            cache: Optional proxy used by ``cached_query``.
        """
        self.upstream = upstream
        self.url = url
        self.default_bounds = default_bounds
        self.cache = cache

    def region_for(self, query: SmokeQuery) -> spatial_filter.BoundingBox | None:
        if query.nationwide:
            return None
        return spatial_filter.parse_bounds(query.bounds or self.default_bounds)

    async def query(self, query: SmokeQuery) -> dict[str, Any]:
        """Fetch one slice as a GeoJSON FeatureCollection.

        Raises:
            TransportError, ProtocolError, UpstreamError: From the gateway.
        """
        bbox = self.region_for(query)
        document = await self.upstream.fetch(self.url, build_params(query, bbox))

        raw = document.get("features") or []
        features, dropped = geometry.normalize_features(raw)
        kept = spatial_filter.filter_features(features, bbox)

        result: dict[str, Any] = {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in kept],
            "time_range": {"start": query.time_start, "end": query.time_end},
            "dropped_features": dropped,
        }
        if bbox is not None:
            result["filtering_info"] = {
                "bounds_applied": bbox.to_param(),
                "original_count": len(features),
                "filtered_count": len(kept),
                "filtered_out": len(features) - len(kept),
            }
        return result

    async def cached_query(
        self,
        query: SmokeQuery,
        *,
        debug: bool = False,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        """Like ``query`` but served through the cache when one is set."""
        if self.cache is None:
            return await self.query(query)
        return await self.cache.get_or_compute(
            CACHE_NAMESPACE,
            query.to_params(),
            lambda: self.query(query),
            debug=debug,
            force_refresh=force_refresh,
        )

    async def fetch_slice(
        self,
        time_slice: time_windows.TimeSlice,
    ) -> list[geometry.Feature]:
        """Slice source for the progressive loader."""
        document = await self.cached_query(
            SmokeQuery(time_start=time_slice.start_ms, time_end=time_slice.end_ms)
        )
        features, _ = geometry.normalize_features(document["features"])
        return features
