"""Wildfire incident and perimeter queries.

Fire data comes from an ArcGIS feature service with two layers, incident
points and fire perimeters. Queries go out with a permissive default
(``where=1=1``, all fields, up to ``fire_result_record_count`` records) and
the response is then filtered against the caller's bounds locally, since
the service's own envelope filter is unreliable for large perimeters.

Perimeters can optionally be joined to incidents by fire name. The join is
best effort: names are compared after normalization, first exactly, then by
substring when both names are longer than three characters, which can pair
unrelated fires that share a common word.

Example:
    >>> service = fires.FireService(gw, fires.endpoint_urls(settings))
    >>> doc = await service.query(
    ...     fires.FireQuery(endpoint="perimeters", bounds="-123,44,-121,46")
    ... )
    >>> doc["filtering_info"]["filtered_count"]
    12
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from smokemap.core import errors
from smokemap.services import spatial_filter

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from smokemap.core import config
    from smokemap.services import gateway

logger = logging.getLogger(__name__)

ENDPOINTS = ("incidents", "perimeters", "perimeters_current")
PERIMETER_ENDPOINTS = frozenset({"perimeters", "perimeters_current"})
NAME_FIELDS = ("IncidentName", "FireName", "INCIDENT_NAME", "FIRE_NAME")
MIN_PARTIAL_MATCH_LENGTH = 4

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def endpoint_urls(settings: config.Settings) -> dict[str, str]:
    """Map each endpoint name to its configured query URL."""
    return {
        "incidents": settings.fire_incidents_url,
        "perimeters": settings.fire_perimeters_url,
        "perimeters_current": settings.fire_perimeters_url,
    }


@dataclasses.dataclass(frozen=True)
class FireQuery:
    """Options for one fire data request.

    Attributes:
        endpoint: Layer to query, one of ``ENDPOINTS``.
        bounds: ``xmin,ymin,xmax,ymax`` used for local filtering and, when
            ``bbox`` is not given, forwarded to the service.
        days: Perimeters created within this many days (perimeters only).
        where: Raw WHERE clause replacing the default.
        bbox: Envelope forwarded to the service as-is.
        fields: ``outFields`` replacing ``*``.
        match_incidents: Join perimeters to incidents by name.
    """

    endpoint: str = "incidents"
    bounds: str | None = None
    days: int | None = None
    where: str | None = None
    bbox: str | None = None
    fields: str | None = None
    match_incidents: bool = False

    def __post_init__(self) -> None:
        if self.endpoint not in ENDPOINTS:
            raise errors.RequestValidationError(
                "Invalid endpoint. Valid endpoints are: " + ", ".join(ENDPOINTS)
            )

    @property
    def is_perimeter(self) -> bool:
        return self.endpoint in PERIMETER_ENDPOINTS

    def to_params(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in dataclasses.asdict(self).items()
            if value is not None and value is not False
        }


def build_params(
    query: FireQuery,
    today: datetime.date,
    record_count: int = 5000,
) -> dict[str, str]:
    """Build the feature service query parameters."""
    params = {
        "f": "json",
        "where": "1=1",
        "outFields": "*",
        "returnGeometry": "true",
        "outSR": "4326",
        "resultRecordCount": str(record_count),
    }
    if query.bounds:
        params["bbox"] = query.bounds

    if query.is_perimeter and query.days and query.days > 0:
        threshold = today - datetime.timedelta(days=query.days)
        params["where"] = f"CreateDate >= DATE '{threshold.isoformat()}'"

    if query.where:
        params["where"] = query.where
    if query.bbox:
        params["bbox"] = query.bbox
    if query.fields:
        params["outFields"] = query.fields
    return params


def normalize_fire_name(name: str | None) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    if not name:
        return ""
    cleaned = _NON_WORD.sub("", name.lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def perimeter_name(attributes: Mapping[str, Any]) -> str:
    """Normalized name of a perimeter, from the first populated name field."""
    for field in NAME_FIELDS:
        if attributes.get(field):
            return normalize_fire_name(str(attributes[field]))
    return ""


def find_matching_incident(
    attributes: Mapping[str, Any],
    incidents: Sequence[Mapping[str, Any]],
) -> Mapping[str, Any] | None:
    """Find the incident a perimeter most likely belongs to.

    Args:
        attributes: Perimeter attributes.
        incidents: Incident features with ``attributes.IncidentName``.

    Returns:
        The first incident whose normalized name equals the perimeter's,
        otherwise the first whose name contains or is contained in it when
        both have at least four characters, otherwise None.
    """
    name = perimeter_name(attributes)
    if not name:
        return None

    named = [
        (normalize_fire_name((i.get("attributes") or {}).get("IncidentName")), i)
        for i in incidents
    ]
    for incident_name, incident in named:
        if incident_name == name:
            return incident

    if len(name) < MIN_PARTIAL_MATCH_LENGTH:
        return None
    for incident_name, incident in named:
        if len(incident_name) >= MIN_PARTIAL_MATCH_LENGTH and (
            name in incident_name or incident_name in name
        ):
            return incident
    return None


def join_perimeters(
    perimeters: Iterable[dict[str, Any]],
    incidents: Sequence[Mapping[str, Any]],
) -> int:
    """Attach ``matched_incident`` attributes to perimeters in place.

    Returns:
        Number of perimeters that found a match.
    """
    matched = 0
    for perimeter in perimeters:
        incident = find_matching_incident(
            perimeter.get("attributes") or {},
            incidents,
        )
        if incident is not None:
            perimeter["matched_incident"] = dict(incident.get("attributes") or {})
            matched += 1
    return matched


def filter_document(
    document: dict[str, Any],
    bounds: str | None,
) -> dict[str, Any]:
    """Drop features outside ``bounds`` and record what was removed.

    Nothing is filtered, and no ``filtering_info`` is added, when the
    bounds are missing or malformed.
    """
    bbox = spatial_filter.parse_bounds(bounds)
    features = document.get("features")
    if bbox is None or not isinstance(features, list):
        return document

    kept = [
        f
        for f in features
        if not isinstance(f, Mapping)
        or spatial_filter.includes_raw(f.get("geometry"), bbox)
    ]
    document["features"] = kept
    document["filtering_info"] = {
        "bounds_applied": bounds,
        "original_count": len(features),
        "filtered_count": len(kept),
        "filtered_out": len(features) - len(kept),
    }
    logger.info(
        "Filtered features: %d -> %d (removed %d)",
        len(features),
        len(kept),
        len(features) - len(kept),
    )
    return document


class FireService:
    """Runs fire queries through the gateway with token auth."""

    def __init__(
        self,
        upstream: gateway.Gateway,
        urls: Mapping[str, str],
        *,
        record_count: int = 5000,
        now: Callable[[], datetime.datetime] = lambda: datetime.datetime.now(
            datetime.UTC
        ),
    ) -> None:
        self.upstream = upstream
        self.urls = dict(urls)
        self.record_count = record_count
        self._now = now

    async def _fetch(self, query: FireQuery) -> tuple[dict[str, Any], dict[str, str]]:
        params = build_params(query, self._now().date(), self.record_count)
        document = await self.upstream.fetch(
            self.urls[query.endpoint],
            params,
            authenticated=True,
        )
        return document, params

    async def query(self, query: FireQuery) -> dict[str, Any]:
        """Fetch, filter and annotate one fire layer.

        Raises:
            AuthRequired: If the layer needs a token and none is configured.
            TransportError, ProtocolError, UpstreamError: From the gateway.
        """
        document, params = await self._fetch(query)
        document = filter_document(document, query.bounds)

        if query.match_incidents and query.is_perimeter:
            incidents, _ = await self._fetch(
                FireQuery(endpoint="incidents", bounds=query.bounds)
            )
            matched = join_perimeters(
                document.get("features") or [],
                incidents.get("features") or [],
            )
            document["join_info"] = {
                "incidents_considered": len(incidents.get("features") or []),
                "perimeters_matched": matched,
            }

        document["endpoint_info"] = {
            "type": query.endpoint,
            "url": self.urls[query.endpoint],
            "bbox": params.get("bbox"),
            "where": params["where"],
            "timestamp": self._now().isoformat(),
            "authenticated": self.upstream.authenticated,
        }
        return document
