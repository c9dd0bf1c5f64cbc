"""Provider geometry normalization into canonical geographic features.

Upstream map services return geometries as ESRI JSON (``rings``, ``paths``
or ``x``/``y``) or GeoJSON, with coordinates either in geographic degrees
or in EPSG:3857 (Web Mercator) meters. Everything leaving this module is a
closed set of frozen types (Point, LineString, Polygon) whose coordinates
are finite and inside [-180, 180] x [-90, 90].

A coordinate pair is treated as Web Mercator when ``|x| > 180`` or
``|y| > 90`` and is inverse projected with::

    lng = x / R * 180
    lat = 180 / pi * (2 * atan(exp(y / R * pi)) - pi / 2)

where ``R = 20037508.34``. Longitudes above 180 are wrapped by -360 and both
axes are clamped afterwards.

Any malformed part of a geometry (a ring that is not a list, a pair missing
an element, a non-finite result) rejects the whole feature: ``normalize``
returns None and the caller moves on to the next feature.

Example:
    Normalize an ESRI polygon in Web Mercator:
        >>> from smokemap.services import geometry
        >>> geom = geometry.normalize({
        ...     "rings": [[
        ...         [-13505000.0, 5465000.0],
        ...         [-13495000.0, 5465000.0],
        ...         [-13495000.0, 5475000.0],
        ...         [-13505000.0, 5465000.0],
        ...     ]]
        ... })
        >>> geom.to_geojson()["type"]
        'Polygon'
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any, Literal

from smokemap.core import errors

logger = logging.getLogger(__name__)

WEB_MERCATOR_EXTENT = 20037508.34
MIN_RING_POINTS = 4
MIN_LINE_POINTS = 2
_MAX_EXP = 709.0

Coordinate = tuple[float, float]


@dataclasses.dataclass(frozen=True)
class Point:
    """A single geographic position."""

    lon: float
    lat: float

    kind: Literal["Point"] = dataclasses.field(default="Point", init=False)

    def to_geojson(self) -> dict[str, Any]:
        return {"type": "Point", "coordinates": [self.lon, self.lat]}


@dataclasses.dataclass(frozen=True)
class LineString:
    """An ordered sequence of at least two positions."""

    coordinates: tuple[Coordinate, ...]

    kind: Literal["LineString"] = dataclasses.field(
        default="LineString",
        init=False,
    )

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "LineString",
            "coordinates": [list(c) for c in self.coordinates],
        }


@dataclasses.dataclass(frozen=True)
class Polygon:
    """One or more rings of at least four positions each."""

    rings: tuple[tuple[Coordinate, ...], ...]

    kind: Literal["Polygon"] = dataclasses.field(default="Polygon", init=False)

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Polygon",
            "coordinates": [[list(c) for c in ring] for ring in self.rings],
        }


Geometry = Point | LineString | Polygon


@dataclasses.dataclass(frozen=True)
class Feature:
    """A canonical geometry plus the provider's attribute map."""

    geometry: Geometry
    attributes: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "properties": dict(self.attributes),
            "geometry": self.geometry.to_geojson(),
        }


def is_web_mercator(x: float, y: float) -> bool:
    """Return True when a pair lies outside geographic degree ranges."""
    return abs(x) > 180 or abs(y) > 90


def web_mercator_to_lnglat(x: float, y: float) -> Coordinate:
    """Inverse project an EPSG:3857 pair to ``(lng, lat)`` degrees."""
    lng = (x / WEB_MERCATOR_EXTENT) * 180
    lat = (y / WEB_MERCATOR_EXTENT) * 180
    exponent = lat * math.pi / 180
    # exp() overflows past ~709; the limit of atan there is pi/2 anyway.
    growth = math.exp(exponent) if exponent < _MAX_EXP else math.inf
    lat = 180 / math.pi * (2 * math.atan(growth) - math.pi / 2)
    return lng, lat


def _as_number(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise errors.GeometryError(f"Non-numeric coordinate: {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise errors.GeometryError(f"Non-finite coordinate: {value!r}")
    return number


def _to_geographic(x: object, y: object) -> Coordinate:
    lng = _as_number(x)
    lat = _as_number(y)

    if is_web_mercator(lng, lat):
        lng, lat = web_mercator_to_lnglat(lng, lat)

    if lng > 180:
        lng -= 360

    if not (math.isfinite(lng) and math.isfinite(lat)):
        raise errors.GeometryError("Invalid coordinate values after transform")

    return max(-180.0, min(180.0, lng)), max(-90.0, min(90.0, lat))


def _convert_path(path: object) -> tuple[Coordinate, ...]:
    if not isinstance(path, Sequence) or isinstance(path, str):
        raise errors.GeometryError("Invalid ring/path structure")

    coords = []
    for pair in path:
        if not isinstance(pair, Sequence) or isinstance(pair, str):
            raise errors.GeometryError("Invalid coordinate structure")
        if len(pair) < 2:
            raise errors.GeometryError("Coordinate pair is missing an element")
        coords.append(_to_geographic(pair[0], pair[1]))
    return tuple(coords)


def _polygon(rings: object) -> Polygon:
    if not isinstance(rings, Sequence) or isinstance(rings, str):
        raise errors.GeometryError("Polygon rings must be a list")

    converted = tuple(_convert_path(ring) for ring in rings)
    if not converted:
        raise errors.GeometryError("Polygon has no rings")
    for ring in converted:
        if len(ring) < MIN_RING_POINTS:
            raise errors.GeometryError("Insufficient points for polygon ring")
    return Polygon(converted)


def _line(paths: object) -> LineString:
    if not isinstance(paths, Sequence) or isinstance(paths, str):
        raise errors.GeometryError("Line paths must be a list")

    converted = [_convert_path(path) for path in paths]
    if not converted or len(converted[0]) < MIN_LINE_POINTS:
        raise errors.GeometryError("Insufficient points for linestring")
    if len(converted) > 1:
        # Only the first path is kept; multi-part lines are not modeled.
        logger.debug(
            "Keeping first of %d paths for polyline geometry",
            len(converted),
        )
    return LineString(converted[0])


def _from_geojson(geom: Mapping[str, Any]) -> Geometry:
    geom_type = geom.get("type")
    coords = geom.get("coordinates")
    if geom_type == "Point":
        if not isinstance(coords, Sequence) or len(coords) < 2:
            raise errors.GeometryError("Invalid point coordinates")
        lng, lat = _to_geographic(coords[0], coords[1])
        return Point(lng, lat)
    if geom_type == "LineString":
        return _line([coords])
    if geom_type == "Polygon":
        return _polygon(coords)
    raise errors.GeometryError(f"Unsupported geometry type: {geom_type!r}")


def convert(provider_geometry: Mapping[str, Any]) -> Geometry:
    """Convert a provider geometry, raising on any malformed part.

    Args:
        provider_geometry: ESRI JSON or GeoJSON geometry mapping.

    Returns:
        The canonical geometry.

    Raises:
        GeometryError: If the structure is unrecognized or invalid.
    """
    if not isinstance(provider_geometry, Mapping):
        raise errors.GeometryError("Geometry must be a mapping")

    if "rings" in provider_geometry:
        return _polygon(provider_geometry["rings"])
    if "paths" in provider_geometry:
        return _line(provider_geometry["paths"])
    if "x" in provider_geometry and "y" in provider_geometry:
        lng, lat = _to_geographic(provider_geometry["x"], provider_geometry["y"])
        return Point(lng, lat)
    if "type" in provider_geometry and "coordinates" in provider_geometry:
        return _from_geojson(provider_geometry)
    raise errors.GeometryError("Unknown geometry structure")


def normalize(provider_geometry: Mapping[str, Any] | None) -> Geometry | None:
    """Convert a provider geometry, returning None when it is unusable."""
    if not provider_geometry:
        return None
    try:
        return convert(provider_geometry)
    except errors.GeometryError as exc:
        logger.debug("Dropping geometry: %s", exc)
        return None


def normalize_features(
    provider_features: Sequence[Mapping[str, Any]],
) -> tuple[list[Feature], int]:
    """Normalize a provider feature list, dropping unusable features.

    Accepts ESRI features (``attributes``) and GeoJSON features
    (``properties``).

    Args:
        provider_features: Raw features from an upstream document.

    Returns:
        Tuple of (canonical features, number of dropped features).
    """
    features: list[Feature] = []
    dropped = 0
    for raw in provider_features:
        geometry = (
            normalize(raw.get("geometry")) if isinstance(raw, Mapping) else None
        )
        if geometry is None:
            dropped += 1
            continue
        attributes = raw.get("attributes") or raw.get("properties") or {}
        features.append(Feature(geometry, dict(attributes)))

    if dropped:
        logger.warning(
            "Dropped %d of %d features with invalid geometry",
            dropped,
            len(provider_features),
        )
    return features, dropped
