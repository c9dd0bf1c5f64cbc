"""Bounding box filtering for canonical and provider geometries.

Points are kept when they fall inside the query box (bounds inclusive).
Lines and polygon rings use a deliberately permissive bounding box test: a
ring passes if any vertex is inside the box, if the ring's own extent
overlaps the box, or if the ring's extent contains the box. Exact polygon
intersection is not attempted; showing an extra feature at the edge of a
viewport is preferred over dropping a visible one.

Raw provider geometries that cannot be read as coordinate arrays are
included (fail-open), and a missing or malformed bounds string disables
filtering entirely.

Example:
    Filter features to a viewport:
        >>> from smokemap.services import geometry, spatial_filter
        >>> bbox = spatial_filter.parse_bounds("-122,44,-120,46")
        >>> spatial_filter.includes(geometry.Point(-121, 45), bbox)
        True
        >>> spatial_filter.includes(geometry.Point(-123, 45), bbox)
        False
"""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from smokemap.services import geometry

if TYPE_CHECKING:
    from collections.abc import Iterable


@dataclasses.dataclass(frozen=True)
class BoundingBox:
    """An axis aligned box in geographic degrees."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def contains_point(self, x: float, y: float) -> bool:
        return self.xmin <= x <= self.xmax and self.ymin <= y <= self.ymax

    def overlaps(self, other: BoundingBox) -> bool:
        return (
            other.xmax >= self.xmin
            and other.xmin <= self.xmax
            and other.ymax >= self.ymin
            and other.ymin <= self.ymax
        )

    def contains_box(self, other: BoundingBox) -> bool:
        return (
            self.xmin <= other.xmin
            and self.xmax >= other.xmax
            and self.ymin <= other.ymin
            and self.ymax >= other.ymax
        )

    def to_param(self) -> str:
        """Format as the ``xmin,ymin,xmax,ymax`` query string form."""
        return f"{self.xmin:g},{self.ymin:g},{self.xmax:g},{self.ymax:g}"


def parse_bounds(bounds: str | None) -> BoundingBox | None:
    """Parse an ``xmin,ymin,xmax,ymax`` string.

    Args:
        bounds: Raw query parameter value.

    Returns:
        The parsed box, or None when the value is empty, does not have
        exactly four parts, or any part is not a finite number.
    """
    if not bounds:
        return None

    parts = bounds.split(",")
    if len(parts) != 4:
        return None

    try:
        values = [float(part.strip()) for part in parts]
    except ValueError:
        return None
    if not all(math.isfinite(v) for v in values):
        return None

    return BoundingBox(*values)


def _ring_included(
    ring: Iterable[tuple[float, float]],
    bbox: BoundingBox,
) -> bool:
    xs: list[float] = []
    ys: list[float] = []
    for x, y in ring:
        if bbox.contains_point(x, y):
            return True
        xs.append(x)
        ys.append(y)

    if not xs:
        return False

    extent = BoundingBox(min(xs), min(ys), max(xs), max(ys))
    return extent.overlaps(bbox) or extent.contains_box(bbox)


def includes(feature: geometry.Geometry, bbox: BoundingBox | None) -> bool:
    """Decide whether a canonical geometry belongs to the query region.

    Args:
        feature: Canonical geometry.
        bbox: Query box; None means no filtering.

    Returns:
        True when the geometry should be kept.
    """
    if bbox is None:
        return True

    match feature:
        case geometry.Point(lon=lon, lat=lat):
            return bbox.contains_point(lon, lat)
        case geometry.LineString(coordinates=coords):
            return _ring_included(coords, bbox)
        case geometry.Polygon(rings=rings):
            return any(_ring_included(ring, bbox) for ring in rings)
    return True


def _valid_pairs(ring: object) -> list[tuple[float, float]]:
    pairs: list[tuple[float, float]] = []
    if not isinstance(ring, Sequence) or isinstance(ring, str):
        return pairs
    for point in ring:
        if not isinstance(point, Sequence) or len(point) < 2:
            continue
        try:
            x, y = float(point[0]), float(point[1])
        except (TypeError, ValueError):
            continue
        if math.isfinite(x) and math.isfinite(y):
            pairs.append((x, y))
    return pairs


def _rings_included(rings: object, bbox: BoundingBox) -> bool:
    if not isinstance(rings, Sequence) or isinstance(rings, str) or not rings:
        return True
    return any(_ring_included(_valid_pairs(ring), bbox) for ring in rings)


def includes_raw(
    provider_geometry: Mapping[str, Any] | None,
    bbox: BoundingBox | None,
) -> bool:
    """Apply the inclusion rules to an unconverted provider geometry.

    Used when a provider document is passed through as-is. Handles ESRI
    points (``x``/``y``), rings and paths, and GeoJSON Point, LineString,
    Polygon and MultiPolygon (each member polygon tested in turn).

    Args:
        provider_geometry: ESRI JSON or GeoJSON geometry, possibly None.
        bbox: Query box; None means no filtering.

    Returns:
        True when the feature should be kept, including every case where
        the geometry cannot be interpreted.
    """
    if bbox is None or not isinstance(provider_geometry, Mapping):
        return True

    if "x" in provider_geometry and "y" in provider_geometry:
        try:
            x = float(provider_geometry["x"])
            y = float(provider_geometry["y"])
        except (TypeError, ValueError):
            return True
        return bbox.contains_point(x, y)

    if "rings" in provider_geometry:
        return _rings_included(provider_geometry["rings"], bbox)
    if "paths" in provider_geometry:
        return _rings_included(provider_geometry["paths"], bbox)

    geom_type = provider_geometry.get("type")
    coords = provider_geometry.get("coordinates")
    if not isinstance(coords, Sequence) or not coords:
        return True
    if geom_type == "Polygon":
        return _rings_included(coords, bbox)
    if geom_type == "MultiPolygon":
        return any(
            includes_raw({"type": "Polygon", "coordinates": polygon}, bbox)
            for polygon in coords
        )
    if geom_type == "LineString":
        return _rings_included([coords], bbox)
    if geom_type == "Point" and len(coords) >= 2:
        pairs = _valid_pairs([coords])
        return not pairs or bbox.contains_point(*pairs[0])
    return True


def filter_features(
    features: Iterable[geometry.Feature],
    bbox: BoundingBox | None,
) -> list[geometry.Feature]:
    """Keep the canonical features that pass ``includes``."""
    return [f for f in features if includes(f.geometry, bbox)]
