"""Regional averaging of per-location time series.

Each location contributes a series of readings keyed by timestamp. Readings
that share the exact same timestamp are grouped, and the scalar value and
every named component are averaged over the locations that actually
reported them. A missing or non-finite value is left out of the denominator
rather than counted as zero.

Example:
    >>> from smokemap.services import aggregate
    >>> merged = aggregate.aggregate([
    ...     [aggregate.LocationReading(1000, 80)],
    ...     [aggregate.LocationReading(1000, 120)],
    ... ])
    >>> merged[0].value
    100.0
"""

from __future__ import annotations

import collections
import dataclasses
import math
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@dataclasses.dataclass(frozen=True)
class LocationReading:
    """One location's reading at one instant.

    Attributes:
        timestamp: Epoch seconds.
        value: Scalar summary (e.g. AQI), None when not reported.
        components: Named component values; None marks a missing one.
    """

    timestamp: int
    value: float | None
    components: Mapping[str, float | None] = dataclasses.field(
        default_factory=dict
    )


@dataclasses.dataclass(frozen=True)
class RegionalDataPoint:
    """Averaged reading for one timestamp across locations.

    Attributes:
        timestamp: Epoch seconds shared by the contributing readings.
        value: Mean scalar value, None if no location reported one.
        components: Mean per component over reporting locations.
        count: Number of locations that contributed a scalar value.
    """

    timestamp: int
    value: float | None
    components: dict[str, float]
    count: int


def _usable(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


class _Bucket:
    def __init__(self) -> None:
        self.value_sum = 0.0
        self.value_count = 0
        self.component_sums: dict[str, float] = collections.defaultdict(float)
        self.component_counts: dict[str, int] = collections.defaultdict(int)

    def add(self, reading: LocationReading) -> None:
        if _usable(reading.value):
            self.value_sum += reading.value
            self.value_count += 1
        for name, component in reading.components.items():
            if _usable(component):
                self.component_sums[name] += component
                self.component_counts[name] += 1

    def average(self, timestamp: int) -> RegionalDataPoint:
        value = (
            self.value_sum / self.value_count if self.value_count else None
        )
        components = {
            name: total / self.component_counts[name]
            for name, total in self.component_sums.items()
        }
        return RegionalDataPoint(timestamp, value, components, self.value_count)


def aggregate(
    series: Iterable[Iterable[LocationReading]],
) -> list[RegionalDataPoint]:
    """Merge per-location series into one averaged series.

    Args:
        series: One iterable of readings per location.

    Returns:
        One RegionalDataPoint per distinct timestamp, ascending.
    """
    buckets: dict[int, _Bucket] = {}
    for location in series:
        for reading in location:
            buckets.setdefault(reading.timestamp, _Bucket()).add(reading)

    return [buckets[ts].average(ts) for ts in sorted(buckets)]


def readings_from_points(
    points: Iterable[Mapping[str, Any]],
    *,
    value_field: str = "aqi",
    component_fields: Iterable[str] = ("components",),
) -> list[LocationReading]:
    """Convert formatted data points back into readings.

    Nested component maps named by ``component_fields`` are flattened into
    a single mapping, so their keys must not collide.
    """
    fields = tuple(component_fields)
    readings = []
    for point in points:
        components: dict[str, float | None] = {}
        for field in fields:
            components.update(point.get(field) or {})
        readings.append(
            LocationReading(
                timestamp=int(point["timestamp"]),
                value=point.get(value_field),
                components=components,
            )
        )
    return readings
