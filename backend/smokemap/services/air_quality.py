"""Air quality lookups against the Open-Meteo air quality API.

Requests come in five types. Four standard types share one hourly variable
set and are reshaped into a list of per-hour data points with the US AQI as
the primary value:

- ``current``: the last day of hours, newest first.
- ``forecast``: five days ahead.
- ``historical``: the single UTC date containing ``dt`` (required).
- ``extended``: five days either side of ``center_date`` (default today).

``custom`` requests forward the caller's own variables and date range and
return the provider document unchanged apart from an optional time-of-day
filter and a ``proxy_info`` block. Supplying any of ``hourly``, ``current``,
``start_date`` or ``end_date`` turns a request into a custom one.

Several locations may be passed as ``lat,lon;lat,lon``. They are fetched
concurrently; a location that fails is reported in ``errors`` and the
others are still used. When more than one standard-type series succeeds the
series are averaged per timestamp.

Example:
    >>> async with gateway.open_gateway(settings) as gw:
    ...     service = air_quality.AirQualityService(gw, settings.air_quality_url)
    ...     doc = await service.lookup(
    ...         air_quality.AirQualityQuery(type="forecast"),
    ...         lat=44.05,
    ...         lon=-121.31,
    ...     )
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
import re
from typing import TYPE_CHECKING, Any

import httpx

from smokemap.core import errors
from smokemap.services import aggregate

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from smokemap.services import gateway

logger = logging.getLogger(__name__)

REQUEST_TYPES = ("current", "forecast", "historical", "extended", "custom")
STANDARD_HOURLY = ",".join([
    "us_aqi",
    "us_aqi_pm2_5",
    "us_aqi_pm10",
    "us_aqi_no2",
    "us_aqi_o3",
    "us_aqi_so2",
    "us_aqi_co",
    "pm10",
    "pm2_5",
    "carbon_monoxide",
    "nitrogen_dioxide",
    "sulphur_dioxide",
    "ozone",
    "ammonia",
])
# Response component name -> Open-Meteo hourly variable.
POLLUTANT_FIELDS = {
    "co": "carbon_monoxide",
    "no2": "nitrogen_dioxide",
    "o3": "ozone",
    "so2": "sulphur_dioxide",
    "pm2_5": "pm2_5",
    "pm10": "pm10",
    "nh3": "ammonia",
}
US_AQI_FIELDS = (
    "us_aqi_pm2_5",
    "us_aqi_pm10",
    "us_aqi_no2",
    "us_aqi_o3",
    "us_aqi_so2",
    "us_aqi_co",
)
AQI_SYSTEM = "US AQI"
AQI_SCALE = {
    "good": "0-50",
    "moderate": "51-100",
    "unhealthy_sensitive": "101-150",
    "unhealthy": "151-200",
    "very_unhealthy": "201-300",
    "hazardous": "301+",
}
MAX_STANDARD_HOURS = 48
EXTENDED_DAYS = 5
DATE_RANGE_FORMAT = "%Y-%m-%d %H:%M"
PROCESSED_FORMAT = "%Y-%m-%d %H:%M:%S"

_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclasses.dataclass(frozen=True)
class AirQualityQuery:
    """Everything about a lookup except the location.

    Attributes:
        type: One of ``REQUEST_TYPES``.
        dt: Unix seconds selecting the day for historical requests.
        center_date: ISO date the extended window is centered on.
        hourly: Custom hourly variable list.
        current: Custom current variable list.
        timezone: Timezone forwarded on custom requests.
        domains: Model domains forwarded on custom requests.
        start_date: Custom range start (``YYYY-MM-DD``).
        end_date: Custom range end (``YYYY-MM-DD``).
        start_time: ``HH:MM`` lower bound for the custom time filter.
        end_time: ``HH:MM`` upper bound for the custom time filter.
    """

    type: str = "current"
    dt: int | None = None
    center_date: str | None = None
    hourly: str | None = None
    current: str | None = None
    timezone: str | None = None
    domains: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    start_time: str | None = None
    end_time: str | None = None

    def __post_init__(self) -> None:
        if self.type not in REQUEST_TYPES:
            raise errors.RequestValidationError(
                "Invalid request type. Must be: " + ", ".join(REQUEST_TYPES)
            )
        for value in (self.start_time, self.end_time):
            if value is not None:
                parse_time_of_day(value)

    @property
    def resolved_type(self) -> str:
        if self.hourly or self.current or self.start_date or self.end_date:
            return "custom"
        return self.type

    def to_params(self) -> dict[str, Any]:
        """Parameters identifying this query, for cache keys."""
        return {
            name: value
            for name, value in dataclasses.asdict(self).items()
            if value is not None
        }


def parse_time_of_day(value: str) -> datetime.time:
    """Parse an ``HH:MM`` 24-hour time.

    Raises:
        RequestValidationError: If the value is not a valid time.
    """
    match = _TIME_OF_DAY.match(value.strip())
    if match is None:
        raise errors.RequestValidationError(
            f"Invalid time {value!r}, expected HH:MM"
        )
    return datetime.time(int(match.group(1)), int(match.group(2)))


def parse_coords(coords: str) -> tuple[list[tuple[float, float]], list[str]]:
    """Split a ``lat,lon;lat,lon`` list into locations and problems.

    Returns:
        Tuple of (valid ``(lat, lon)`` pairs in input order, one message per
        rejected entry).
    """
    locations: list[tuple[float, float]] = []
    problems: list[str] = []
    for index, pair in enumerate(coords.split(";")):
        pair = pair.strip()
        if not pair:
            problems.append(f"Empty coordinate pair at index {index}")
            continue
        parts = pair.split(",")
        if len(parts) != 2:
            problems.append(
                f"Invalid coordinate format at index {index}: {pair}"
            )
            continue
        try:
            lat, lon = float(parts[0]), float(parts[1])
        except ValueError:
            problems.append(
                f"Invalid coordinate format at index {index}: {pair}"
            )
            continue
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            problems.append(
                f"Invalid coordinate values at index {index}: "
                f"lat={lat}, lon={lon}"
            )
            continue
        locations.append((lat, lon))
    return locations, problems


def build_params(
    lat: float,
    lon: float,
    query: AirQualityQuery,
    today: datetime.date,
) -> dict[str, Any]:
    """Plan the upstream query parameters for one location.

    Args:
        lat: Latitude in degrees.
        lon: Longitude in degrees.
        query: Lookup options.
        today: Date used when an extended query has no center date.

    Raises:
        RequestValidationError: If a historical query lacks ``dt`` or the
            extended center date is not an ISO date.
    """
    params: dict[str, Any] = {"latitude": lat, "longitude": lon}
    request_type = query.resolved_type

    if request_type == "custom":
        for name in (
            "hourly",
            "current",
            "timezone",
            "domains",
            "start_date",
            "end_date",
        ):
            value = getattr(query, name)
            if value:
                params[name] = value
        return params

    params["hourly"] = STANDARD_HOURLY
    params["timezone"] = "auto"

    match request_type:
        case "current":
            params["past_days"] = 1
        case "forecast":
            params["forecast_days"] = 5
        case "historical":
            if query.dt is None:
                raise errors.RequestValidationError(
                    "Historical requests require a datetime parameter"
                )
            day = datetime.datetime.fromtimestamp(query.dt, tz=datetime.UTC)
            params["start_date"] = params["end_date"] = day.date().isoformat()
        case "extended":
            center = today
            if query.center_date:
                try:
                    center = datetime.date.fromisoformat(query.center_date)
                except ValueError as exc:
                    raise errors.RequestValidationError(
                        f"Invalid center_date {query.center_date!r}"
                    ) from exc
            span = datetime.timedelta(days=EXTENDED_DAYS)
            params["start_date"] = (center - span).isoformat()
            params["end_date"] = (center + span).isoformat()
    return params


def _parse_local(value: object) -> datetime.datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError:
        return None


def _number(values: object, index: int) -> float | None:
    if not isinstance(values, list) or index >= len(values):
        return None
    value = values[index]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def format_location(
    document: Mapping[str, Any],
    lat: float,
    lon: float,
    request_type: str,
) -> dict[str, Any]:
    """Reshape a standard-type response into per-hour data points.

    Hours without a US AQI value are skipped, and only the first 48 hours
    are considered unless the request is extended. Local timestamps are
    converted to epoch seconds using the response's UTC offset.

    Raises:
        ProtocolError: If the document has no hourly time axis.
        UpstreamError: If no hour carries an AQI value.
    """
    hourly = document.get("hourly")
    if not isinstance(hourly, dict) or "time" not in hourly:
        raise errors.ProtocolError(
            "Invalid API response structure. Keys: " + ", ".join(document)
        )
    times = hourly["time"]
    if not times:
        raise errors.ProtocolError("No time data in API response")

    offset = document.get("utc_offset_seconds") or 0
    limit = len(times)
    if request_type != "extended":
        limit = min(MAX_STANDARD_HOURS, limit)

    data = []
    for i in range(limit):
        local = _parse_local(times[i])
        if local is None:
            continue
        aqi = _number(hourly.get("us_aqi"), i)
        if aqi is None:
            continue
        timestamp = int(local.replace(tzinfo=datetime.UTC).timestamp()) - offset
        data.append({
            "timestamp": timestamp,
            "aqi": int(aqi),
            "components": {
                name: _number(hourly.get(field), i)
                for name, field in POLLUTANT_FIELDS.items()
            },
            "us_aqi_components": {
                field: _number(hourly.get(field), i) for field in US_AQI_FIELDS
            },
        })

    if not data:
        raise errors.UpstreamError("No valid AQI data found in response")

    data.sort(
        key=lambda point: point["timestamp"],
        reverse=request_type == "current",
    )
    return {
        "coordinate": {"lat": lat, "lon": lon},
        "data": data,
        "type": request_type,
        "data_points": len(data),
        "date_range": {
            "start": _format_epoch(data[0]["timestamp"], DATE_RANGE_FORMAT),
            "end": _format_epoch(data[-1]["timestamp"], DATE_RANGE_FORMAT),
        },
        "aqi_system": AQI_SYSTEM,
        "aqi_scale": AQI_SCALE,
    }


def _format_epoch(timestamp: float, fmt: str) -> str:
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.UTC).strftime(
        fmt
    )


def apply_time_filter(
    document: Mapping[str, Any],
    start_time: str | None = None,
    end_time: str | None = None,
) -> dict[str, Any]:
    """Restrict every hourly array to the selected hours.

    With both bounds the selection is one continuous range, from
    ``start_time`` on the first day in the data to ``end_time`` on the last.
    With a single bound it is a time-of-day window applied to each day.
    Non-list hourly entries (such as units) are kept as they are.
    """
    hourly = document.get("hourly")
    if not isinstance(hourly, dict) or "time" not in hourly:
        return dict(document)

    times = [_parse_local(value) for value in hourly["time"]]
    start = parse_time_of_day(start_time) if start_time else None
    end = parse_time_of_day(end_time) if end_time else None
    parsed = [t for t in times if t is not None]

    if start is not None and end is not None and parsed:
        lower = datetime.datetime.combine(parsed[0].date(), start)
        upper = datetime.datetime.combine(parsed[-1].date(), end)
        keep = [t is not None and lower <= t <= upper for t in times]
    else:
        keep = [
            t is not None
            and (start is None or t.time() >= start)
            and (end is None or t.time() <= end)
            for t in times
        ]

    filtered = {}
    for name, values in hourly.items():
        if isinstance(values, list):
            filtered[name] = [v for v, k in zip(values, keep, strict=False) if k]
        else:
            filtered[name] = values

    result = dict(document)
    result["hourly"] = filtered
    return result


def format_custom(
    document: Mapping[str, Any],
    lat: float,
    lon: float,
    query: AirQualityQuery,
    now: datetime.datetime,
) -> dict[str, Any]:
    """Pass a custom response through with ``proxy_info`` attached."""
    result = dict(document)
    filtered = bool(query.start_time or query.end_time)
    if filtered:
        result = apply_time_filter(result, query.start_time, query.end_time)

    info: dict[str, Any] = {
        "coordinate": {"lat": lat, "lon": lon},
        "type": "custom",
        "aqi_system": AQI_SYSTEM,
        "processed_at": now.strftime(PROCESSED_FORMAT),
    }
    if filtered:
        info["time_filter"] = {
            "start_time": query.start_time,
            "end_time": query.end_time,
            "timezone": query.timezone or "API default",
        }
    hourly = result.get("hourly")
    if isinstance(hourly, dict) and "time" in hourly:
        info["hourly_data_points"] = len(hourly["time"])
    if "current" in result:
        info["current_data_available"] = True

    result["proxy_info"] = info
    return result


def merge_locations(
    documents: list[dict[str, Any]],
    request_type: str,
) -> dict[str, Any]:
    """Average formatted location documents into one regional document."""
    series = [
        aggregate.readings_from_points(
            doc["data"],
            component_fields=("components", "us_aqi_components"),
        )
        for doc in documents
    ]

    data = []
    for point in aggregate.aggregate(series):
        data.append({
            "timestamp": point.timestamp,
            "aqi": round(point.value) if point.value is not None else None,
            "components": {
                name: point.components[name]
                for name in POLLUTANT_FIELDS
                if name in point.components
            },
            "us_aqi_components": {
                name: round(point.components[name])
                for name in US_AQI_FIELDS
                if name in point.components
            },
            "locations": point.count,
        })

    return {
        "coordinate": documents[0]["coordinate"],
        "data": data,
        "type": request_type,
        "data_points": len(data),
        "locations_processed": len(documents),
        "aggregation_method": "average",
        "aqi_system": AQI_SYSTEM,
    }


class AirQualityService:
    """Fetches and shapes air quality data for one or more locations."""

    def __init__(
        self,
        upstream: gateway.Gateway,
        url: str,
        *,
        now: Callable[[], datetime.datetime] = lambda: datetime.datetime.now(
            datetime.UTC
        ),
    ) -> None:
        self.upstream = upstream
        self.url = url
        self._now = now

    def plan(
        self,
        lat: float,
        lon: float,
        query: AirQualityQuery,
    ) -> dict[str, Any]:
        """Describe the upstream request without sending it."""
        params = build_params(lat, lon, query, self._now().date())
        return {
            "debug": True,
            "url": str(httpx.URL(self.url, params=params)),
            "params": params,
            "lat": lat,
            "lon": lon,
            "type": query.resolved_type,
            "date_calculation": {
                "center_date": query.center_date or "today",
                "start_date": params.get("start_date", "not set"),
                "end_date": params.get("end_date", "not set"),
            },
            "aqi_system": AQI_SYSTEM,
        }

    async def fetch_location(
        self,
        lat: float,
        lon: float,
        query: AirQualityQuery,
    ) -> dict[str, Any]:
        """Fetch and format one location."""
        params = build_params(lat, lon, query, self._now().date())
        document = await self.upstream.fetch(self.url, params)
        if query.resolved_type == "custom":
            return format_custom(document, lat, lon, query, self._now())
        return format_location(document, lat, lon, query.resolved_type)

    async def _fetch_or_error(
        self,
        index: int,
        lat: float,
        lon: float,
        query: AirQualityQuery,
    ) -> dict[str, Any] | str:
        try:
            return await self.fetch_location(lat, lon, query)
        except errors.SmokeMapError as exc:
            logger.warning("Air quality lookup failed for %s,%s: %s", lat, lon, exc)
            return f"Location {index} ({lat}, {lon}): {exc}"

    async def fetch_region(
        self,
        coords: str,
        query: AirQualityQuery,
        *,
        debug: bool = False,
    ) -> dict[str, Any]:
        """Fetch several locations concurrently and combine them.

        Raises:
            UpstreamError: If no location produced data.
        """
        locations, problems = parse_coords(coords)
        total = len(coords.split(";"))

        if debug:
            return {
                "debug": True,
                "total_locations": total,
                "debug_info": [
                    self.plan(lat, lon, query) for lat, lon in locations
                ],
                "errors": problems,
                "aqi_system": AQI_SYSTEM,
            }

        results = await asyncio.gather(*(
            self._fetch_or_error(i, lat, lon, query)
            for i, (lat, lon) in enumerate(locations)
        ))
        documents = [r for r in results if isinstance(r, dict)]
        problems.extend(r for r in results if isinstance(r, str))

        if not documents:
            raise errors.UpstreamError(
                "No valid data retrieved. Errors: " + "; ".join(problems)
            )

        request_type = query.resolved_type
        if request_type != "custom" and len(documents) > 1:
            result = merge_locations(documents, request_type)
        else:
            result = dict(documents[0])
            result["locations_processed"] = len(documents)
        result["total_locations"] = total
        result["errors"] = problems
        return result

    async def lookup(
        self,
        query: AirQualityQuery,
        *,
        lat: float | None = None,
        lon: float | None = None,
        coords: str | None = None,
        debug: bool = False,
    ) -> dict[str, Any]:
        """Serve a single-location or regional lookup.

        Raises:
            RequestValidationError: If neither ``coords`` nor both ``lat``
                and ``lon`` are given.
        """
        if coords:
            return await self.fetch_region(coords, query, debug=debug)
        if lat is None or lon is None:
            raise errors.RequestValidationError(
                "Latitude and longitude are required for single location "
                "requests"
            )
        if debug:
            return self.plan(lat, lon, query)
        return await self.fetch_location(lat, lon, query)
