"""Tests for smoke polygon queries."""

from __future__ import annotations

import datetime
from typing import Any

import httpx
import pytest

from smokemap.core import errors
from smokemap.db import cache
from smokemap.services import (
    gateway,
    geometry,
    proxy,
    smoke,
    spatial_filter,
    time_windows,
)

URL = "https://smoke.test/MapServer/0/query"
REGION = "-125.5,38.0,-114.0,49.0"
START = 1754049600000
END = 1754053200000

INSIDE = [[-122.0, 44.0], [-121.0, 44.0], [-121.0, 45.0], [-122.0, 44.0]]
OUTSIDE = [[-90.0, 30.0], [-89.0, 30.0], [-89.0, 31.0], [-90.0, 30.0]]


def _document() -> dict[str, Any]:
    return {
        "features": [
            {"attributes": {"smoke": 5}, "geometry": {"rings": [INSIDE]}},
            {"attributes": {"smoke": 16}, "geometry": {"rings": [OUTSIDE]}},
            {"attributes": {"smoke": 27}, "geometry": {"rings": [INSIDE[:2]]}},
        ]
    }


class Upstream:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, json=_document())


def _service(
    upstream: Upstream,
    cached: proxy.CachedProxy | None = None,
) -> smoke.SmokeService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return smoke.SmokeService(
        gateway.Gateway(client),
        URL,
        default_bounds=REGION,
        cache=cached,
    )


@pytest.mark.parametrize(("start", "end"), [(100, 100), (200, 100), (-1, 5)])
def test_query_validation(start: int, end: int) -> None:
    """Test that empty, inverted and negative ranges are rejected."""
    with pytest.raises(errors.RequestValidationError):
        smoke.SmokeQuery(time_start=start, time_end=end)


def test_build_params_with_region() -> None:
    """Test the envelope and time parameters."""
    bbox = spatial_filter.parse_bounds(REGION)
    params = smoke.build_params(
        smoke.SmokeQuery(time_start=START, time_end=END), bbox
    )

    assert params["time"] == f"{START},{END}"
    assert params["geometry"] == "-125.5,38,-114,49"
    assert params["geometryType"] == "esriGeometryEnvelope"
    assert params["inSR"] == "4326"
    assert params["spatialRel"] == "esriSpatialRelIntersects"


def test_build_params_nationwide() -> None:
    """Test that no envelope is sent without a region."""
    params = smoke.build_params(
        smoke.SmokeQuery(time_start=START, time_end=END), None
    )
    assert "geometry" not in params
    assert params["where"] == "1=1"


def test_to_params_drops_bounds_when_nationwide() -> None:
    """Test the cache parameters of a nationwide query."""
    query = smoke.SmokeQuery(
        time_start=START, time_end=END, bounds="-1,-1,1,1", nationwide=True
    )
    assert query.to_params() == {
        "timeStart": START,
        "timeEnd": END,
        "bounds": None,
        "nationwide": "true",
    }


@pytest.mark.asyncio
async def test_query_filters_and_drops() -> None:
    """Test normalization, region filtering and reporting."""
    upstream = Upstream()
    result = await _service(upstream).query(
        smoke.SmokeQuery(time_start=START, time_end=END)
    )

    assert result["type"] == "FeatureCollection"
    assert [f["properties"]["smoke"] for f in result["features"]] == [5]
    assert result["features"][0]["geometry"]["type"] == "Polygon"
    assert result["dropped_features"] == 1
    assert result["time_range"] == {"start": START, "end": END}
    assert result["filtering_info"]["original_count"] == 2
    assert result["filtering_info"]["filtered_out"] == 1
    assert upstream.requests[0].url.params["geometry"] == "-125.5,38,-114,49"


@pytest.mark.asyncio
async def test_nationwide_query_is_unfiltered() -> None:
    """Test that nationwide requests skip the envelope and local filter."""
    upstream = Upstream()
    result = await _service(upstream).query(
        smoke.SmokeQuery(time_start=START, time_end=END, nationwide=True)
    )

    assert len(result["features"]) == 2
    assert "filtering_info" not in result
    assert "geometry" not in upstream.requests[0].url.params


@pytest.mark.asyncio
async def test_cached_query_reuses_documents() -> None:
    """Test that a repeated slice request is served from the cache."""
    upstream = Upstream()
    cached = proxy.CachedProxy(
        cache.InMemoryCacheStore(ttl_seconds=3600),
        rng=lambda: 1.0,
    )
    service = _service(upstream, cached)
    query = smoke.SmokeQuery(time_start=START, time_end=END)

    first = await service.cached_query(query)
    second = await service.cached_query(query)

    assert len(upstream.requests) == 1
    assert first["cache_info"]["cached"] is False
    assert second["cache_info"]["cached"] is True
    assert second["features"] == first["features"]


@pytest.mark.asyncio
async def test_fetch_slice_returns_canonical_features() -> None:
    """Test the slice source used by the progressive loader."""
    upstream = Upstream()
    time_slice = time_windows.generate(
        0, 1, 1, datetime.datetime(2025, 8, 1, 12, tzinfo=datetime.UTC)
    )[0]

    features = await _service(upstream).fetch_slice(time_slice)

    assert len(features) == 1
    assert isinstance(features[0].geometry, geometry.Polygon)
    assert features[0].attributes == {"smoke": 5}
    assert upstream.requests[0].url.params["time"] == f"{START},{END}"
