"""Tests for the FastAPI main application factory and health checks.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - The fire, air quality, smoke and timeline routers are registered,
    - The /health endpoint returns the expected response.

See Also:
    - backend/smokemap/main.py for the application factory.
"""

from __future__ import annotations

from typing import cast

from fastapi import testclient

from smokemap import main


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app is not None
    assert app.title == "Smoke Map"
    assert app.version == "0.1.0"


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    app = main.create_app()
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_app_includes_routers() -> None:
    """Test that all API routers are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    for path in ("/api/fires", "/api/air-quality", "/api/smoke", "/api/timeline"):
        assert path in routes


def test_cors_preflight() -> None:
    """Test that a map page on another origin may call the API."""
    client = testclient.TestClient(main.create_app())
    response = client.options(
        "/api/timeline",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] in (
        "*",
        "http://localhost:5173",
    )
