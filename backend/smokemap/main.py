"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging and
CORS, includes the fire, air quality, smoke and timeline routers, and
exposes a health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn smokemap.main:app --reload --app-dir backend

    Or imported and used programmatically:
        >>> from smokemap.main import app
"""

import logging

import fastapi
from fastapi.middleware import cors

from smokemap.api import air_quality, fires, smoke, timeline
from smokemap.core import config


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Applies the configured log level, includes the API routers and adds
    a health check endpoint. CORS origins come from settings so a map page
    on another host can call the proxy endpoints directly.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = fastapi.FastAPI(title="Smoke Map", version="0.1.0")

    app.include_router(fires.router)
    app.include_router(air_quality.router)
    app.include_router(smoke.router)
    app.include_router(timeline.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
