"""API router subpackage for the smoke map backend.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - fires: Wildfire incidents and perimeters, filtered to bounds.
    - air_quality: US AQI readings for one or more locations.
    - smoke: Smoke forecast polygons for one time slice.
    - timeline: The time slices a client should load.
    - deps: Gateway and cache dependencies shared by the routers.
"""
