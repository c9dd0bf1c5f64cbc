"""Smoke map backend.

Proxies wildfire, air quality and smoke forecast services for a map client,
normalizing their geometries, filtering them to a region and caching the
results, and provides the progressive timeline loader and playback
scheduler that drive the smoke animation.
"""
