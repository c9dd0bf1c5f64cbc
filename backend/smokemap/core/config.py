"""Application settings and configuration management.

This module provides Pydantic-based settings management that loads
configuration from environment variables or a .env file. Settings include
the response cache location and TTL, upstream endpoints and credentials,
HTTP client limits, progressive loader tuning, and playback defaults.

Example:
    Settings can be accessed via the cached get_settings() function:
        >>> from smokemap.core.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.cache_ttl_hours)

    Environment variables can override defaults:
        >>> CACHE_DIR=/var/cache/smokemap
        >>> CACHE_TTL_HOURS=6
        >>> ARCGIS_USERNAME=viewer
        >>> ARCGIS_PASSWORD=secret
"""

import functools
import pathlib

import pydantic
import pydantic_settings


class Settings(pydantic_settings.BaseSettings):
    """Runtime configuration pulled from environment variables or defaults.

    All settings can be overridden via environment variables or .env file.
    The cache directory is created on first use via ensure_directories().

    Attributes:
        cache_dir: Directory holding cached response documents.
        cache_ttl_hours: Age after which a cached document is ignored.
        cache_sweep_probability: Chance per request of sweeping stale files.
        upstream_timeout_seconds: Hard timeout for a single upstream call.
        user_agent: Client identifier sent to upstream providers.
        post_threshold_chars: Encoded query length above which requests
            are sent as form-encoded POST bodies.
        arcgis_username: Optional portal username for token exchange.
        arcgis_password: Optional portal password for token exchange.
        arcgis_portal: Portal base URL hosting ``generateToken``.
        token_expiration_minutes: Requested token lifetime.
        token_referer: Referer registered with the issued token.
        fire_incidents_url: Feature service query URL for fire incidents.
        fire_perimeters_url: Feature service query URL for fire perimeters.
        air_quality_url: Open-Meteo air quality endpoint.
        smoke_url: Map service query URL for smoke forecast polygons.
        fire_result_record_count: Max records requested per fire query.
        slice_max_attempts: Attempts per time slice before it is failed.
        slice_attempt_timeout_seconds: Timeout for one slice attempt.
        retry_backoff_ms: Linear backoff unit between slice attempts.
        inter_slice_delay_ms: Pause between sequential slice fetches.
        playback_speed_ms: Default playback frame interval.
        autoplay_min_loaded: Loaded slices required before autoplay.
        error_log_size: Number of recent loader errors kept.
        timeline_start_offset_hours: First slice offset from now.
        timeline_duration_hours: Total timeline span.
        timeline_step_hours: Width of one slice.
        region_bounds: Default region as ``xmin,ymin,xmax,ymax`` degrees.
        allow_origins: List of allowed CORS origins (["*"] allows all).
        log_level: Root logging level applied by the app factory.

    Example:
        Create settings with custom values:
            >>> settings = Settings(
            ...     cache_dir=Path("/tmp/smokemap-cache"),
            ...     cache_ttl_hours=1,
            ... )
            >>> settings.ensure_directories()
    """

    cache_dir: pathlib.Path = pathlib.Path("/tmp/smokemap/cache")
    cache_ttl_hours: float = 12
    cache_sweep_probability: float = 0.01

    upstream_timeout_seconds: float = 30.0
    user_agent: str = "Mozilla/5.0 (compatible; SmokeMap Proxy/0.1)"
    post_threshold_chars: int = 2000

    arcgis_username: str = ""
    arcgis_password: pydantic.SecretStr = pydantic.SecretStr("")
    arcgis_portal: str = "https://www.arcgis.com"
    token_expiration_minutes: int = 1440
    token_referer: str = "localhost"

    fire_incidents_url: str = (
        "https://services9.arcgis.com/RHVPKKiFTONKtxq3/arcgis/rest/services/"
        "USA_Wildfires_v1/FeatureServer/0/query"
    )
    fire_perimeters_url: str = (
        "https://services9.arcgis.com/RHVPKKiFTONKtxq3/arcgis/rest/services/"
        "USA_Wildfires_v1/FeatureServer/1/query"
    )
    air_quality_url: str = (
        "https://air-quality-api.open-meteo.com/v1/air-quality"
    )
    smoke_url: str = (
        "https://mapservices.weather.noaa.gov/vector/rest/services/"
        "air_quality/ndgd_smoke_sfc_1hr_avg_time/MapServer/0/query"
    )
    fire_result_record_count: int = 5000

    slice_max_attempts: int = pydantic.Field(default=2, ge=1)
    slice_attempt_timeout_seconds: float = 30.0
    retry_backoff_ms: int = 1000
    inter_slice_delay_ms: int = 150
    playback_speed_ms: int = pydantic.Field(default=1000, gt=0)
    autoplay_min_loaded: int = 3
    error_log_size: int = 10

    timeline_start_offset_hours: int = -12
    timeline_duration_hours: int = 48
    timeline_step_hours: int = pydantic.Field(default=1, gt=0)

    region_bounds: str = "-125.5,38.0,-114.0,49.0"
    allow_origins: list[str] = ["*"]
    log_level: str = "INFO"

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def cache_ttl_seconds(self) -> float:
        """Cache TTL expressed in seconds."""
        return self.cache_ttl_hours * 3600

    @property
    def has_credentials(self) -> bool:
        """Whether a username/password pair is configured for token auth."""
        return bool(
            self.arcgis_username and self.arcgis_password.get_secret_value()
        )

    def ensure_directories(self) -> None:
        """Create the local cache directory if it doesn't already exist."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)


@functools.lru_cache
def get_settings() -> Settings:
    """Get cached settings instance with directories initialized.

    Settings are loaded from environment variables or .env file and cached
    for the lifetime of the application. The cache directory is created on
    first call. Subsequent calls return the same cached instance.

    Returns:
        Settings instance with all configuration values populated and
        directories ensured to exist.

    Example:
        The settings are cached, so multiple calls return the same instance:
            >>> settings1 = get_settings()
            >>> settings2 = get_settings()
            >>> assert settings1 is settings2  # Same instance
    """
    settings = Settings()
    settings.ensure_directories()
    return settings
