from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """Configuration for the upstream catalog API and the relay."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    upstream_base_url: str = Field(
        default="https://movieapi.giftedtech.co.ke/api",
        validation_alias=AliasChoices(
            "MOVIE_GATEWAY_UPSTREAM_URL",
            "MOVIE_API_BASE_URL",
        ),
    )
    sources_timeout: float = Field(
        default=10.0,
        validation_alias="MOVIE_GATEWAY_SOURCES_TIMEOUT",
    )
    probe_timeout: float = Field(
        default=8.0,
        validation_alias="MOVIE_GATEWAY_PROBE_TIMEOUT",
    )
    fetch_timeout: float = Field(
        default=30.0,
        validation_alias="MOVIE_GATEWAY_FETCH_TIMEOUT",
    )
    download_timeout: float = Field(
        default=60.0,
        validation_alias="MOVIE_GATEWAY_DOWNLOAD_TIMEOUT",
    )
    chunk_size: int = Field(
        default=64 * 1024,
        validation_alias="MOVIE_GATEWAY_CHUNK_SIZE",
    )
    default_quality: str = Field(
        default="720p",
        validation_alias="MOVIE_GATEWAY_DEFAULT_QUALITY",
    )
    cache_ttl: float = Field(
        default=600.0,
        validation_alias="MOVIE_GATEWAY_CACHE_TTL",
    )
    cache_max_entries: int = Field(
        default=1024,
        validation_alias="MOVIE_GATEWAY_CACHE_MAX_ENTRIES",
    )
    cors_origins: str = Field(
        default="*",
        validation_alias="MOVIE_GATEWAY_CORS_ORIGINS",
    )
    host: str = Field(
        default="0.0.0.0",  # noqa: S104
        validation_alias="MOVIE_GATEWAY_HOST",
    )
    port: int = Field(
        default=5000,
        validation_alias=AliasChoices("MOVIE_GATEWAY_PORT", "PORT"),
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="MOVIE_GATEWAY_LOG_LEVEL",
    )

    @field_validator("chunk_size")
    @classmethod
    def _check_chunk_size(cls, value: int) -> int:
        if value <= 0:
            msg = "chunk size must be positive"
            raise ValueError(msg)
        return value

    @property
    def allowed_origins(self) -> list[str]:
        """Comma separated CORS origins as a list."""
        origins = [origin.strip() for origin in self.cors_origins.split(",")]
        return [origin for origin in origins if origin] or ["*"]


def load_settings_from_env() -> GatewaySettings:
    """Load gateway settings from environment variables.

    Returns:
        GatewaySettings instance populated from environment variables.
    """
    return GatewaySettings()
