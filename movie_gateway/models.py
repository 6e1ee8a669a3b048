from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class MediaSource(BaseModel):
    """One rendition of a catalog item as listed by the upstream API."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    quality: str
    download_url: str
    size: int | None = None
    format: str | None = None

    @field_validator("quality", mode="before")
    @classmethod
    def _coerce_quality(cls, value: object) -> str:
        return "" if value is None else str(value)

    @field_validator("download_url")
    @classmethod
    def _check_download_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            msg = "download_url must be an absolute http(s) URL"
            raise ValueError(msg)
        return value

    @field_validator("size", mode="before")
    @classmethod
    def _parse_size(cls, value: object) -> int | None:
        if value in (None, ""):
            return None
        try:
            return int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
