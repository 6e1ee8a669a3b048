"""Tests for configuration loading and gateway lifecycle."""

from __future__ import annotations

import pytest
from movie_gateway import GatewaySettings, MovieGateway
from movie_gateway.settings import load_settings_from_env
from pydantic import ValidationError

from .conftest import UPSTREAM_URL


class TestGatewaySettings:
    def test_default_settings(self, monkeypatch):
        """Defaults match the public catalog API and sane timeouts."""
        for key in ("MOVIE_GATEWAY_UPSTREAM_URL", "MOVIE_API_BASE_URL", "PORT"):
            monkeypatch.delenv(key, raising=False)
        settings = GatewaySettings()
        assert settings.upstream_base_url == "https://movieapi.giftedtech.co.ke/api"
        assert settings.sources_timeout == 10.0
        assert 5.0 <= settings.probe_timeout <= 10.0
        assert 30.0 <= settings.fetch_timeout <= 60.0
        assert settings.default_quality == "720p"
        assert settings.port == 5000

    def test_load_from_env(self, gateway_env):
        settings = load_settings_from_env()
        assert settings.upstream_base_url == UPSTREAM_URL
        assert settings.chunk_size == 4
        assert settings.probe_timeout == 2.0

    def test_legacy_env_names(self, monkeypatch):
        monkeypatch.delenv("MOVIE_GATEWAY_UPSTREAM_URL", raising=False)
        monkeypatch.setenv("MOVIE_API_BASE_URL", "https://mirror.test/api")
        monkeypatch.setenv("PORT", "8080")
        settings = load_settings_from_env()
        assert settings.upstream_base_url == "https://mirror.test/api"
        assert settings.port == 8080

    def test_cors_origins_parsing(self, monkeypatch):
        monkeypatch.setenv(
            "MOVIE_GATEWAY_CORS_ORIGINS", " https://a.test , https://b.test ,"
        )
        settings = load_settings_from_env()
        assert settings.allowed_origins == ["https://a.test", "https://b.test"]

    def test_cors_origins_default(self, monkeypatch):
        monkeypatch.delenv("MOVIE_GATEWAY_CORS_ORIGINS", raising=False)
        assert load_settings_from_env().allowed_origins == ["*"]

    def test_chunk_size_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("MOVIE_GATEWAY_CHUNK_SIZE", "0")
        with pytest.raises(ValidationError):
            load_settings_from_env()


class TestGatewayLifecycle:
    @pytest.mark.anyio
    async def test_startup_shutdown(self, gateway_env):
        gateway = MovieGateway.from_env()
        assert gateway._http_client is None

        await gateway.startup()
        assert gateway._http_client is not None
        assert str(gateway._http_client.base_url).startswith(UPSTREAM_URL)

        await gateway.shutdown()
        assert gateway._http_client is None

    @pytest.mark.anyio
    async def test_startup_is_idempotent(self, gateway_env):
        gateway = MovieGateway.from_env()
        await gateway.startup()
        client = gateway._http_client
        await gateway.startup()
        assert gateway._http_client is client
        await gateway.shutdown()

    def test_components_need_startup(self, gateway_env):
        gateway = MovieGateway.from_env()
        with pytest.raises(RuntimeError, match="not initialised"):
            _ = gateway.proxy
