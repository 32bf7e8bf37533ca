"""
Tests for settings module.

Tests settings validation and environment variable loading.
"""
from __future__ import annotations

from pathlib import Path

import pytest

from addon_publish.settings import Settings, create_settings_from_env, default_session_file


class TestSettings:
    """Test Settings dataclass validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.catalog_url == "https://catalog.openhabx.com/api"
        assert settings.registry_url == "registry.openhabx.com"
        assert settings.registry_namespace == "addons"
        assert settings.oauth_client_id == "addoncli"
        assert settings.login_timeout_s == 300.0
        assert settings.resolve_attempts == 5
        assert settings.max_parallel_builds is None
        assert settings.build_tool == "podman"

    def test_registry_host_strips_scheme(self):
        assert Settings(registry_url="http://localhost:5000").registry_host == "localhost:5000"
        assert Settings(registry_url="registry.test").registry_host == "registry.test"

    def test_session_path(self, tmp_path):
        settings = Settings(session_file=str(tmp_path / "login"))
        assert settings.session_path == tmp_path / "login"

    def test_default_session_file_uses_xdg(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert Path(default_session_file()) == tmp_path / ".ohx_login"

    @pytest.mark.parametrize("kwargs,message", [
        ({"catalog_url": ""}, "catalog_url is required"),
        ({"catalog_url": "catalog.test"}, "Invalid catalog_url format"),
        ({"oauth_url": "ftp://oauth.test"}, "Invalid oauth_url format"),
        ({"registry_url": "not a host"}, "Invalid registry_url format"),
        ({"registry_namespace": "Addons"}, "Invalid registry_namespace format"),
        ({"login_timeout_s": 0}, "login_timeout_s must be positive"),
        ({"http_timeout_s": -1}, "http_timeout_s must be positive"),
        ({"resolve_attempts": 0}, "resolve_attempts must be at least 1"),
        ({"max_parallel_builds": 0}, "max_parallel_builds must be at least 1"),
        ({"token_skew_s": -5}, "token_skew_s must be non-negative"),
        ({"build_tool": ""}, "build_tool is required"),
    ])
    def test_invalid_settings(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            Settings(**kwargs)

    def test_frozen(self):
        settings = Settings()
        with pytest.raises(Exception):
            settings.registry_url = "other"


class TestCreateSettingsFromEnv:
    """Test environment variable loading."""

    def test_defaults_from_empty_env(self, monkeypatch):
        monkeypatch.delenv("ADDON_SESSION_FILE", raising=False)
        settings = create_settings_from_env()
        assert settings == Settings()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ADDON_CATALOG_URL", "http://localhost:8000/api")
        monkeypatch.setenv("ADDON_REGISTRY_URL", "localhost:5000")
        monkeypatch.setenv("ADDON_REGISTRY_NAMESPACE", "team/addons")
        monkeypatch.setenv("ADDON_REGISTRY_INSECURE", "yes")
        monkeypatch.setenv("ADDON_LOGIN_TIMEOUT", "60")
        monkeypatch.setenv("ADDON_RESOLVE_ATTEMPTS", "2")
        monkeypatch.setenv("ADDON_RESOLVE_BACKOFF", "0.5")
        monkeypatch.setenv("ADDON_MAX_PARALLEL_BUILDS", "1")
        monkeypatch.setenv("ADDON_BUILD_TOOL", "docker")

        settings = create_settings_from_env()

        assert settings.catalog_url == "http://localhost:8000/api"
        assert settings.registry_url == "localhost:5000"
        assert settings.registry_namespace == "team/addons"
        assert settings.registry_insecure is True
        assert settings.login_timeout_s == 60.0
        assert settings.resolve_attempts == 2
        assert settings.resolve_backoff_s == 0.5
        assert settings.max_parallel_builds == 1
        assert settings.build_tool == "docker"

    def test_session_file_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ADDON_SESSION_FILE", str(tmp_path / "session"))
        assert create_settings_from_env().session_path == tmp_path / "session"

    def test_invalid_env_fails_fast(self, monkeypatch):
        monkeypatch.setenv("ADDON_RESOLVE_ATTEMPTS", "0")
        with pytest.raises(ValueError, match="resolve_attempts"):
            create_settings_from_env()

    def test_no_caching(self, monkeypatch):
        first = create_settings_from_env()
        monkeypatch.setenv("ADDON_REGISTRY_URL", "localhost:5000")
        second = create_settings_from_env()
        assert first.registry_url == "registry.openhabx.com"
        assert second.registry_url == "localhost:5000"
