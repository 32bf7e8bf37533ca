"""
Settings and configuration for the add-on publisher.

Service endpoints, registry destination, timeouts and build limits. Values
are validated when the Settings object is built and are read from ADDON_*
environment variables when the CLI constructs its adapters.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

__all__ = ["Settings", "create_settings_from_env", "default_session_file"]


def default_session_file() -> str:
    """Location of the persisted login session (refresh token only)."""
    config_home = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return str(Path(config_home) / ".ohx_login")


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for the publish pipeline and its adapters.

    Catalog / Identity Settings:
        catalog_url: Base URL of the add-on catalog API
        oauth_url: Base URL of the OAuth server (device flow + token refresh)
        vault_url: Base URL of the service handing out registry push credentials
        oauth_client_id: OAuth client id of this CLI
        login_timeout_s: Maximum time to wait for an interactive login
        token_skew_s: Treat tokens as expired this many seconds early
        session_file: Where the refresh token is cached between runs

    Registry Settings:
        registry_url: Destination OCI registry host[:port]
        registry_namespace: Repository namespace for add-on images
        registry_insecure: Allow HTTP connections for local/dev use
        http_timeout_s: HTTP request timeout in seconds
        resolve_attempts: Existence checks per image before giving up
        resolve_backoff_s: Base delay of the exponential backoff between checks

    Build Settings:
        build_tool: Container build engine executable (podman compatible CLI)
        build_timeout_s: Upper bound for a single build-and-push invocation
        max_parallel_builds: Cap on concurrent builds (None = one per target)
    """
    # Catalog / identity settings
    catalog_url: str = "https://catalog.openhabx.com/api"
    oauth_url: str = "https://oauth.openhabx.com"
    vault_url: str = "https://vault.openhabx.com"
    oauth_client_id: str = "addoncli"
    login_timeout_s: float = 300.0
    token_skew_s: float = 10.0
    session_file: Optional[str] = None

    # Registry settings
    registry_url: str = "registry.openhabx.com"
    registry_namespace: str = "addons"
    registry_insecure: bool = False
    http_timeout_s: float = 30.0
    resolve_attempts: int = 5
    resolve_backoff_s: float = 1.0

    # Build settings
    build_tool: str = "podman"
    build_timeout_s: float = 3600.0
    max_parallel_builds: Optional[int] = None

    def __post_init__(self):
        """Validate settings on construction."""
        for name in ("catalog_url", "oauth_url", "vault_url"):
            value = getattr(self, name)
            if not value:
                raise ValueError(f"{name} is required")
            if not re.match(r"^https?://[a-zA-Z0-9.-]+(?::[0-9]+)?(?:/.*)?$", value):
                raise ValueError(f"Invalid {name} format: {value}")

        if not self.oauth_client_id:
            raise ValueError("oauth_client_id is required")

        # Registry is addressed as host[:port], optionally with a scheme
        if not self.registry_url:
            raise ValueError("registry_url is required")
        url_pattern = r"^(?:https?://)?[a-zA-Z0-9.-]+(?::[0-9]+)?$"
        if not re.match(url_pattern, self.registry_url):
            raise ValueError(f"Invalid registry_url format: {self.registry_url}")

        # Namespace must follow OCI naming conventions
        if not self.registry_namespace:
            raise ValueError("registry_namespace is required")
        repo_pattern = r"^[a-z0-9][a-z0-9._-]*(?:/[a-z0-9][a-z0-9._-]*)*$"
        if not re.match(repo_pattern, self.registry_namespace):
            raise ValueError(
                f"Invalid registry_namespace format: {self.registry_namespace}. "
                "Must follow OCI naming conventions."
            )

        # Validate timeouts are positive
        for name in ("login_timeout_s", "http_timeout_s", "build_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        if self.token_skew_s < 0:
            raise ValueError(f"token_skew_s must be non-negative, got {self.token_skew_s}")

        if self.resolve_attempts < 1:
            raise ValueError(f"resolve_attempts must be at least 1, got {self.resolve_attempts}")

        if self.resolve_backoff_s < 0:
            raise ValueError(f"resolve_backoff_s must be non-negative, got {self.resolve_backoff_s}")

        if self.max_parallel_builds is not None and self.max_parallel_builds < 1:
            raise ValueError(f"max_parallel_builds must be at least 1, got {self.max_parallel_builds}")

        if not self.build_tool:
            raise ValueError("build_tool is required")

    @property
    def registry_host(self) -> str:
        """Registry hostname without scheme, as used in image references."""
        return self.registry_url.split("://", 1)[-1]

    @property
    def session_path(self) -> Path:
        """Resolved location of the session cache file."""
        return Path(self.session_file or default_session_file()).expanduser()


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        Catalog / Identity:
        - ADDON_CATALOG_URL (default: https://catalog.openhabx.com/api)
        - ADDON_OAUTH_URL (default: https://oauth.openhabx.com)
        - ADDON_VAULT_URL (default: https://vault.openhabx.com)
        - ADDON_OAUTH_CLIENT_ID (default: addoncli)
        - ADDON_LOGIN_TIMEOUT (default: 300)
        - ADDON_TOKEN_SKEW (default: 10)
        - ADDON_SESSION_FILE (default: $XDG_CONFIG_HOME/.ohx_login)

        Registry:
        - ADDON_REGISTRY_URL (default: registry.openhabx.com)
        - ADDON_REGISTRY_NAMESPACE (default: addons)
        - ADDON_REGISTRY_INSECURE (default: false)
        - ADDON_HTTP_TIMEOUT (default: 30.0)
        - ADDON_RESOLVE_ATTEMPTS (default: 5)
        - ADDON_RESOLVE_BACKOFF (default: 1.0)

        Build:
        - ADDON_BUILD_TOOL (default: podman)
        - ADDON_BUILD_TIMEOUT (default: 3600)
        - ADDON_MAX_PARALLEL_BUILDS (optional)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Reads the environment on every call; nothing is cached between calls.
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: Optional[int]) -> Optional[int]:
        value = os.getenv(key)
        return int(value) if value else default

    defaults = Settings()

    return Settings(
        catalog_url=os.getenv("ADDON_CATALOG_URL", defaults.catalog_url),
        oauth_url=os.getenv("ADDON_OAUTH_URL", defaults.oauth_url),
        vault_url=os.getenv("ADDON_VAULT_URL", defaults.vault_url),
        oauth_client_id=os.getenv("ADDON_OAUTH_CLIENT_ID", defaults.oauth_client_id),
        login_timeout_s=get_float("ADDON_LOGIN_TIMEOUT", defaults.login_timeout_s),
        token_skew_s=get_float("ADDON_TOKEN_SKEW", defaults.token_skew_s),
        session_file=os.getenv("ADDON_SESSION_FILE") or None,
        registry_url=os.getenv("ADDON_REGISTRY_URL", defaults.registry_url),
        registry_namespace=os.getenv("ADDON_REGISTRY_NAMESPACE", defaults.registry_namespace),
        registry_insecure=str_to_bool(os.getenv("ADDON_REGISTRY_INSECURE", "false")),
        http_timeout_s=get_float("ADDON_HTTP_TIMEOUT", defaults.http_timeout_s),
        resolve_attempts=get_int("ADDON_RESOLVE_ATTEMPTS", defaults.resolve_attempts),
        resolve_backoff_s=get_float("ADDON_RESOLVE_BACKOFF", defaults.resolve_backoff_s),
        build_tool=os.getenv("ADDON_BUILD_TOOL", defaults.build_tool),
        build_timeout_s=get_float("ADDON_BUILD_TIMEOUT", defaults.build_timeout_s),
        max_parallel_builds=get_int("ADDON_MAX_PARALLEL_BUILDS", None),
    )
