"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings and the
service adapters, avoiding global state and enabling proper dependency
injection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .builder import BuildCapability, PodmanBuilder
from .catalog import CatalogCapability, CatalogClient
from .credentials import CredentialProvider
from .identity import DeviceFlowIdentity, IdentityCapability, SessionStore
from .registry import RegistryCapability, RegistryMetadata
from .settings import Settings, create_settings_from_env


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Adapters are created on first access and reused for the rest of the
    command. Tests pass fakes for any of them.
    """
    settings: Settings
    on_login_prompt: Optional[Callable[[str, str], None]] = None
    _identity: Optional[IdentityCapability] = None
    _catalog: Optional[CatalogCapability] = None
    _builder: Optional[BuildCapability] = None
    _registry: Optional[RegistryCapability] = None
    _credentials: Optional[CredentialProvider] = None

    @classmethod
    def from_env(cls, on_login_prompt: Optional[Callable[[str, str], None]] = None) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        return cls(settings=create_settings_from_env(), on_login_prompt=on_login_prompt)

    @property
    def identity(self) -> IdentityCapability:
        if self._identity is None:
            self._identity = DeviceFlowIdentity(self.settings, on_prompt=self.on_login_prompt)
        return self._identity

    @property
    def session_store(self) -> SessionStore:
        return SessionStore(self.settings.session_path)

    @property
    def credentials(self) -> CredentialProvider:
        """Single credential provider per command; it owns the current credential."""
        if self._credentials is None:
            self._credentials = CredentialProvider(
                self.identity, self.settings, session_store=self.session_store
            )
        return self._credentials

    @property
    def catalog(self) -> CatalogCapability:
        if self._catalog is None:
            self._catalog = CatalogClient(self.settings)
        return self._catalog

    @property
    def builder(self) -> BuildCapability:
        if self._builder is None:
            self._builder = PodmanBuilder(self.settings)
        return self._builder

    @property
    def registry(self) -> RegistryCapability:
        if self._registry is None:
            self._registry = RegistryMetadata(self.settings)
        return self._registry
