"""Root pytest configuration for addon-publisher tests."""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import pytest
import yaml

from addon_publish.credentials import CredentialProvider
from addon_publish.orchestrator import BuildOrchestrator
from addon_publish.ownership import OwnershipResolver
from addon_publish.pipeline import PublishPipeline
from addon_publish.resolver import ImageResolver
from addon_publish.settings import Settings
from tests.fakes import FakeBuilder, FakeCatalog, FakeIdentity, FakeRegistry

FIXTURES_DIR = Path(__file__).parent / "fixtures"

WEATHER_X = {
    "id": "weather-x",
    "version": "1.0.0",
    "architectures": [{"tag": "x86-64", "dockerfile": "./Dockerfile.amd64"}],
}


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Isolate tests from the user's environment and session file."""
    for key in ("ADDON_CATALOG_URL", "ADDON_REGISTRY_URL", "ADDON_REGISTRY_NAMESPACE",
                "ADDON_REGISTRY_INSECURE", "ADDON_MAX_PARALLEL_BUILDS", "ADDON_RESOLVE_ATTEMPTS"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ADDON_SESSION_FILE", str(tmp_path / "ohx_login"))


@pytest.fixture
def settings(tmp_path):
    """Standard test settings: fast retries, short login timeout."""
    return Settings(
        catalog_url="https://catalog.test/api",
        oauth_url="https://oauth.test",
        vault_url="https://vault.test",
        registry_url="registry.test:5000",
        registry_namespace="addons",
        login_timeout_s=1.0,
        resolve_attempts=3,
        resolve_backoff_s=0.0,
        session_file=str(tmp_path / "session.json"),
    )


@pytest.fixture
def write_project(tmp_path):
    """Factory writing an add-on project (manifest + Dockerfiles) to a temp dir."""
    def _write(manifest: Union[str, Dict[str, Any]] = None, *,
               dockerfiles: Iterable[str] = ("Dockerfile.amd64",),
               name: str = "project", filename: str = "addons.yml") -> Path:
        project = tmp_path / name
        project.mkdir(parents=True, exist_ok=True)
        if manifest is None:
            manifest = WEATHER_X
        text = manifest if isinstance(manifest, str) else yaml.safe_dump(manifest, sort_keys=False)
        (project / filename).write_text(text)
        for dockerfile in dockerfiles:
            (project / dockerfile).write_text("FROM scratch\n")
        return project
    return _write


@pytest.fixture
def weather_project(write_project):
    """The single-architecture weather-x@1.0.0 project."""
    return write_project()


@pytest.fixture
def multiarch_project(tmp_path):
    """Copy of tests/fixtures/weather-x (x86-64 + armv8, with services)."""
    target = tmp_path / "weather-x"
    shutil.copytree(FIXTURES_DIR / "weather-x", target)
    return target


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def builder(registry):
    return FakeBuilder(registry)


@pytest.fixture
def credentials(identity, settings):
    return CredentialProvider(identity, settings)


@pytest.fixture
def make_pipeline(settings, credentials, catalog, registry, builder):
    """Factory wiring a pipeline from the fakes; keyword overrides replace parts."""
    def _make(*, builder_override: Optional[FakeBuilder] = None,
              settings_override: Optional[Settings] = None,
              on_stage=None) -> PublishPipeline:
        cfg = settings_override or settings
        used_builder = builder_override or builder
        return PublishPipeline(
            credentials=credentials,
            ownership=OwnershipResolver(catalog),
            orchestrator=BuildOrchestrator(
                used_builder, cfg, refresh=credentials.refresh_if_expired, retry_wait_s=0
            ),
            resolver=ImageResolver(registry, cfg),
            catalog=catalog,
            on_stage=on_stage,
        )
    return _make
