"""
CLI smoke tests with fake adapters.

Tests basic CLI functionality and command wiring without a container
engine, registry or catalog service. Validates that all commands can be
invoked and map failures to the documented exit codes.
"""
from __future__ import annotations

import pytest
import yaml
from typer.testing import CliRunner

from addon_publish import cli
from addon_publish.cli import app
from addon_publish.cli_context import CLIContext
from addon_publish.errors import BuildLogicError
from tests.fakes import FakeBuilder, FakeIdentity


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_context(monkeypatch, settings, catalog, registry, builder):
    """CLIContext wired with fakes, returned by every command."""
    context = CLIContext(
        settings=settings,
        _identity=FakeIdentity(),
        _catalog=catalog,
        _builder=builder,
        _registry=registry,
    )
    monkeypatch.setattr(cli.CLIContext, "from_env", lambda on_login_prompt=None: context)
    return context


class TestPublishCommand:

    def test_publish_success(self, runner, cli_context, weather_project, catalog):
        result = runner.invoke(app, ["publish", str(weather_project)])

        assert result.exit_code == 0, result.output
        assert "Published" in result.output
        assert "Validating" in result.output
        assert catalog.records["weather-x"].versions == ["1.0.0"]

    def test_ci_mode_hides_progress(self, runner, cli_context, weather_project):
        result = runner.invoke(app, ["--ci", "publish", str(weather_project)])

        assert result.exit_code == 0, result.output
        assert "Validating" not in result.output
        assert "Done" in result.output

    def test_validate_only(self, runner, cli_context, weather_project, catalog):
        result = runner.invoke(app, ["publish", str(weather_project), "--validate-only"])

        assert result.exit_code == 0
        assert "weather-x" in result.output
        assert catalog.lookup_calls == []
        assert cli_context._identity.login_calls == 0

    def test_invalid_manifest_exit_code(self, runner, cli_context, write_project, builder):
        project = write_project({
            "id": "Weather_X",
            "version": "1.0.0",
            "architectures": [{"tag": "x86-64", "dockerfile": "Dockerfile.amd64"}],
        })

        result = runner.invoke(app, ["publish", str(project)])

        assert result.exit_code == 2
        assert "Validating" in result.output
        assert builder.calls == []

    def test_missing_manifest(self, runner, cli_context, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()

        result = runner.invoke(app, ["publish", str(empty)])

        assert result.exit_code == 2

    def test_not_owner_exit_code(self, runner, cli_context, weather_project, catalog, builder):
        catalog.register("weather-x", "acct-other", versions=["1.0.0"])

        result = runner.invoke(app, ["publish", str(weather_project)])

        assert result.exit_code == 4
        assert builder.calls == []

    def test_duplicate_version_exit_code(self, runner, cli_context, weather_project):
        assert runner.invoke(app, ["publish", str(weather_project)]).exit_code == 0

        result = runner.invoke(app, ["publish", str(weather_project)])

        assert result.exit_code == 6
        assert "duplicate version" in result.output

    def test_build_failure_exit_code(self, runner, cli_context, weather_project, registry, catalog):
        cli_context._builder = FakeBuilder(registry, failures={"x86-64": [BuildLogicError("exec format error")]})

        result = runner.invoke(app, ["publish", str(weather_project)])

        assert result.exit_code == 5
        assert "failed" in result.output
        assert catalog.records == {}

    def test_bump_then_publish(self, runner, cli_context, weather_project, catalog):
        result = runner.invoke(app, ["publish", str(weather_project), "--bump", "patch"])

        assert result.exit_code == 0, result.output
        data = yaml.safe_load((weather_project / "addons.yml").read_text())
        assert data["version"] == "1.0.1"
        assert ("weather-x", "1.0.1") in catalog.published

    def test_invalid_bump(self, runner, cli_context, weather_project):
        result = runner.invoke(app, ["publish", str(weather_project), "--bump", "huge"])

        assert result.exit_code == 1
        data = yaml.safe_load((weather_project / "addons.yml").read_text())
        assert data["version"] == "1.0.0"


class TestValidateCommand:

    def test_validate_multiarch(self, runner, cli_context, multiarch_project):
        result = runner.invoke(app, ["validate", str(multiarch_project)])

        assert result.exit_code == 0
        assert "armv8" in result.output
        assert "cache" in result.output

    def test_validate_missing_dockerfile(self, runner, cli_context, write_project):
        project = write_project(dockerfiles=())

        result = runner.invoke(app, ["validate", str(project)])

        assert result.exit_code == 2


class TestSessionCommands:

    def test_login_and_logout(self, runner, cli_context, settings):
        result = runner.invoke(app, ["login"])
        assert result.exit_code == 0
        assert "Logged in as" in result.output
        assert settings.session_path.exists()

        result = runner.invoke(app, ["logout"])
        assert result.exit_code == 0
        assert "Logged out" in result.output
        assert not settings.session_path.exists()

    def test_logout_without_session(self, runner, cli_context):
        result = runner.invoke(app, ["publish", "--logout"])

        assert result.exit_code == 0
        assert "No stored session" in result.output

    def test_help(self, runner):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "publish" in result.output
