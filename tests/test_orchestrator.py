"""
Tests for multi-architecture build orchestration.

Fail-fast policy, transient push retries, aggregate failures and
cancellation, all against the in-memory FakeBuilder.
"""
from __future__ import annotations

import dataclasses
import threading
import time

import pytest

from addon_publish.errors import BuildFailed, BuildLogicError, PipelineCancelled, TransientPushError
from addon_publish.manifest import load_manifest
from addon_publish.models import AddonManifest
from addon_publish.orchestrator import BuildOrchestrator, destination_for
from tests.fakes import FakeBuilder, make_credential

ALL_ARCHS = [
    {"tag": "x86-64", "dockerfile": "Dockerfile.amd64"},
    {"tag": "armv7", "dockerfile": "Dockerfile.armv7"},
    {"tag": "armv8", "dockerfile": "Dockerfile.arm64"},
]


@pytest.fixture
def three_arch_project(write_project):
    manifest = {"id": "weather-x", "version": "1.0.0", "architectures": ALL_ARCHS}
    return write_project(manifest, dockerfiles=[a["dockerfile"] for a in ALL_ARCHS])


def _orchestrator(builder, settings, **kwargs) -> BuildOrchestrator:
    kwargs.setdefault("retry_wait_s", 0)
    return BuildOrchestrator(builder, settings, **kwargs)


class TestDestination:

    def test_destination_format(self, settings):
        manifest = AddonManifest(id="weather-x", version="1.0.0",
                                 architectures=[{"tag": "armv7", "dockerfile": "Dockerfile"}])
        assert destination_for(settings, manifest, manifest.architectures[0]) == \
            "registry.test:5000/addons/weather-x:1.0.0-armv7"

    def test_build_metadata_is_tag_safe(self, settings):
        manifest = AddonManifest(id="weather-x", version="1.0.0+build.5",
                                 architectures=[{"tag": "x86-64", "dockerfile": "Dockerfile"}])
        assert destination_for(settings, manifest, manifest.architectures[0]).endswith(
            ":1.0.0_build.5-x86-64"
        )


class TestBuildAll:

    def test_all_succeed(self, settings, three_arch_project, registry):
        builder = FakeBuilder(registry)
        manifest = load_manifest(three_arch_project)

        outputs = _orchestrator(builder, settings).build_all(
            manifest, make_credential(), project_dir=three_arch_project
        )

        assert list(outputs) == ["armv7", "armv8", "x86-64"]
        assert sorted(builder.built_tags) == ["armv7", "armv8", "x86-64"]
        assert outputs["x86-64"].ref.startswith("registry.test:5000/addons/weather-x@sha256:")
        dockerfiles = {call.arch_tag: call.dockerfile for call in builder.calls}
        assert dockerfiles["armv7"] == three_arch_project / "Dockerfile.armv7"

    def test_builds_run_concurrently(self, settings, three_arch_project):
        """All three builds are in flight at the same time."""
        barrier = threading.Barrier(3, timeout=5)

        class BarrierBuilder(FakeBuilder):
            def build(self, *args, **kwargs):
                barrier.wait()
                return super().build(*args, **kwargs)

        builder = BarrierBuilder()
        outputs = _orchestrator(builder, settings).build_all(
            load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
        )
        assert len(outputs) == 3

    def test_partial_failure_lists_every_outcome(self, settings, three_arch_project):
        builder = FakeBuilder(failures={"armv7": [BuildLogicError("RUN make failed")]})
        orchestrator = _orchestrator(builder, settings)

        with pytest.raises(BuildFailed) as exc_info:
            orchestrator.build_all(
                load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
            )

        outcomes = exc_info.value.outcomes
        assert [o.tag for o in outcomes] == ["armv7", "armv8", "x86-64"]
        assert exc_info.value.failed_tags == ["armv7"]
        failed = outcomes[0]
        assert failed.status == "failed"
        assert "RUN make failed" in failed.detail
        assert failed.attempts == 1
        assert orchestrator.last_outcomes == outcomes

    def test_fail_fast_skips_unstarted_builds(self, settings, three_arch_project):
        """With one worker, a failure stops the builds queued behind it."""
        serial = dataclasses.replace(settings, max_parallel_builds=1)
        builder = FakeBuilder(failures={"x86-64": [BuildLogicError("syntax error")]})

        with pytest.raises(BuildFailed) as exc_info:
            _orchestrator(builder, serial).build_all(
                load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
            )

        statuses = {o.tag: o.status for o in exc_info.value.outcomes}
        assert statuses == {"x86-64": "failed", "armv7": "skipped", "armv8": "skipped"}
        assert builder.built_tags == ["x86-64"]

    def test_transient_push_retried_once(self, settings, three_arch_project):
        builder = FakeBuilder(failures={"armv8": [TransientPushError("429 Too Many Requests")]})

        outputs = _orchestrator(builder, settings).build_all(
            load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
        )

        assert "armv8" in outputs
        assert builder.built_tags.count("armv8") == 2

    def test_transient_push_fails_after_retry(self, settings, three_arch_project):
        builder = FakeBuilder(failures={"armv8": [TransientPushError("429"), TransientPushError("429")]})

        with pytest.raises(BuildFailed) as exc_info:
            _orchestrator(builder, settings).build_all(
                load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
            )

        armv8 = next(o for o in exc_info.value.outcomes if o.tag == "armv8")
        assert armv8.status == "failed"
        assert armv8.attempts == 2

    def test_logic_error_never_retried(self, settings, three_arch_project):
        builder = FakeBuilder(failures={"armv8": [BuildLogicError("bad Dockerfile")]})

        with pytest.raises(BuildFailed):
            _orchestrator(builder, settings).build_all(
                load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
            )

        assert builder.built_tags.count("armv8") == 1

    def test_no_retry_after_another_build_failed(self, settings, multiarch_project):
        """A transient push failure is not retried once fail-fast has been triggered."""
        builder = FakeBuilder(
            failures={
                "x86-64": [BuildLogicError("syntax error")],
                "armv8": [TransientPushError("429 Too Many Requests")],
            },
            delays={"armv8": 0.3},
        )

        with pytest.raises(BuildFailed) as exc_info:
            _orchestrator(builder, settings).build_all(
                load_manifest(multiarch_project), make_credential(), project_dir=multiarch_project
            )

        assert builder.built_tags.count("armv8") == 1
        armv8 = next(o for o in exc_info.value.outcomes if o.tag == "armv8")
        assert armv8.status == "failed"
        assert armv8.attempts == 1

    def test_unexpected_exception_recorded_as_failure(self, settings, weather_project):
        builder = FakeBuilder(failures={"x86-64": [OSError("podman: not found")]})

        with pytest.raises(BuildFailed) as exc_info:
            _orchestrator(builder, settings).build_all(
                load_manifest(weather_project), make_credential(), project_dir=weather_project
            )

        assert "OSError" in exc_info.value.outcomes[0].detail

    def test_credential_refreshed_before_each_build(self, settings, three_arch_project):
        refreshed = []

        def refresh(credential):
            refreshed.append(credential)
            return make_credential(generation=2)

        builder = FakeBuilder()
        _orchestrator(builder, settings, refresh=refresh).build_all(
            load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
        )

        assert len(refreshed) == 3
        assert {call.credential.registry_token for call in builder.calls} == {"registry-token-2"}

    def test_on_outcome_callback(self, settings, weather_project):
        seen = []
        _orchestrator(FakeBuilder(), settings).build_all(
            load_manifest(weather_project), make_credential(),
            project_dir=weather_project, on_outcome=seen.append,
        )
        assert [(o.tag, o.status) for o in seen] == [("x86-64", "succeeded")]


class TestCancel:

    def test_cancel_stops_in_flight_builds(self, settings, three_arch_project):
        builder = FakeBuilder(delays={"x86-64": 5, "armv7": 5, "armv8": 5})
        orchestrator = _orchestrator(builder, settings)
        errors = []

        def run():
            try:
                orchestrator.build_all(
                    load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
                )
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        while len(builder.calls) < 3:
            time.sleep(0.01)
        orchestrator.cancel()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0], PipelineCancelled)
        assert builder.cancel_calls == 1
        assert {o.status for o in orchestrator.last_outcomes} == {"cancelled"}

    def test_cancel_before_build_all_is_kept(self, settings, three_arch_project):
        """A cancel that lands before build_all runs still stops every build."""
        builder = FakeBuilder()
        orchestrator = _orchestrator(builder, settings)
        orchestrator.cancel()

        with pytest.raises(PipelineCancelled):
            orchestrator.build_all(
                load_manifest(three_arch_project), make_credential(), project_dir=three_arch_project
            )

        assert builder.calls == []
        assert {o.status for o in orchestrator.last_outcomes} == {"cancelled"}

    def test_reset_clears_flags(self, settings, weather_project):
        builder = FakeBuilder()
        orchestrator = _orchestrator(builder, settings)
        orchestrator.cancel()
        orchestrator.reset()

        outputs = orchestrator.build_all(
            load_manifest(weather_project), make_credential(), project_dir=weather_project
        )

        assert list(outputs) == ["x86-64"]
