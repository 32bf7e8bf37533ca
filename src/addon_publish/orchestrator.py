"""
Multi-architecture build orchestration.

Runs one build per architecture target in parallel and aggregates the
results. Policy is fail-fast after in-flight builds: once a build fails no
new build starts, running builds finish and their images are discarded.
Each worker returns its own outcome; results are collected from the futures
rather than written into a shared mapping.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from tenacity import Retrying, retry_if_exception, retry_if_exception_type, stop_after_attempt, wait_fixed

from .builder import BuildCapability
from .errors import BuildFailed, BuildLogicError, PipelineCancelled, PipelineError, TransientPushError
from .models import AddonManifest, ArchitectureTarget, BuildOutcome, Credential, ImageReference
from .settings import Settings

__all__ = ["BuildOrchestrator", "destination_for"]

logger = logging.getLogger(__name__)

# One automatic retry for transient push failures
PUSH_ATTEMPTS = 2


def destination_for(settings: Settings, manifest: AddonManifest, target: ArchitectureTarget) -> str:
    """
    Destination reference for one architecture's image.

    ``{registry}/{namespace}/{addon id}:{version}-{arch}``; build metadata
    (``+...``) is not allowed in OCI tags and becomes ``_``.
    """
    tag = f"{manifest.version}-{target.tag}".replace("+", "_")
    return f"{settings.registry_host}/{settings.registry_namespace}/{manifest.id}:{tag}"


class BuildOrchestrator:
    """
    Builds all architecture targets of a manifest.

    ``refresh`` is called with the credential right before every build
    invocation so long builds never start with an expired push token.
    """

    def __init__(self, builder: BuildCapability, settings: Settings, *,
                 refresh: Optional[Callable[[Credential], Credential]] = None,
                 retry_wait_s: float = 2.0):
        self.builder = builder
        self.settings = settings
        self._refresh = refresh
        self._retry_wait_s = retry_wait_s
        self._stop = threading.Event()
        self._cancelled = threading.Event()
        self.last_outcomes: List[BuildOutcome] = []

    def build_all(self, manifest: AddonManifest, credential: Credential, *,
                  project_dir: Union[str, Path] = ".",
                  on_outcome: Optional[Callable[[BuildOutcome], None]] = None) -> Dict[str, ImageReference]:
        """
        Build and push every architecture target.

        Args:
            manifest: Validated manifest
            credential: Credential carrying the registry push token
            project_dir: Directory Dockerfile paths are relative to
            on_outcome: Called as each architecture finishes

        Returns:
            Mapping architecture tag -> pushed image, ordered by tag

        Raises:
            BuildFailed: If any architecture failed; lists every outcome
            PipelineCancelled: If cancel() was called
        """
        project_dir = Path(project_dir)
        targets = manifest.architectures
        workers = min(len(targets), self.settings.max_parallel_builds or len(targets))

        logger.info(f"Building {manifest.id}@{manifest.version} for "
                    f"{', '.join(manifest.arch_tags)} ({workers} parallel)")

        outcomes: Dict[str, BuildOutcome] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="addon-build") as pool:
            futures = [
                pool.submit(self._build_one, manifest, target, credential, project_dir)
                for target in targets
            ]
            for future in as_completed(futures):
                outcome = future.result()
                outcomes[outcome.tag] = outcome
                if on_outcome:
                    on_outcome(outcome)

        ordered = [outcomes[tag] for tag in sorted(outcomes)]
        self.last_outcomes = ordered

        if self._cancelled.is_set():
            raise PipelineCancelled("Build cancelled by user")
        if any(outcome.status != "succeeded" for outcome in ordered):
            raise BuildFailed(ordered)

        return {outcome.tag: outcome.image for outcome in ordered}

    def reset(self) -> None:
        """Clear the fail-fast and cancel flags before a new pipeline run."""
        self._stop.clear()
        self._cancelled.clear()
        self.last_outcomes = []

    def cancel(self) -> None:
        """Stop starting builds and ask the build engine to stop running ones."""
        logger.warning("Cancelling in-flight builds")
        self._cancelled.set()
        self._stop.set()
        self.builder.cancel()

    def _halt(self) -> None:
        """Fail-fast: set by the failing worker so queued targets see it before they start."""
        if not self._stop.is_set():
            logger.warning("A build failed, not starting further builds")
            self._stop.set()

    def _build_one(self, manifest: AddonManifest, target: ArchitectureTarget,
                   credential: Credential, project_dir: Path) -> BuildOutcome:
        if self._stop.is_set():
            status = "cancelled" if self._cancelled.is_set() else "skipped"
            return BuildOutcome(tag=target.tag, status=status, detail="not started")

        destination = destination_for(self.settings, manifest, target)
        dockerfile = project_dir / target.dockerfile
        attempts = 0

        def attempt() -> ImageReference:
            nonlocal attempts
            if self._cancelled.is_set():
                raise PipelineCancelled("Build cancelled")
            if attempts and self._stop.is_set():
                raise BuildLogicError("Retry suppressed, another architecture failed")
            attempts += 1
            fresh = self._refresh(credential) if self._refresh else credential
            return self.builder.build(dockerfile, target.tag, destination, fresh, context_dir=project_dir)

        retrying = Retrying(
            stop=stop_after_attempt(PUSH_ATTEMPTS),
            wait=wait_fixed(self._retry_wait_s),
            # No retry once another architecture has failed or the run was cancelled
            retry=retry_if_exception_type(TransientPushError) & retry_if_exception(lambda e: not self._stop.is_set()),
            before_sleep=lambda state: logger.warning(
                f"Transient push failure for {target.tag}, retrying: {state.outcome.exception()}"
            ),
            reraise=True,
        )

        try:
            image = retrying(attempt)
        except PipelineCancelled as e:
            return BuildOutcome(tag=target.tag, status="cancelled", detail=str(e), attempts=attempts)
        except PipelineError as e:
            if self._cancelled.is_set():
                return BuildOutcome(tag=target.tag, status="cancelled", detail=str(e), attempts=attempts)
            logger.error(f"Build for {target.tag} failed: {e}")
            self._halt()
            return BuildOutcome(tag=target.tag, status="failed", detail=str(e), attempts=attempts)
        except Exception as e:
            # Recorded as this architecture's failure and reported in the aggregate
            logger.exception(f"Unexpected error building {target.tag}")
            self._halt()
            return BuildOutcome(tag=target.tag, status="failed", detail=f"{type(e).__name__}: {e}",
                                attempts=attempts)

        if self._stop.is_set():
            logger.info(f"Build for {target.tag} finished after fail-fast, image discarded")
        else:
            logger.info(f"Built {target.tag}: {image.ref}")
        return BuildOutcome(tag=target.tag, status="succeeded", image=image, attempts=attempts)
