"""
Publish pipeline coordinator.

Sequences validation, authentication, the ownership check, the parallel
build, image resolution and the catalog update. Stages run strictly in
order and a stage only starts after its predecessor succeeded. Any error
leaving a stage is tagged with that stage's name and moves the pipeline to
FAILED; nothing after the failing stage has happened at that point.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from .catalog import CatalogCapability, PublishResponse
from .credentials import CredentialProvider
from .errors import CatalogRejected, NotOwner, PipelineCancelled, PipelineError
from .manifest import find_manifest, load_manifest
from .models import AddonManifest, BuildOutcome, OwnershipStatus, PublishRequest
from .orchestrator import BuildOrchestrator
from .ownership import OwnershipResolver
from .resolver import ImageResolver

__all__ = ["Stage", "PublishResult", "PublishPipeline"]

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Pipeline stages in execution order, plus the terminal states."""
    VALIDATING = "Validating"
    AUTHENTICATING = "Authenticating"
    CHECKING_OWNERSHIP = "CheckingOwnership"
    BUILDING = "Building"
    RESOLVING_IMAGES = "ResolvingImages"
    PUBLISHING = "Publishing"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class PublishResult:
    """Outcome of a pipeline run that reached DONE."""
    manifest: AddonManifest
    stages: List[Stage]
    response: PublishResponse
    outcomes: List[BuildOutcome] = field(default_factory=list)


class PublishPipeline:
    """
    End-to-end publish of one add-on version.

    Collaborators are injected so the pipeline runs against fakes in tests.
    The pipeline holds the credential only as a local value and asks the
    credential provider for a freshness check before the ownership check
    and before the publish call.
    """

    def __init__(self, credentials: CredentialProvider, ownership: OwnershipResolver,
                 orchestrator: BuildOrchestrator, resolver: ImageResolver,
                 catalog: CatalogCapability, *,
                 on_stage: Optional[Callable[[Stage], None]] = None):
        self.credentials = credentials
        self.ownership = ownership
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.catalog = catalog
        self._on_stage = on_stage
        self._cancel_requested = threading.Event()
        self.stage: Optional[Stage] = None
        self.history: List[Stage] = []

    def run(self, manifest_path: Union[str, Path]) -> PublishResult:
        """
        Publish the add-on described by ``manifest_path``.

        Args:
            manifest_path: Manifest file or project directory

        Returns:
            PublishResult with the resolved manifest and the catalog response

        Raises:
            PipelineError: Any stage failure; ``.stage`` names the stage
        """
        self.history = []
        self.orchestrator.reset()
        try:
            with self._stage(Stage.VALIDATING):
                manifest_file = find_manifest(manifest_path)
                manifest = load_manifest(manifest_file)
                logger.info(f"Validated {manifest.id}@{manifest.version}")

            with self._stage(Stage.AUTHENTICATING):
                credential = self.credentials.acquire()
                logger.info(f"Authenticated as {credential.display_name or credential.account_id}")

            with self._stage(Stage.CHECKING_OWNERSHIP):
                credential = self.credentials.refresh_if_expired(credential)
                check = self.ownership.lookup(manifest.id, credential)
                if check.status is OwnershipStatus.OWNED_BY_OTHER:
                    raise NotOwner(manifest.id, check.owner)

            with self._stage(Stage.BUILDING):
                outputs = self.orchestrator.build_all(
                    manifest, credential, project_dir=manifest_file.parent
                )

            with self._stage(Stage.RESOLVING_IMAGES):
                credential = self.credentials.refresh_if_expired(credential)
                resolved = self.resolver.resolve(manifest, outputs, credential)

            with self._stage(Stage.PUBLISHING):
                credential = self.credentials.refresh_if_expired(credential)
                request = PublishRequest.from_manifest(resolved, credential.account_id)
                response = self.catalog.publish(request, credential)
                if not response.accepted:
                    raise CatalogRejected(response.reason or "no reason given")
        except PipelineError as e:
            logger.debug(f"Pipeline failed in stage {e.stage}: {e.message}")
            self._transition(Stage.FAILED)
            raise

        self._transition(Stage.DONE)
        logger.info(f"Published {resolved.id}@{resolved.version}")
        return PublishResult(
            manifest=resolved,
            stages=list(self.history),
            response=response,
            outcomes=list(self.orchestrator.last_outcomes),
        )

    def cancel(self) -> None:
        """
        Request cancellation.

        Before Building the pipeline stops at the next stage boundary; during
        Building the in-flight builds are stopped; once Publishing started the
        request is left to complete.
        """
        stage = self.stage
        if stage is Stage.PUBLISHING:
            logger.warning("Publish request already sent, cancellation ignored")
            return
        if stage in (Stage.DONE, Stage.FAILED):
            return

        logger.warning(f"Cancellation requested during {stage.value if stage else 'startup'}")
        self._cancel_requested.set()
        if stage is Stage.AUTHENTICATING:
            self.credentials.identity.cancel()
        elif stage is Stage.BUILDING:
            self.orchestrator.cancel()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @contextmanager
    def _stage(self, stage: Stage) -> Iterator[None]:
        if self._cancel_requested.is_set():
            raise PipelineCancelled(f"Publishing cancelled before {stage.value}", stage=stage.value)
        self._transition(stage)
        try:
            yield
        except PipelineCancelled as e:
            e.stage = e.stage or stage.value
            raise
        except PipelineError as e:
            if self._cancel_requested.is_set():
                raise PipelineCancelled(stage=stage.value) from e
            e.stage = e.stage or stage.value
            raise
        except Exception as e:
            raise PipelineError(f"Unexpected error: {type(e).__name__}: {e}", stage=stage.value) from e

    def _transition(self, stage: Stage) -> None:
        self.stage = stage
        self.history.append(stage)
        logger.debug(f"Stage -> {stage.value}")
        if self._on_stage:
            self._on_stage(stage)
