"""
Operations Facade - Application service layer.

Provides a clean interface between the CLI and the publish pipeline,
centralizing command orchestration and policy decisions while keeping CLI
commands thin and testable.
"""
from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple, Union

from ..cli_context import CLIContext
from ..manifest import bump_version, find_manifest, load_manifest, write_version
from ..models import AddonManifest, Credential
from ..orchestrator import BuildOrchestrator
from ..ownership import OwnershipResolver
from ..pipeline import PublishPipeline, PublishResult, Stage
from ..resolver import ImageResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpsConfig:
    """
    Configuration for Operations facade.

    Centralizes CLI policy decisions to avoid scattered configuration.
    """
    ci: bool = False                  # Running in CI environment
    verbose: int = 0                  # -v count
    handle_interrupts: bool = True    # Ctrl-C cancels the pipeline instead of killing it


class Operations:
    """
    Application service facade for CLI operations.

    One method per CLI verb. Exceptions bubble up unchanged for the central
    exit code mapping in ``mappers.run_and_exit``.
    """

    def __init__(self, config: OpsConfig, context: Optional[CLIContext] = None):
        """
        Args:
            config: Configuration settings
            context: Adapter context (if None, loaded from environment)
        """
        self.cfg = config
        self.context = context or CLIContext.from_env()
        self.settings = self.context.settings

    def validate(self, manifest_path: Union[str, Path]) -> AddonManifest:
        """Parse and validate the manifest without touching the network."""
        return load_manifest(manifest_path)

    def login(self) -> Credential:
        """Acquire a credential (stored session or interactive login) and keep the session."""
        return self.context.credentials.acquire()

    def logout(self) -> bool:
        """
        Remove the stored session.

        Returns:
            True if a session existed
        """
        return self.context.credentials.logout()

    def bump(self, manifest_path: Union[str, Path], bump: str) -> Tuple[str, str]:
        """
        Bump the version in the manifest file.

        Returns:
            (previous version, new version)
        """
        manifest = load_manifest(manifest_path)
        new_version = bump_version(manifest.version, bump)
        write_version(find_manifest(manifest_path), new_version)
        logger.info(f"Version bumped: {manifest.version} -> {new_version}")
        return manifest.version, new_version

    def create_pipeline(self, on_stage: Optional[Callable[[Stage], None]] = None) -> PublishPipeline:
        """Wire a pipeline from the context's adapters."""
        ctx = self.context
        credentials = ctx.credentials
        return PublishPipeline(
            credentials=credentials,
            ownership=OwnershipResolver(ctx.catalog),
            orchestrator=BuildOrchestrator(
                ctx.builder, self.settings, refresh=credentials.refresh_if_expired
            ),
            resolver=ImageResolver(ctx.registry, self.settings),
            catalog=ctx.catalog,
            on_stage=on_stage,
        )

    def publish(self, manifest_path: Union[str, Path], *,
                bump: Optional[str] = None,
                on_stage: Optional[Callable[[Stage], None]] = None) -> PublishResult:
        """
        Run the full publish pipeline.

        Args:
            manifest_path: Manifest file or project directory
            bump: Version bump strategy (patch, minor, major) applied first
            on_stage: Called on every stage transition

        Returns:
            PublishResult of the run
        """
        if bump:
            self.bump(manifest_path, bump)

        pipeline = self.create_pipeline(on_stage=on_stage)
        if not self.cfg.handle_interrupts:
            return pipeline.run(manifest_path)
        with cancel_on_interrupt(pipeline):
            return pipeline.run(manifest_path)


@contextmanager
def cancel_on_interrupt(pipeline: PublishPipeline) -> Iterator[None]:
    """
    Route the first Ctrl-C to ``pipeline.cancel()``.

    A second Ctrl-C gets the default behaviour (KeyboardInterrupt).
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        signal.signal(signal.SIGINT, signal.default_int_handler)
        pipeline.cancel()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
