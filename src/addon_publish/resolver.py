"""
Image resolution.

Confirms that every built image is visible in the destination registry and
produces the resolved manifest. The result is all or nothing: one image
that never shows up fails the whole stage.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_exponential

from .errors import ImageNotVisible
from .models import AddonManifest, Credential, ImageReference
from .registry import RegistryCapability
from .settings import Settings

__all__ = ["ImageResolver"]

logger = logging.getLogger(__name__)


class ImageResolver:
    """Checks build outputs against the registry and attaches them to the manifest."""

    def __init__(self, registry: RegistryCapability, settings: Settings, *,
                 sleep: Optional[Callable[[float], None]] = None):
        self.registry = registry
        self.settings = settings
        self._sleep = sleep

    def resolve(self, manifest: AddonManifest, build_outputs: Dict[str, ImageReference],
                credential: Optional[Credential] = None) -> AddonManifest:
        """
        Args:
            manifest: Validated manifest, typically without images
            build_outputs: Architecture tag -> pushed image
            credential: Used to answer the registry's auth challenge

        Returns:
            Copy of ``manifest`` whose images list one reference per target,
            in target order

        Raises:
            ImageNotVisible: If a target has no build output or its image
                never became visible
            ResolveError: If the registry refuses the credential
        """
        images: List[ImageReference] = []
        for target in manifest.architectures:
            image = build_outputs.get(target.tag)
            if image is None:
                raise ImageNotVisible(target.tag)
            if image.tag != target.tag:
                image = image.model_copy(update={"tag": target.tag})

            if not self._wait_until_visible(image, credential):
                raise ImageNotVisible(target.tag, image.ref)
            logger.debug(f"Image for {target.tag} visible: {image.ref}")
            images.append(image)

        return manifest.model_copy(update={"images": images})

    def _wait_until_visible(self, image: ImageReference, credential: Optional[Credential]) -> bool:
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.resolve_attempts),
            wait=wait_exponential(multiplier=self.settings.resolve_backoff_s, max=30),
            retry=retry_if_result(lambda visible: not visible),
            before_sleep=lambda state: logger.info(
                f"Image {image.ref} not visible yet (attempt {state.attempt_number})"
            ),
            **kwargs,
        )
        try:
            return retrying(self.registry.exists, image, credential)
        except RetryError:
            return False
