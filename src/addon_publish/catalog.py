"""
Catalog HTTP client.

Talks to the add-on catalog, the service of record for published versions:
ownership lookups before building and the single publish request at the end
of the pipeline. The catalog applies a publish atomically, so this client
never retries a request that may already have reached the server.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CatalogUnavailable
from .models import Credential, OwnershipRecord, PublishRequest
from .settings import Settings

__all__ = ["CatalogCapability", "CatalogClient", "PublishResponse"]

logger = logging.getLogger(__name__)

# Status codes the catalog uses to reject a publish request
REJECTION_STATUSES = (400, 401, 403, 409, 422)


@dataclass(frozen=True)
class PublishResponse:
    """Catalog verdict for a publish request."""
    accepted: bool
    reason: Optional[str] = None


class CatalogCapability(Protocol):
    """Protocol for catalog operations used by the pipeline."""

    def lookup_ownership(self, addon_id: str) -> Optional[OwnershipRecord]:
        """
        Look up who owns an add-on.

        Returns:
            OwnershipRecord, or None if the add-on was never published

        Raises:
            CatalogUnavailable: If the catalog cannot answer
        """
        ...

    def publish(self, request: PublishRequest, credential: Credential) -> PublishResponse:
        """
        Record a new add-on version.

        Returns:
            PublishResponse with accepted=False and a reason on rejection

        Raises:
            CatalogUnavailable: If the catalog cannot answer
        """
        ...


class CatalogClient:
    """HTTP implementation of the catalog capability."""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.base_url = settings.catalog_url.rstrip("/")
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(settings.http_timeout_s, connect=5.0),
            follow_redirects=True,
            headers={"User-Agent": "addon-publisher/0.1.0"},
        )

    def lookup_ownership(self, addon_id: str) -> Optional[OwnershipRecord]:
        url = f"{self.base_url}/addons/{quote(addon_id, safe='')}"
        try:
            response = self._get(url)
        except httpx.RequestError as e:
            raise CatalogUnavailable(f"Network error looking up {addon_id}: {e}") from e

        if response.status_code == 404:
            logger.debug(f"Add-on {addon_id} not registered in catalog")
            return None
        if response.status_code != 200:
            raise CatalogUnavailable(
                f"Catalog error {response.status_code} looking up {addon_id}: {response.text}"
            )

        try:
            data = response.json()
            data.setdefault("id", addon_id)
            return OwnershipRecord.model_validate(data)
        except ValueError as e:
            raise CatalogUnavailable(f"Unexpected catalog response for {addon_id}: {e}") from e

    def publish(self, request: PublishRequest, credential: Credential) -> PublishResponse:
        manifest = request.manifest
        url = f"{self.base_url}/addons/{quote(manifest.id, safe='')}/versions"
        headers = {"Authorization": f"Bearer {credential.catalog_token}"}

        logger.info(f"Publishing {manifest.id}@{manifest.version} to {self.base_url}")
        try:
            response = self._post(url, json=request.to_payload(), headers=headers)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise CatalogUnavailable(f"Could not connect to catalog: {e}") from e
        except httpx.RequestError as e:
            # The request may have been applied; a re-run reports a duplicate version then
            raise CatalogUnavailable(f"Publish outcome unknown, network error: {e}") from e

        if response.status_code in (200, 201):
            return PublishResponse(accepted=True)
        if response.status_code in REJECTION_STATUSES:
            return PublishResponse(accepted=False, reason=self._reason_of(response))
        raise CatalogUnavailable(f"Catalog error {response.status_code}: {response.text}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectTimeout, httpx.ReadTimeout, httpx.ConnectError)),
        reraise=True,
    )
    def _get(self, url: str) -> httpx.Response:
        return self.client.get(url)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectTimeout, httpx.ConnectError)),
        reraise=True,
    )
    def _post(self, url: str, **kwargs) -> httpx.Response:
        return self.client.post(url, **kwargs)

    @staticmethod
    def _reason_of(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return body.get("error") or body.get("reason") or response.text
        return response.text

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
