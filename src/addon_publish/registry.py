"""
Registry metadata client for the OCI Distribution API.

Answers a single question for the Image Resolver: is a pushed image visible
in the destination registry? Uses HEAD requests on the manifest endpoint and
the Docker Registry v2 bearer challenge, authenticating with the push
credential.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Dict, Optional, Protocol, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ResolveError
from .models import Credential, ImageReference
from .settings import Settings

__all__ = ["RegistryCapability", "RegistryMetadata", "ACCEPTED_MANIFEST_TYPES"]

logger = logging.getLogger(__name__)

# Manifest media types accepted on HEAD (single-arch images and indexes)
ACCEPTED_MANIFEST_TYPES = [
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
]


class RegistryCapability(Protocol):
    """Protocol for the registry existence check."""

    def exists(self, image: ImageReference, credential: Optional[Credential] = None) -> bool:
        """
        True if the registry serves a manifest for ``image``.

        Returns False for images that are not (yet) visible. Transient
        registry trouble is reported as not visible, so the caller's
        backoff covers it.

        Raises:
            ResolveError: If the registry refuses the credential
        """
        ...


class RegistryMetadata:
    """
    HTTP implementation of the registry existence check.

    Handles 401 responses by parsing the ``WWW-Authenticate`` bearer
    challenge, exchanging the credential's registry username/token for a
    bearer token at the realm, and retrying the request. Tokens are cached
    per service/scope.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        registry = settings.registry_url
        if registry.startswith("http"):
            self.base_url = registry.rstrip("/")
        elif settings.registry_insecure:
            self.base_url = f"http://{registry}"
        else:
            self.base_url = f"https://{registry}"

        self.client = client or httpx.Client(
            timeout=httpx.Timeout(settings.http_timeout_s, connect=5.0),
            follow_redirects=True,
            verify=not settings.registry_insecure,
            headers={"User-Agent": "addon-publisher/0.1.0"},
        )
        # {service:scope: (token, expiry_timestamp)}
        self._token_cache: Dict[str, Tuple[str, float]] = {}

    def exists(self, image: ImageReference, credential: Optional[Credential] = None) -> bool:
        path = self.repository_path(image)
        url = f"{self.base_url}/v2/{path}/manifests/{image.reference}"
        headers = {"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)}

        try:
            response = self._request("HEAD", url, headers, credential)
        except httpx.RequestError as e:
            logger.warning(f"Network error checking {image.ref}: {e}")
            return False

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        if response.status_code in (401, 403):
            raise ResolveError(f"Registry refused access to {path} ({response.status_code})")
        logger.warning(f"Registry returned {response.status_code} for {image.ref}")
        return False

    def repository_path(self, image: ImageReference) -> str:
        """Repository path of ``image`` relative to this registry."""
        repository = image.repository
        host = self.settings.registry_host
        if repository.startswith(f"{host}/"):
            return repository[len(host) + 1:]
        raise ResolveError(f"Image {image.ref} is not hosted on registry {host}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectTimeout, httpx.ReadTimeout)),
        reraise=True,
    )
    def _request(self, method: str, url: str, headers: Dict[str, str],
                 credential: Optional[Credential]) -> httpx.Response:
        """Make a request, answering a bearer challenge once."""
        response = self.client.request(method, url, headers=headers)

        if response.status_code == 401 and credential is not None:
            challenge = response.headers.get("WWW-Authenticate", "")
            if challenge.startswith("Bearer "):
                token = self._bearer_token(challenge, credential)
                if token:
                    response = self.client.request(
                        method, url, headers={**headers, "Authorization": f"Bearer {token}"}
                    )
            elif challenge.startswith("Basic "):
                response = self.client.request(
                    method, url, headers=headers,
                    auth=(credential.registry_username, credential.registry_token),
                )
        return response

    def _bearer_token(self, challenge: str, credential: Credential) -> Optional[str]:
        # Format: Bearer realm="...",service="...",scope="..."
        params = dict(re.findall(r'(\w+)="([^"]*)"', challenge))
        realm = params.get("realm")
        service = params.get("service")
        scope = params.get("scope")
        if not realm or not service:
            return None

        cache_key = f"{service}:{scope or ''}"
        cached = self._token_cache.get(cache_key)
        if cached and time.time() < cached[1] - 30:
            return cached[0]

        query = {"service": service}
        if scope:
            query["scope"] = scope
        try:
            response = self.client.get(
                realm, params=query, auth=(credential.registry_username, credential.registry_token)
            )
        except httpx.RequestError as e:
            logger.warning(f"Token exchange with {realm} failed: {e}")
            return None
        if response.status_code != 200:
            logger.debug(f"Token exchange with {realm} returned {response.status_code}")
            return None

        try:
            data = response.json()
        except ValueError:
            return None
        token = data.get("token") or data.get("access_token")
        if token:
            self._token_cache[cache_key] = (token, time.time() + data.get("expires_in", 300))
        return token

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
