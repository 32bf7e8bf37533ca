"""
Identity provider adapter.

Implements the OAuth 2.0 device authorization flow against the account
service, the refresh-token grant, and the lookup of registry push
credentials. Also persists the refresh token between runs so users are not
asked to log in on every publish.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
import webbrowser
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from .errors import AuthDenied
from .models import Credential
from .settings import Settings

__all__ = ["IdentityCapability", "DeviceFlowIdentity", "SessionStore", "StoredSession"]

logger = logging.getLogger(__name__)

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
CLIENT_NAME = "OHX Addon Registry CLI"
SCOPES = "offline_access addons profile"


class IdentityCapability(Protocol):
    """Protocol for obtaining credentials from the identity provider."""

    def login(self) -> Credential:
        """
        Run the interactive login flow and block until it completes.

        Raises:
            AuthDenied: If the user or the provider refuses the login
        """
        ...

    def refresh(self, refresh_token: str) -> Credential:
        """
        Exchange a refresh token for fresh credentials without user interaction.

        Raises:
            AuthDenied: If the refresh token is no longer accepted
        """
        ...

    def cancel(self) -> None:
        """Abort a login that is waiting for the user."""
        ...


@dataclass(frozen=True)
class StoredSession:
    """What survives between runs: no access tokens, only the refresh token."""
    refresh_token: str
    account_id: str = ""
    email: str = ""
    display_name: str = ""


class SessionStore:
    """JSON session cache at ``Settings.session_path``."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[StoredSession]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            return StoredSession(
                refresh_token=data["refresh_token"],
                account_id=data.get("account_id", ""),
                email=data.get("email", ""),
                display_name=data.get("display_name", ""),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def save(self, credential: Credential) -> None:
        if not credential.refresh_token:
            logger.debug("Credential has no refresh token, session not stored")
            return
        session = StoredSession(
            refresh_token=credential.refresh_token,
            account_id=credential.account_id,
            email=credential.email,
            display_name=credential.display_name,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Created owner-only; fchmod covers a file left by an older run
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(asdict(session), f)
        logger.debug(f"Stored session in {self.path}")

    def clear(self) -> bool:
        """Remove the session file. Returns True if one existed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False


class DeviceFlowIdentity:
    """
    Identity capability backed by the OAuth device flow.

    The user is shown a verification URL (and a browser is opened) while this
    client polls the token endpoint until the authorization is granted,
    denied or expires.
    """

    def __init__(self, settings: Settings, *,
                 client: Optional[httpx.Client] = None,
                 open_browser: Callable[[str], Any] = webbrowser.open,
                 on_prompt: Optional[Callable[[str, str], None]] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            settings: Settings with oauth_url, vault_url and oauth_client_id
            client: HTTP client (created from settings if None)
            open_browser: Opens the verification URL
            on_prompt: Called with (verification_uri, user_code) for display
            clock: Time source for token expiry
        """
        self.settings = settings
        self.client = client or httpx.Client(
            timeout=settings.http_timeout_s,
            headers={"User-Agent": "addon-publisher/0.1.0"},
        )
        self._open_browser = open_browser
        self._on_prompt = on_prompt
        self._clock = clock
        self._cancelled = threading.Event()

    def login(self) -> Credential:
        self._cancelled.clear()
        flow = self._start_device_flow()

        verification_uri = flow["verification_uri"]
        logger.warning(f"Please authorize the CLI to publish add-ons on your behalf.\n\tURL: {verification_uri}")
        if self._on_prompt:
            self._on_prompt(verification_uri, flow.get("user_code", ""))
        try:
            self._open_browser(verification_uri)
        except webbrowser.Error as e:
            logger.debug(f"Could not open browser: {e}")

        token = self._poll_for_token(flow)
        return self._complete(token)

    def refresh(self, refresh_token: str) -> Credential:
        logger.info("Getting access token")
        response = self._post(f"{self.settings.oauth_url}/token", {
            "refresh_token": refresh_token,
            "client_id": self.settings.oauth_client_id,
            "grant_type": "refresh_token",
        })
        if response.status_code == 400:
            raise AuthDenied(f"Access token could not be refreshed: {self._error_of(response)}")
        if response.status_code != 200:
            raise AuthDenied(
                f"Unexpected response {response.status_code} while refreshing access token: {response.text}"
            )
        return self._complete(response.json(), fallback_refresh_token=refresh_token)

    def cancel(self) -> None:
        self._cancelled.set()

    def _start_device_flow(self) -> Dict[str, Any]:
        response = self._post(f"{self.settings.oauth_url}/authorize", {
            "client_id": self.settings.oauth_client_id,
            "client_name": CLIENT_NAME,
            "response_type": "device",
            "scope": SCOPES,
        })
        if response.status_code != 200:
            raise AuthDenied(f"Could not start authorisation process: {self._error_of(response)}")

        flow = response.json()
        for key in ("device_code", "verification_uri", "expires_in"):
            if key not in flow:
                raise AuthDenied(f"Malformed device flow response, missing '{key}'")
        return flow

    def _poll_for_token(self, flow: Dict[str, Any]) -> Dict[str, Any]:
        interval = float(flow.get("interval", 2))
        deadline = self._clock() + float(flow["expires_in"])
        logger.info(f"Request expires in {int(flow['expires_in'])} s.")

        while True:
            if self._cancelled.wait(interval):
                raise AuthDenied("Login cancelled")

            response = self._post(f"{self.settings.oauth_url}/token", {
                "device_code": flow["device_code"],
                "client_id": self.settings.oauth_client_id,
                "grant_type": DEVICE_GRANT_TYPE,
            })
            if response.status_code == 200:
                return response.json()
            if response.status_code != 400:
                raise AuthDenied(f"Server response: {response.text}")

            error = self._error_of(response)
            if error == "slow_down":
                interval += 5
            elif error != "authorization_pending":
                raise AuthDenied(f"Server response: {error}")

            if self._clock() > deadline:
                raise AuthDenied("Request expired")

    def _complete(self, token: Dict[str, Any], fallback_refresh_token: Optional[str] = None) -> Credential:
        """Turn a token response into a Credential (user info + registry push secret)."""
        try:
            access_token = token["access_token"]
            expires_in = float(token["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise AuthDenied(f"Malformed token response: {e}") from e

        headers = {"Authorization": f"Bearer {access_token}"}
        user = self._get_json(f"{self.settings.oauth_url}/userinfo", headers, "user info")
        docker = self._get_json(
            f"{self.settings.vault_url}/get/docker-access.json", headers, "registry credentials"
        )
        if "Username" not in docker or "Secret" not in docker:
            raise AuthDenied("Registry credential response lacks Username/Secret")

        account_id = user.get("localId") or ""
        if not account_id:
            raise AuthDenied("User info response lacks an account id")

        return Credential(
            account_id=account_id,
            catalog_token=access_token,
            catalog_expires_at=self._clock() + expires_in,
            registry_username=docker["Username"],
            registry_token=docker["Secret"],
            refresh_token=token.get("refresh_token") or fallback_refresh_token,
            email=user.get("email") or "",
            display_name=user.get("displayName") or "",
        )

    def _get_json(self, url: str, headers: Dict[str, str], what: str) -> Dict[str, Any]:
        try:
            response = self.client.get(url, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise AuthDenied(f"Failed to fetch {what}: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise AuthDenied(f"Failed to contact {url}: {e}") from e
        except ValueError as e:
            raise AuthDenied(f"Unexpected {what} response: {e}") from e

    def _post(self, url: str, form: Dict[str, str]) -> httpx.Response:
        try:
            return self.client.post(url, data=form)
        except httpx.RequestError as e:
            raise AuthDenied(f"Failed to contact {url}: {e}") from e

    @staticmethod
    def _error_of(response: httpx.Response) -> str:
        try:
            return response.json().get("error") or response.text
        except ValueError:
            return response.text
