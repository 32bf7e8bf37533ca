"""
Credential acquisition and refresh.

The CredentialProvider is the only writer of the current Credential. Callers
ask it for a freshness check right before every use instead of keeping a
copy across long operations, because builds can outlive short-lived tokens.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from .errors import AuthDenied, AuthError, AuthTimeout
from .identity import IdentityCapability, SessionStore
from .models import Credential
from .settings import Settings

__all__ = ["CredentialProvider"]

logger = logging.getLogger(__name__)


class CredentialProvider:
    """
    Obtains and refreshes bearer credentials for the catalog and the registry.

    Acquisition order: in-memory credential, stored session (refresh grant),
    interactive login bounded by ``Settings.login_timeout_s``.
    """

    def __init__(self, identity: IdentityCapability, settings: Settings, *,
                 session_store: Optional[SessionStore] = None,
                 clock: Callable[[], float] = time.time):
        self.identity = identity
        self.settings = settings
        self.session_store = session_store
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._lock = threading.RLock()

    def acquire(self) -> Credential:
        """
        Return a valid credential, logging in if necessary.

        Raises:
            AuthTimeout: If the interactive login does not finish in time
            AuthDenied: If the identity provider refuses the login
        """
        with self._lock:
            if self._credential is not None:
                return self.refresh_if_expired(self._credential)

            credential = self._from_session() or self._login()
            self._remember(credential)
            return credential

    def refresh_if_expired(self, credential: Credential) -> Credential:
        """
        Return ``credential`` if it is still valid, otherwise a refreshed one.

        Raises:
            AuthError: If neither refresh nor a new login succeeds
        """
        if not self._expired(credential):
            return credential

        with self._lock:
            # Another caller may have refreshed while we waited for the lock
            current = self._credential
            if current is not None and current is not credential and not self._expired(current):
                return current

            logger.info("Credential expired, refreshing")
            refreshed = None
            if credential.refresh_token:
                refreshed = self._try_refresh(credential.refresh_token)
            if refreshed is None:
                refreshed = self._login()

            self._remember(refreshed)
            return refreshed

    def logout(self) -> bool:
        """Forget the in-memory credential and remove the stored session."""
        with self._lock:
            self._credential = None
        if self.session_store is None:
            return False
        return self.session_store.clear()

    def _expired(self, credential: Credential) -> bool:
        return credential.is_expired(now=self._clock(), skew=self.settings.token_skew_s)

    def _from_session(self) -> Optional[Credential]:
        if self.session_store is None:
            return None
        session = self.session_store.load()
        if session is None:
            logger.info("You are not logged in")
            return None
        return self._try_refresh(session.refresh_token)

    def _try_refresh(self, refresh_token: str) -> Optional[Credential]:
        try:
            return self.identity.refresh(refresh_token)
        except AuthDenied as e:
            logger.warning(f"{e}. Login required")
            return None

    def _login(self) -> Credential:
        """Run the interactive login in a worker thread and wait with a timeout."""
        timeout = self.settings.login_timeout_s
        logger.info(f"Starting login (timeout {timeout:g}s)")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="addon-login")
        future = executor.submit(self.identity.login)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            self.identity.cancel()
            raise AuthTimeout(timeout) from None
        except AuthError:
            raise
        except Exception as e:
            raise AuthDenied(f"Login failed: {e}") from e
        finally:
            executor.shutdown(wait=False)

    def _remember(self, credential: Credential) -> None:
        self._credential = credential
        if self.session_store is not None:
            self.session_store.save(credential)
