"""Access token lifecycle for the Google Sheets mirror.

The active session is held by a :class:`SessionStore` that the application
creates at sign-in and invalidates at sign-out.  Only
:class:`CredentialManager` replaces the credential inside the store; every
other component asks the manager for a token through
:meth:`CredentialManager.get_valid_access_token`.

Refreshing happens in two tiers:

1. the session provider refreshes its own session, which is cheap and may
   already hold a newer provider token;
2. the stored refresh token is exchanged directly at the OAuth token endpoint.

When neither tier produces a usable token :class:`SessionExpired` is raised.
Callers treat it as fatal for the current operation.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import timezone
from typing import Callable, List, Optional, Sequence

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from core.google_credentials import ClientSecrets

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired - please sign in again"
DEFAULT_BUFFER_SECONDS = 300
SHEETS_SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)


class CredentialError(Exception):
    """Base error raised for credential lifecycle failures."""


class SessionExpired(CredentialError):
    """Raised when no valid access token can be produced."""

    def __init__(self, message: str = SESSION_EXPIRED_MESSAGE, *, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class AccessCredential:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    def seconds_remaining(self, now: float) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def expires_within(self, buffer_seconds: float, now: float) -> bool:
        remaining = self.seconds_remaining(now)
        if remaining is None:
            return False
        return remaining < buffer_seconds


class SessionProvider:
    """Interface to the identity provider that owns the user's session."""

    def current_session(self) -> Optional[AccessCredential]:
        raise NotImplementedError

    def refresh_session(self) -> Optional[AccessCredential]:
        """Refresh the provider session, returning the new credential if any."""

        raise NotImplementedError


class SessionStore:
    """Holder for the process-wide credential of the signed-in user."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._credential: Optional[AccessCredential] = None

    @property
    def current(self) -> Optional[AccessCredential]:
        with self._lock:
            return self._credential

    @property
    def is_active(self) -> bool:
        return self.current is not None

    def start(self, credential: AccessCredential) -> None:
        with self._lock:
            self._credential = credential

    def replace(self, credential: AccessCredential) -> None:
        with self._lock:
            self._credential = credential

    def invalidate(self) -> None:
        with self._lock:
            self._credential = None


def expiry_timestamp(credentials: Credentials) -> Optional[float]:
    expiry = getattr(credentials, "expiry", None)
    if expiry is None:
        return None
    # google-auth stores naive UTC datetimes.
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry.timestamp()


class TokenExchanger:
    """Exchange a refresh token for a new access token at the token endpoint."""

    def __init__(
        self,
        secrets: ClientSecrets,
        *,
        scopes: Sequence[str] = SHEETS_SCOPES,
        request_factory: Callable[[], Request] = Request,
    ) -> None:
        self._secrets = secrets
        self._scopes = list(scopes)
        self._request_factory = request_factory

    def __call__(self, refresh_token: str) -> AccessCredential:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self._secrets.token_uri,
            client_id=self._secrets.client_id,
            client_secret=self._secrets.client_secret,
            scopes=self._scopes,
        )
        try:
            credentials.refresh(self._request_factory())
        except (RefreshError, TransportError) as exc:
            raise SessionExpired(reason=f"Token exchange failed: {exc}") from exc
        if not credentials.token:
            raise SessionExpired(reason="Token endpoint returned no access token")
        return AccessCredential(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or refresh_token,
            expires_at=expiry_timestamp(credentials),
        )


Exchanger = Callable[[str], AccessCredential]


class CredentialManager:
    """Hand out access tokens that are valid for at least ``buffer_seconds``."""

    def __init__(
        self,
        store: SessionStore,
        provider: Optional[SessionProvider] = None,
        exchanger: Optional[Exchanger] = None,
        *,
        buffer_seconds: float = DEFAULT_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._provider = provider
        self._exchanger = exchanger
        self._buffer_seconds = buffer_seconds
        self._clock = clock
        self._refresh_lock = threading.Lock()

    @property
    def store(self) -> SessionStore:
        return self._store

    def get_valid_access_token(self) -> str:
        """Return a token that will not expire inside the safety buffer."""

        credential = self._current()
        if credential.expires_within(self._buffer_seconds, self._clock()):
            logger.info("Access token expires within %ss, refreshing", self._buffer_seconds)
            credential = self._refresh(credential, forced=False)
        return credential.access_token

    def force_refresh(self) -> AccessCredential:
        """Replace the current token after the remote service rejected it."""

        credential = self._current()
        return self._refresh(credential, forced=True)

    def sign_out(self) -> None:
        self._store.invalidate()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _current(self) -> AccessCredential:
        credential = self._store.current
        if credential is not None:
            return credential
        if self._provider is not None:
            credential = self._provider.current_session()
        if credential is None or not credential.access_token:
            raise SessionExpired(reason="No active session")
        self._store.start(credential)
        return credential

    def _usable(
        self,
        candidate: Optional[AccessCredential],
        previous: AccessCredential,
        *,
        forced: bool,
    ) -> bool:
        if candidate is None or not candidate.access_token:
            return False
        if candidate.expires_within(self._buffer_seconds, self._clock()):
            return False
        if forced and candidate.access_token == previous.access_token:
            return False
        return True

    def _session_tier(self, previous: AccessCredential) -> Optional[AccessCredential]:
        if self._provider is None:
            return None
        try:
            return self._provider.refresh_session()
        except (CredentialError, RefreshError, TransportError) as exc:
            logger.warning("Session refresh failed: %s", exc)
            return None

    def _exchange_tier(self, previous: AccessCredential) -> Optional[AccessCredential]:
        if self._exchanger is None or not previous.refresh_token:
            return None
        try:
            return self._exchanger(previous.refresh_token)
        except CredentialError as exc:
            logger.warning("Refresh token exchange failed: %s", exc)
            return None

    def _refresh(self, previous: AccessCredential, *, forced: bool) -> AccessCredential:
        with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock.
            current = self._store.current
            if current is not None and current != previous and self._usable(
                current, previous, forced=forced
            ):
                return current

            tiers: List[Callable[[AccessCredential], Optional[AccessCredential]]]
            if forced:
                tiers = [self._exchange_tier, self._session_tier]
            else:
                tiers = [self._session_tier, self._exchange_tier]

            for tier in tiers:
                candidate = tier(previous)
                if candidate is None or not self._usable(candidate, previous, forced=forced):
                    continue
                if not candidate.refresh_token and previous.refresh_token:
                    candidate = replace(candidate, refresh_token=previous.refresh_token)
                self._store.replace(candidate)
                logger.info("Access token refreshed via %s", tier.__name__.strip("_"))
                return candidate

        if not previous.refresh_token:
            raise SessionExpired(reason="No refresh token available")
        raise SessionExpired(reason="Token refresh did not produce a valid access token")


__all__ = [
    "AccessCredential",
    "CredentialError",
    "CredentialManager",
    "DEFAULT_BUFFER_SECONDS",
    "SESSION_EXPIRED_MESSAGE",
    "SHEETS_SCOPES",
    "SessionExpired",
    "SessionProvider",
    "SessionStore",
    "TokenExchanger",
    "expiry_timestamp",
]
