"""Google OAuth session backed by an authorised-user token file."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from core.credentials import (
    SHEETS_SCOPES,
    AccessCredential,
    CredentialError,
    CredentialManager,
    SessionProvider,
    SessionStore,
    TokenExchanger,
    expiry_timestamp,
)
from core.google_credentials import ClientSecretsInvalidError, load_client_secrets
from settings import SyncSettings

logger = logging.getLogger(__name__)


class SignInError(CredentialError):
    """Raised when the interactive sign-in cannot be completed."""


def _to_access_credential(credentials: Credentials) -> Optional[AccessCredential]:
    if not credentials.token:
        return None
    return AccessCredential(
        access_token=credentials.token,
        refresh_token=credentials.refresh_token,
        expires_at=expiry_timestamp(credentials),
    )


class GoogleOAuthSessionProvider(SessionProvider):
    """Session provider for the desktop OAuth flow.

    The authorised-user JSON written by ``google-auth`` is the persisted
    session.  :meth:`sign_in` runs the installed-app flow when no usable
    token exists and starts the :class:`SessionStore`; :meth:`sign_out`
    removes the token file and invalidates the store.
    """

    def __init__(
        self,
        client_secret_path: str,
        token_path: str,
        *,
        scopes: Sequence[str] = SHEETS_SCOPES,
        store: Optional[SessionStore] = None,
    ) -> None:
        self._client_secret_path = client_secret_path
        self._token_path = token_path
        self._scopes: List[str] = list(scopes)
        self._store = store
        self._credentials: Optional[Credentials] = None

    # ------------------------------------------------------------------
    # Token file handling
    # ------------------------------------------------------------------
    def _load(self) -> Optional[Credentials]:
        if self._credentials is not None:
            return self._credentials
        if not self._token_path or not os.path.exists(self._token_path):
            return None
        try:
            self._credentials = Credentials.from_authorized_user_file(self._token_path, self._scopes)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", self._token_path, exc)
            return None
        return self._credentials

    def _save(self, credentials: Credentials) -> None:
        if not self._token_path:
            return
        os.makedirs(os.path.dirname(self._token_path) or ".", exist_ok=True)
        with open(self._token_path, "w", encoding="utf-8") as handle:
            handle.write(credentials.to_json())

    # ------------------------------------------------------------------
    # SessionProvider API
    # ------------------------------------------------------------------
    def current_session(self) -> Optional[AccessCredential]:
        credentials = self._load()
        if credentials is None:
            return None
        return _to_access_credential(credentials)

    def refresh_session(self) -> Optional[AccessCredential]:
        credentials = self._load()
        if credentials is None or not credentials.refresh_token:
            return None
        try:
            credentials.refresh(Request())
        except (RefreshError, TransportError) as exc:
            raise CredentialError(f"Session refresh failed: {exc}") from exc
        self._save(credentials)
        return _to_access_credential(credentials)

    # ------------------------------------------------------------------
    # Sign-in lifecycle
    # ------------------------------------------------------------------
    def sign_in(self) -> AccessCredential:
        credentials = self._load()
        if credentials is None or not credentials.valid:
            if credentials is not None and credentials.expired and credentials.refresh_token:
                try:
                    credentials.refresh(Request())
                except RefreshError:
                    logger.info("Stored Google token was revoked; starting sign-in flow")
                    credentials = None
            else:
                credentials = None
            if credentials is None:
                if not Path(self._client_secret_path).exists():
                    raise SignInError(f"Client secret file not found: {self._client_secret_path}")
                flow = InstalledAppFlow.from_client_secrets_file(self._client_secret_path, self._scopes)
                credentials = flow.run_local_server(port=0)
            self._save(credentials)
        self._credentials = credentials

        credential = _to_access_credential(credentials)
        if credential is None:
            raise SignInError("Google sign-in did not return an access token")
        if self._store is not None:
            self._store.start(credential)
        logger.info("Signed in to Google Sheets")
        return credential

    def sign_out(self) -> None:
        self._credentials = None
        if self._token_path and os.path.exists(self._token_path):
            os.remove(self._token_path)
        if self._store is not None:
            self._store.invalidate()
        logger.info("Signed out of Google Sheets")


def build_credential_manager(
    settings: SyncSettings,
    store: Optional[SessionStore] = None,
) -> Tuple[CredentialManager, GoogleOAuthSessionProvider]:
    """Wire the token-file session and the token exchange into one manager."""

    store = store or SessionStore()
    provider = GoogleOAuthSessionProvider(
        settings.client_secret_path,
        settings.token_path,
        store=store,
    )
    exchanger = None
    try:
        exchanger = TokenExchanger(load_client_secrets(Path(settings.client_secret_path)))
    except ClientSecretsInvalidError as exc:
        logger.warning("Direct token exchange disabled: %s", exc)
    manager = CredentialManager(
        store,
        provider,
        exchanger,
        buffer_seconds=settings.token_buffer_seconds,
    )
    return manager, provider


__all__ = ["GoogleOAuthSessionProvider", "SignInError", "build_credential_manager"]
