"""Retry remote calls once the access token has been rejected."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from core.credentials import CredentialManager, SessionExpired

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_STATUS_CODES = frozenset({401, 403})
AUTH_ERROR_MARKERS = ("unauthorized", "invalid credentials")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PROPAGATION_DELAY = 0.5


def error_status(exc: BaseException) -> int:
    """Return the HTTP status attached to ``exc`` or ``0`` when unknown."""

    for candidate in (
        getattr(exc, "status", None),
        getattr(exc, "status_code", None),
        getattr(getattr(exc, "resp", None), "status", None),
    ):
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return 0


def is_auth_error(exc: BaseException) -> bool:
    if isinstance(exc, SessionExpired):
        return False
    if error_status(exc) in AUTH_STATUS_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in AUTH_ERROR_MARKERS)


class AuthRetry:
    """Run a call, refreshing credentials between authorisation failures.

    Only authorisation failures are retried.  Each one forces a credential
    refresh followed by ``propagation_delay`` seconds of waiting before the
    next attempt.  Other exceptions propagate on the first occurrence and
    :class:`SessionExpired` is never retried.  Running out of attempts raises
    :class:`SessionExpired` chained to the last authorisation error.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        propagation_delay: float = DEFAULT_PROPAGATION_DELAY,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._credentials = credentials
        self._max_attempts = max_attempts
        self._propagation_delay = propagation_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def run(self, call: Callable[[], T], description: str = "request") -> T:
        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt < self._max_attempts:
            attempt += 1
            try:
                return call()
            except SessionExpired:
                raise
            except Exception as exc:
                if not is_auth_error(exc):
                    raise
                last_error = exc
                logger.warning(
                    "Sheets %s rejected credentials (%d/%d): %s",
                    description,
                    attempt,
                    self._max_attempts,
                    exc,
                )
            if attempt >= self._max_attempts:
                break
            self._credentials.force_refresh()
            if self._propagation_delay > 0:
                self._sleep(self._propagation_delay)

        raise SessionExpired(
            reason=f"{description} still unauthorised after {self._max_attempts} attempts"
        ) from last_error


def run_with_retry(
    credentials: CredentialManager,
    call: Callable[[], T],
    description: str = "request",
    **options: Any,
) -> T:
    return AuthRetry(credentials, **options).run(call, description)


__all__ = [
    "AUTH_ERROR_MARKERS",
    "AUTH_STATUS_CODES",
    "AuthRetry",
    "error_status",
    "is_auth_error",
    "run_with_retry",
]
