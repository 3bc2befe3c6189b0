"""Helpers for validating Google OAuth client secret files."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping

__all__ = [
    "ClientSecrets",
    "ClientSecretsInvalidError",
    "DEFAULT_TOKEN_URI",
    "REQUIRED_FIELDS",
    "load_client_secrets",
]

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

REQUIRED_FIELDS: Iterable[str] = (
    "client_id",
    "client_secret",
)

_CLIENT_SECTIONS = ("installed", "web")


class ClientSecretsInvalidError(Exception):
    """Raised when an OAuth client secret JSON file is missing required data."""


@dataclass(frozen=True)
class ClientSecrets:
    client_id: str
    client_secret: str
    token_uri: str = DEFAULT_TOKEN_URI


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise ClientSecretsInvalidError(f"Could not read JSON file: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise ClientSecretsInvalidError("Client secret JSON is empty.")

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise ClientSecretsInvalidError(f"JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise ClientSecretsInvalidError("Client secret JSON must be an object.")
    return payload


def _client_section(payload: Mapping[str, object]) -> Dict[str, object]:
    for section in _CLIENT_SECTIONS:
        value = payload.get(section)
        if isinstance(value, Mapping):
            return dict(value)
    # Flat files written by older versions of the app.
    return dict(payload)


def _validate_payload(payload: Mapping[str, object]) -> ClientSecrets:
    data = _client_section(payload)
    missing = []
    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise ClientSecretsInvalidError(f"JSON missing fields: {ordered}")

    token_uri = data.get("token_uri")
    if not isinstance(token_uri, str) or not token_uri.strip():
        token_uri = DEFAULT_TOKEN_URI
    return ClientSecrets(
        client_id=str(data["client_id"]).strip(),
        client_secret=str(data["client_secret"]).strip(),
        token_uri=token_uri.strip(),
    )


def load_client_secrets(path: Path) -> ClientSecrets:
    """Return validated OAuth client data from ``path``."""

    return _validate_payload(_load_json(Path(path)))
