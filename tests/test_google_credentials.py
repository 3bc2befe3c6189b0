import json
from pathlib import Path

import pytest

from core.google_credentials import (
    DEFAULT_TOKEN_URI,
    ClientSecretsInvalidError,
    load_client_secrets,
)


def _installed_payload() -> dict:
    return {
        "installed": {
            "client_id": "123-abc.apps.googleusercontent.com",
            "project_id": "classbook-demo",
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "client_secret": " shh ",
            "redirect_uris": ["http://localhost"],
        }
    }


def test_load_installed_client_secrets(tmp_path: Path) -> None:
    path = tmp_path / "client_secret.json"
    path.write_text(json.dumps(_installed_payload()), encoding="utf-8")

    secrets = load_client_secrets(path)

    assert secrets.client_id == "123-abc.apps.googleusercontent.com"
    assert secrets.client_secret == "shh"
    assert secrets.token_uri == "https://oauth2.googleapis.com/token"


def test_load_web_and_flat_formats(tmp_path: Path) -> None:
    web = tmp_path / "web.json"
    web.write_text(json.dumps({"web": {"client_id": "web-id", "client_secret": "web-secret"}}), encoding="utf-8")
    flat = tmp_path / "flat.json"
    flat.write_text(json.dumps({"client_id": "flat-id", "client_secret": "flat-secret"}), encoding="utf-8")

    assert load_client_secrets(web).client_id == "web-id"
    assert load_client_secrets(web).token_uri == DEFAULT_TOKEN_URI
    assert load_client_secrets(flat).client_secret == "flat-secret"


def test_byte_order_mark_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "bom.json"
    path.write_bytes(b"\xef\xbb\xbf" + json.dumps(_installed_payload()).encode("utf-8"))

    assert load_client_secrets(path).client_secret == "shh"


def test_missing_fields_are_listed(tmp_path: Path) -> None:
    path = tmp_path / "invalid.json"
    path.write_text(json.dumps({"installed": {"client_id": "  "}}), encoding="utf-8")

    with pytest.raises(ClientSecretsInvalidError) as excinfo:
        load_client_secrets(path)

    assert "ClientSecretsInvalidError" not in str(excinfo.value)
    assert str(excinfo.value) == "JSON missing fields: client_id, client_secret"


@pytest.mark.parametrize(
    "content, message",
    [
        ("", "Client secret JSON is empty."),
        ("{not json", "JSON parse error"),
        ("[1, 2]", "Client secret JSON must be an object."),
    ],
)
def test_unreadable_files_are_rejected(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "broken.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ClientSecretsInvalidError) as excinfo:
        load_client_secrets(path)

    assert message in str(excinfo.value)


def test_missing_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ClientSecretsInvalidError, match="Could not read JSON file"):
        load_client_secrets(tmp_path / "absent.json")
