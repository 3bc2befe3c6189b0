"""Application configuration helpers for Classbook."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import date
from typing import Dict, Mapping

from core import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = os.getenv(
    "CLASSBOOK_SETTINGS_PATH",
    str(app_paths.data_path("sync_settings.json")),
)
DEFAULT_CLIENT_SECRET_PATH = os.getenv(
    "CLASSBOOK_CLIENT_SECRET_PATH",
    str(app_paths.credentials_path("client_secret.json")),
)
DEFAULT_TOKEN_PATH = str(app_paths.tokens_path("google_token.json"))

DEFAULT_ORIGIN_DATE = "2025-09-07"
AMBIGUITY_POLICIES = ("review", "first")

# (minimum, maximum) bounds applied when loading user supplied values.
_INT_BOUNDS: Mapping[str, tuple] = {
    "attendance_base_column": (1, 18_278),
    "attendance_block_width": (1, 26),
    "evaluation_base_column": (1, 18_278),
    "evaluation_block_width": (1, 26),
    "token_buffer_seconds": (30, 3600),
    "max_auth_attempts": (1, 5),
    "retry_batch_limit": (1, 500),
    "roster_start_row": (1, 10_000),
    "roster_end_row": (1, 10_000),
}
_FLOAT_BOUNDS: Mapping[str, tuple] = {
    "propagation_delay": (0.0, 5.0),
}


@dataclass(frozen=True)
class SheetLayout:
    """Column geometry of the attendance and evaluation mirrors."""

    origin_date: date
    attendance_base_column: int = 4
    attendance_block_width: int = 1
    evaluation_base_column: int = 6
    evaluation_block_width: int = 4


@dataclass
class SyncSettings:
    client_secret_path: str = DEFAULT_CLIENT_SECRET_PATH
    token_path: str = DEFAULT_TOKEN_PATH
    origin_date: str = DEFAULT_ORIGIN_DATE
    attendance_base_column: int = 4
    attendance_block_width: int = 1
    evaluation_base_column: int = 6
    evaluation_block_width: int = 4
    token_buffer_seconds: int = 300
    max_auth_attempts: int = 3
    propagation_delay: float = 0.5
    retry_batch_limit: int = 50
    ambiguity_policy: str = "review"
    roster_start_row: int = 4
    roster_end_row: int = 20

    def layout(self) -> SheetLayout:
        return SheetLayout(
            origin_date=date.fromisoformat(self.origin_date),
            attendance_base_column=self.attendance_base_column,
            attendance_block_width=self.attendance_block_width,
            evaluation_base_column=self.evaluation_base_column,
            evaluation_block_width=self.evaluation_block_width,
        )

    def to_json(self) -> Dict[str, object]:
        return {
            "client_secret_path": self.client_secret_path,
            "token_path": self.token_path,
            "origin_date": self.origin_date,
            "attendance_base_column": self.attendance_base_column,
            "attendance_block_width": self.attendance_block_width,
            "evaluation_base_column": self.evaluation_base_column,
            "evaluation_block_width": self.evaluation_block_width,
            "token_buffer_seconds": self.token_buffer_seconds,
            "max_auth_attempts": self.max_auth_attempts,
            "propagation_delay": self.propagation_delay,
            "retry_batch_limit": self.retry_batch_limit,
            "ambiguity_policy": self.ambiguity_policy,
            "roster_start_row": self.roster_start_row,
            "roster_end_row": self.roster_end_row,
        }


def _default_payload() -> Dict[str, object]:
    return SyncSettings().to_json()


def _coerce_origin(value: object, fallback: str) -> str:
    if not isinstance(value, str):
        return fallback
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        logger.warning("Ignoring invalid origin_date %r in sync settings", value)
        return fallback


def _ensure_sync_settings(path: str = SYNC_SETTINGS_PATH) -> Dict[str, object]:
    default_settings = _default_payload()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        return json.loads(json.dumps(default_settings))

    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)

    merged: Dict[str, object] = dict(default_settings)
    if not isinstance(data, Mapping):
        return merged
    for key, value in data.items():
        if key not in default_settings:
            continue
        if key in _INT_BOUNDS:
            low, high = _INT_BOUNDS[key]
            try:
                merged[key] = max(low, min(high, int(value)))
            except (TypeError, ValueError):
                merged[key] = default_settings[key]
        elif key in _FLOAT_BOUNDS:
            low, high = _FLOAT_BOUNDS[key]
            try:
                merged[key] = max(low, min(high, float(value)))
            except (TypeError, ValueError):
                merged[key] = default_settings[key]
        elif key == "origin_date":
            merged[key] = _coerce_origin(value, DEFAULT_ORIGIN_DATE)
        elif key == "ambiguity_policy":
            policy = str(value).strip().lower()
            merged[key] = policy if policy in AMBIGUITY_POLICIES else default_settings[key]
        elif isinstance(value, str):
            merged[key] = value
    if int(merged["roster_end_row"]) < int(merged["roster_start_row"]):
        merged["roster_end_row"] = merged["roster_start_row"]
    return merged


def load_sync_settings(path: str = SYNC_SETTINGS_PATH) -> SyncSettings:
    data = _ensure_sync_settings(path)
    return SyncSettings(
        client_secret_path=str(data["client_secret_path"]),
        token_path=str(data["token_path"]),
        origin_date=str(data["origin_date"]),
        attendance_base_column=int(data["attendance_base_column"]),
        attendance_block_width=int(data["attendance_block_width"]),
        evaluation_base_column=int(data["evaluation_base_column"]),
        evaluation_block_width=int(data["evaluation_block_width"]),
        token_buffer_seconds=int(data["token_buffer_seconds"]),
        max_auth_attempts=int(data["max_auth_attempts"]),
        propagation_delay=float(data["propagation_delay"]),
        retry_batch_limit=int(data["retry_batch_limit"]),
        ambiguity_policy=str(data["ambiguity_policy"]),
        roster_start_row=int(data["roster_start_row"]),
        roster_end_row=int(data["roster_end_row"]),
    )


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "AMBIGUITY_POLICIES",
    "DEFAULT_ORIGIN_DATE",
    "SheetLayout",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
