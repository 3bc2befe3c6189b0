"""Google Sheets client used by the attendance and evaluation mirrors.

This module centralises all direct interactions with the Google Sheets API.
The surface is deliberately small: single-cell writes, grouped multi-cell
writes, tab metadata and plain range reads.  Every request

* fetches a token from the :class:`~core.credentials.CredentialManager` so a
  token inside the expiry buffer is never sent,
* runs through :class:`~core.retry.AuthRetry` so a rejected token is refreshed
  and the request repeated, and
* raises subclasses of :class:`SheetsClientError` for remote failures.

:class:`~core.credentials.SessionExpired` is passed through untouched so the
caller can prompt the user to sign in again.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.credentials import CredentialManager
from core.retry import AuthRetry, error_status
from core.sheet_address import CellAddress, quote_sheet_name

logger = logging.getLogger(__name__)

CellValue = Any
ServiceFactory = Callable[[str], Any]


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsApiResponseError(SheetsClientError):
    """Raised when the Google API returns an error response."""

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


def _http_error_message(exc: HttpError) -> str:
    reason = getattr(exc, "reason", None)
    if reason:
        return str(reason)
    return str(exc)


def build_sheets_service(access_token: str):
    """Return a Sheets v4 service authorised with ``access_token``."""

    credentials = Credentials(token=access_token)
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


class SheetsClient:
    """Write-oriented helper bound to one spreadsheet."""

    def __init__(
        self,
        spreadsheet_id: str,
        credentials: CredentialManager,
        *,
        retry: Optional[AuthRetry] = None,
        service_factory: ServiceFactory = build_sheets_service,
    ) -> None:
        if not (spreadsheet_id or "").strip():
            raise SheetsClientError("A spreadsheet id is required")
        self._spreadsheet_id = spreadsheet_id.strip()
        self._credentials = credentials
        self._retry = retry or AuthRetry(credentials)
        self._service_factory = service_factory

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute(self, description: str, make_request: Callable[[Any], Any]) -> Dict[str, Any]:
        def attempt() -> Dict[str, Any]:
            service = self._service_factory(self._credentials.get_valid_access_token())
            try:
                response = make_request(service).execute()
            except HttpError as exc:
                raise SheetsApiResponseError(_http_error_message(exc), error_status(exc)) from exc
            return response or {}

        return self._retry.run(attempt, description)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def update_cell(
        self,
        address: CellAddress,
        value: CellValue,
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> Dict[str, Any]:
        """Write ``value`` into a single cell."""

        return self._execute(
            "values.update",
            lambda service: service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=address.a1,
                valueInputOption=value_input_option,
                body={"values": [[value]]},
            ),
        )

    def batch_update_cells(
        self,
        updates: Sequence[Tuple[CellAddress, CellValue]],
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> Dict[str, Any]:
        """Write several cells in one ``values.batchUpdate`` request."""

        if not updates:
            return {}
        data: List[Mapping[str, object]] = [
            {"range": address.a1, "values": [[value]]} for address, value in updates
        ]
        body = {"valueInputOption": value_input_option, "data": data}
        response = self._execute(
            "values.batchUpdate",
            lambda service: service.spreadsheets()
            .values()
            .batchUpdate(spreadsheetId=self._spreadsheet_id, body=body),
        )
        logger.debug("Wrote %d cells to %s", len(data), self._spreadsheet_id)
        return response

    def sheet_titles(self) -> List[str]:
        """Return the worksheet titles in display order."""

        response = self._execute(
            "spreadsheets.get",
            lambda service: service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                fields="sheets.properties.title",
            ),
        )
        titles: List[str] = []
        for sheet in response.get("sheets", []):
            title = (sheet.get("properties") or {}).get("title")
            if title:
                titles.append(str(title))
        return titles

    def read_values(self, sheet_name: str, range_spec: str) -> List[List[str]]:
        """Return the rows in ``range_spec`` of ``sheet_name`` as strings."""

        a1 = f"{quote_sheet_name(sheet_name)}!{range_spec}"
        response = self._execute(
            "values.get",
            lambda service: service.spreadsheets()
            .values()
            .get(spreadsheetId=self._spreadsheet_id, range=a1, majorDimension="ROWS"),
        )
        return [[str(cell) for cell in row] for row in response.get("values", [])]


__all__ = [
    "SheetsApiResponseError",
    "SheetsClient",
    "SheetsClientError",
    "build_sheets_service",
]
