from __future__ import annotations

import pytest

from core.credentials import SessionExpired
from core.sheet_address import CellAddress
from core.sheets_client import SheetsApiResponseError, SheetsClient, SheetsClientError
from sheets_fakes import CountingExchanger, FakeService, http_error, make_client, signed_in_manager


def test_batch_update_sends_all_cells_in_one_request() -> None:
    service = FakeService()
    client = make_client(service, signed_in_manager())

    client.batch_update_cells(
        [
            (CellAddress("7A", 4, 4), "P"),
            (CellAddress("7A", 5, 4), "A"),
        ]
    )

    assert service.batch_requests == [
        {
            "valueInputOption": "USER_ENTERED",
            "data": [
                {"range": "'7A'!D4", "values": [["P"]]},
                {"range": "'7A'!D5", "values": [["A"]]},
            ],
        }
    ]
    assert service.spreadsheet_ids == ["sheet-1"]


def test_empty_batch_makes_no_request() -> None:
    service = FakeService()
    client = make_client(service, signed_in_manager())

    assert client.batch_update_cells([]) == {}
    assert service.calls == 0


def test_update_cell_writes_single_value() -> None:
    service = FakeService()
    client = make_client(service, signed_in_manager())

    client.update_cell(CellAddress("O'Brien", 6, 16), 4)

    assert service.update_requests == [
        {"range": "'O''Brien'!P6", "valueInputOption": "USER_ENTERED", "body": {"values": [[4]]}}
    ]


def test_sheet_titles_and_read_values() -> None:
    service = FakeService(titles=["7A", "7B"], ranges={"'7A'!A4:C20": [["Red", "Ada", 17]]})
    client = make_client(service, signed_in_manager())

    assert client.sheet_titles() == ["7A", "7B"]
    assert client.read_values("7A", "A4:C20") == [["Red", "Ada", "17"]]


def test_rejected_token_is_refreshed_and_request_repeated() -> None:
    service = FakeService()
    exchanger = CountingExchanger()
    client = make_client(service, signed_in_manager(exchanger))
    service.errors.append(http_error(401, "Request had invalid authentication credentials."))

    client.update_cell(CellAddress("7A", 4, 4), "P")

    assert service.tokens == ["token-0", "token-1"]
    assert exchanger.calls == 1
    assert service.cells == {"'7A'!D4": "P"}


def test_server_errors_are_wrapped_without_retry() -> None:
    service = FakeService()
    exchanger = CountingExchanger()
    client = make_client(service, signed_in_manager(exchanger))
    service.errors.append(http_error(500, "Internal error"))

    with pytest.raises(SheetsApiResponseError) as excinfo:
        client.update_cell(CellAddress("7A", 4, 4), "P")

    assert excinfo.value.status == 500
    assert service.calls == 1
    assert exchanger.calls == 0


def test_token_inside_expiry_buffer_is_never_sent() -> None:
    service = FakeService()
    client = make_client(service, signed_in_manager(expires_in=60))

    client.update_cell(CellAddress("7A", 4, 4), "P")

    assert service.tokens == ["token-1"]


def test_expired_session_reaches_the_caller() -> None:
    service = FakeService()
    client = make_client(service, signed_in_manager(CountingExchanger(fail=True), expires_in=-5))

    with pytest.raises(SessionExpired):
        client.update_cell(CellAddress("7A", 4, 4), "P")

    assert service.tokens == []


def test_spreadsheet_id_is_required() -> None:
    with pytest.raises(SheetsClientError):
        SheetsClient("  ", signed_in_manager())
