from __future__ import annotations

import pytest

import db
from core.roster_import import RosterImportError, import_roster, parse_roster_rows
from sheets_fakes import FakeService, http_error, make_client, signed_in_manager


def test_parse_roster_rows_keeps_sheet_row_numbers() -> None:
    values = [
        ["Red", "Ada Lovelace", "S-1"],
        [],
        ["Blue", "  "],
        ["Green", "Grace Hopper"],
    ]

    rows = parse_roster_rows(values, 4)

    assert rows == [
        {"house": "Red", "student_name": "Ada Lovelace", "student_identifier": "S-1", "row_number": 4},
        {"house": "Green", "student_name": "Grace Hopper", "student_identifier": "", "row_number": 7},
    ]


@pytest.fixture
def class_id(database) -> str:
    db.create_profile("Ms Rivera", profile_id="teacher-1")
    return db.create_class("teacher-1", "7A", year_level="7", sheet_name="7A")


def test_import_reads_class_tab(class_id) -> None:
    service = FakeService(ranges={"'7A'!A4:C20": [["Red", "Ada Lovelace", "S-1"], ["", ""], ["Blue", "Alan Turing"]]})
    client = make_client(service, signed_in_manager())

    result = import_roster(client, class_id)

    assert result.imported == 2
    assert result.skipped_rows == [5]
    assert result.sheet_name == "7A"
    roster = db.fetch_roster(db.ATTENDANCE, class_id)
    assert [(row["student_name"], row["row_number"]) for row in roster] == [("Ada Lovelace", 4), ("Alan Turing", 6)]
    assert [row["id"] for row in roster] == result.student_ids


def test_replace_clears_previous_roster(class_id) -> None:
    old_id = db.create_eval_student(class_id, "Old Student", 4)
    service = FakeService(ranges={"'Evals 7A'!A2:C3": [["Red", "New Student"]]})
    client = make_client(service, signed_in_manager())

    result = import_roster(
        client,
        class_id,
        kind=db.EVALUATION,
        sheet_name="Evals 7A",
        start_row=2,
        end_row=3,
        replace=True,
    )

    assert result.imported == 1
    names = [row["student_name"] for row in db.fetch_roster(db.EVALUATION, class_id)]
    assert names == ["New Student"]
    assert db.fetch_roster_entry(db.EVALUATION, old_id) is None


def test_import_errors(class_id) -> None:
    service = FakeService()
    client = make_client(service, signed_in_manager())

    with pytest.raises(RosterImportError):
        import_roster(client, class_id, start_row=10, end_row=4)
    with pytest.raises(RosterImportError):
        import_roster(client, "missing-class")

    unnamed = db.create_class("teacher-1", "Unnamed")
    with pytest.raises(RosterImportError):
        import_roster(client, unnamed)

    service.errors.append(http_error(404, "Unable to parse range"))
    with pytest.raises(RosterImportError):
        import_roster(client, class_id)
    assert db.fetch_roster(db.ATTENDANCE, class_id) == []
