from __future__ import annotations

from typing import Dict

import pytest

import db
from core.batch_sync import BatchSyncExecutor, NothingToSyncError, SyncError
from core.credentials import SESSION_EXPIRED_MESSAGE
from settings import SyncSettings
from sheets_fakes import CountingExchanger, FakeService, http_error, make_client, signed_in_manager

TEACHER = "teacher-1"


@pytest.fixture
def school(database) -> Dict[str, str]:
    db.create_profile(
        "Ms Rivera",
        profile_id=TEACHER,
        google_sheets_id="attendance-sheet",
        evaluation_sheets_id="evaluation-sheet",
    )
    ids: Dict[str, str] = {}
    for offset, name in enumerate(("7A", "7B", "7C")):
        class_id = db.create_class(TEACHER, name, year_level="7", sheet_name=name)
        ids[name] = class_id
        ids[f"{name}-student"] = db.create_student(class_id, f"Student {name}", 4 + offset)
        ids[f"{name}-eval"] = db.create_eval_student(class_id, f"Student {name}", 4 + offset)
    return ids


def _executor(service: FakeService, manager=None, settings=None) -> BatchSyncExecutor:
    manager = manager or signed_in_manager()
    return BatchSyncExecutor(
        manager,
        settings or SyncSettings(),
        client_factory=lambda spreadsheet_id: make_client(service, manager, spreadsheet_id),
    )


def _attendance(school: Dict[str, str], name: str, day: str = "2025-09-14", status: str = "P"):
    return db.save_attendance(TEACHER, school[f"{name}-student"], day, status)


def test_empty_batch_is_rejected(school) -> None:
    with pytest.raises(NothingToSyncError):
        _executor(FakeService()).sync(db.ATTENDANCE, [])


def test_records_are_grouped_per_sheet(school) -> None:
    service = FakeService()
    records = [_attendance(school, "7A"), _attendance(school, "7B", status="A"), _attendance(school, "7A", "2025-09-21")]

    outcome = _executor(service).sync(db.ATTENDANCE, records)

    assert outcome.success
    assert outcome.synced_count == 3
    assert outcome.as_dict() == {"success": True, "syncedCount": 3, "totalRecords": 3}
    assert len(service.batch_requests) == 2
    assert [entry["range"] for entry in service.batch_requests[0]["data"]] == ["'7A'!E4", "'7A'!F4"]
    assert service.cells["'7B'!E5"] == "A"
    assert set(service.spreadsheet_ids) == {"attendance-sheet"}
    for record in records:
        assert db.fetch_record(db.ATTENDANCE, record["id"])["synced_to_sheets"] is True


def test_unresolvable_records_are_skipped(school) -> None:
    service = FakeService()
    good = _attendance(school, "7A")
    early = _attendance(school, "7B", day="2025-09-01")

    outcome = _executor(service).sync(db.ATTENDANCE, [good, early])

    assert outcome.synced_count == 1
    assert list(outcome.skipped) == [early["id"]]
    stored = db.fetch_record(db.ATTENDANCE, early["id"])
    assert stored["synced_to_sheets"] is False
    assert stored["sync_error"].startswith("Skipped: ")


def test_batch_without_resolvable_records_fails(school) -> None:
    unnamed = db.create_class(TEACHER, "Unnamed")
    student_id = db.create_student(unnamed, "No Sheet", 4)
    record = db.save_attendance(TEACHER, student_id, "2025-09-14", "P")

    with pytest.raises(SyncError, match="No valid records to sync") as excinfo:
        _executor(FakeService()).sync(db.ATTENDANCE, [record])

    assert excinfo.value.outcome.skipped == {record["id"]: "class has no sheet name"}


def test_failing_sheet_only_marks_its_own_records(school) -> None:
    service = FakeService()
    service.failing_sheets["7B"] = http_error(500, "Internal error")
    ok = _attendance(school, "7A")
    broken = _attendance(school, "7B")

    outcome = _executor(service).sync(db.ATTENDANCE, [ok, broken])

    assert not outcome.success
    assert outcome.synced_count == 1
    assert list(outcome.failed_sheets) == ["7B"]
    assert db.fetch_record(db.ATTENDANCE, ok["id"])["synced_to_sheets"] is True
    failed = db.fetch_record(db.ATTENDANCE, broken["id"])
    assert failed["synced_to_sheets"] is False
    assert failed["sync_error"]


def test_total_failure_raises(school) -> None:
    service = FakeService()
    service.failing_sheets["7A"] = http_error(500, "Internal error")
    record = _attendance(school, "7A")

    with pytest.raises(SyncError) as excinfo:
        _executor(service).sync(db.ATTENDANCE, [record])

    assert not excinfo.value.session_expired
    assert excinfo.value.outcome.synced_count == 0
    assert db.fetch_record(db.ATTENDANCE, record["id"])["sync_error"]


def test_session_expiry_stops_the_batch(school) -> None:
    service = FakeService()
    service.failing_sheets["7B"] = http_error(401, "Request had invalid authentication credentials.")
    manager = signed_in_manager(CountingExchanger(fail=True))
    records = [_attendance(school, "7A"), _attendance(school, "7B"), _attendance(school, "7C")]

    with pytest.raises(SyncError) as excinfo:
        _executor(service, manager).sync(db.ATTENDANCE, records)

    error = excinfo.value
    assert error.session_expired
    assert str(error) == SESSION_EXPIRED_MESSAGE
    assert error.outcome.synced_count == 1
    assert error.outcome.failed_sheets == {"7B": SESSION_EXPIRED_MESSAGE, "7C": SESSION_EXPIRED_MESSAGE}
    assert db.fetch_record(db.ATTENDANCE, records[0]["id"])["synced_to_sheets"] is True
    for record in records[1:]:
        assert db.fetch_record(db.ATTENDANCE, record["id"])["sync_error"] == SESSION_EXPIRED_MESSAGE
    # 7C was never sent.
    assert all("'7C'" not in entry["range"] for body in service.batch_requests for entry in body["data"])


def test_missing_spreadsheet_fails_every_record(school) -> None:
    db.create_profile("Mr Chen", profile_id="teacher-2")
    class_id = db.create_class("teacher-2", "8A", sheet_name="8A")
    student_id = db.create_student(class_id, "Lin", 4)
    record = db.save_attendance("teacher-2", student_id, "2025-09-14", "P")

    with pytest.raises(SyncError, match="No Google Sheets ID configured"):
        _executor(FakeService()).sync(db.ATTENDANCE, [record])

    assert db.fetch_record(db.ATTENDANCE, record["id"])["sync_error"] == (
        "No Google Sheets ID configured for this teacher"
    )


def test_batches_must_belong_to_one_teacher(school) -> None:
    db.create_profile("Mr Chen", profile_id="teacher-2", google_sheets_id="other")
    mine = _attendance(school, "7A")
    theirs = db.save_attendance("teacher-2", school["7B-student"], "2025-09-21", "P")
    service = FakeService()

    with pytest.raises(SyncError):
        _executor(service).sync(db.ATTENDANCE, [mine, theirs])

    assert service.calls == 0
    assert db.fetch_record(db.ATTENDANCE, mine["id"])["sync_error"]


def test_evaluations_use_chapter_or_week_blocks(school) -> None:
    service = FakeService()
    by_chapter = db.save_evaluation(TEACHER, school["7A-eval"], "HW", 4, chapter_number=2)
    by_date = db.save_evaluation(TEACHER, school["7B-eval"], "HW", 3, evaluation_date="2025-09-21")
    unrated = db.save_evaluation(TEACHER, school["7C-eval"], "D", None, chapter_number=1)

    outcome = _executor(service).sync_evaluations([by_chapter, by_date, unrated])

    assert outcome.synced_count == 3
    assert service.cells == {"'7A'!L4": "4", "'7B'!P5": "3", "'7C'!F6": ""}
    assert set(service.spreadsheet_ids) == {"evaluation-sheet"}


def test_retry_failed_picks_up_oldest_records(school) -> None:
    service = FakeService()
    records = [_attendance(school, "7A", day) for day in ("2025-09-07", "2025-09-14", "2025-09-21")]
    settings = SyncSettings(retry_batch_limit=2)

    outcome = _executor(service, settings=settings).retry_failed(db.ATTENDANCE, TEACHER)

    assert outcome.total_records == 2
    assert outcome.synced_count == 2
    assert db.fetch_record(db.ATTENDANCE, records[2]["id"])["synced_to_sheets"] is False
    assert [record["id"] for record in db.fetch_unsynced(db.ATTENDANCE, TEACHER)] == [records[2]["id"]]


def test_retry_failed_moves_past_skipped_records(school) -> None:
    service = FakeService()
    early = [_attendance(school, name, day="2025-09-01") for name in ("7B", "7C")]
    valid = _attendance(school, "7A", day="2025-09-21")
    executor = _executor(service, settings=SyncSettings(retry_batch_limit=2))

    with pytest.raises(SyncError, match="No valid records to sync"):
        executor.retry_failed(db.ATTENDANCE, TEACHER)

    outcome = executor.retry_failed(db.ATTENDANCE, TEACHER)

    assert outcome.synced_count == 1
    assert list(outcome.skipped) == [early[0]["id"]]
    assert db.fetch_record(db.ATTENDANCE, valid["id"])["synced_to_sheets"] is True
    assert service.cells == {"'7A'!F4": "P"}
    pending = db.fetch_unsynced(db.ATTENDANCE, TEACHER)
    assert [record["id"] for record in pending] == [record["id"] for record in early]


def test_retry_failed_with_nothing_pending(school) -> None:
    service = FakeService()

    outcome = _executor(service).retry_failed(db.EVALUATION, TEACHER)

    assert outcome.total_records == 0
    assert outcome.success
    assert service.calls == 0


def test_sync_one_writes_a_single_cell(school) -> None:
    service = FakeService()
    record = _attendance(school, "7C", "2025-09-07", "L")

    outcome = _executor(service).sync_one(db.ATTENDANCE, record)

    assert outcome.synced_count == 1
    assert service.cells == {"'7C'!D6": "L"}
