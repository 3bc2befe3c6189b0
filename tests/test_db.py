from __future__ import annotations

import pytest

import db


def _class_with_students(teacher_id: str = "teacher-1"):
    if db.fetch_profile(teacher_id) is None:
        db.create_profile("Ms Rivera", profile_id=teacher_id, google_sheets_id=" sheet-att ")
    class_id = db.create_class(teacher_id, "7A", year_level="7", sheet_name="7A")
    student_id = db.create_student(class_id, "Ada Lovelace", 4)
    eval_student_id = db.create_eval_student(class_id, "Ada Lovelace", 4)
    return class_id, student_id, eval_student_id


def test_attendance_upsert_keeps_one_row_and_resets_sync(database) -> None:
    class_id, student_id, _ = _class_with_students()

    first = db.save_attendance("teacher-1", student_id, "2025-09-08", "P", class_id=class_id)
    db.mark_synced(db.ATTENDANCE, [first["id"]])
    second = db.save_attendance("teacher-1", student_id, "2025-09-08T09:00:00", "A")

    assert second["id"] == first["id"]
    assert second["status"] == "A"
    assert second["synced_to_sheets"] is False
    assert second["class_id"] == class_id
    with db.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM attendance_records").fetchone()[0] == 1


def test_attendance_requires_a_date(database) -> None:
    _, student_id, _ = _class_with_students()

    with pytest.raises(ValueError):
        db.save_attendance("teacher-1", student_id, "", "P")


def test_evaluation_copies_student_name_and_class(database) -> None:
    class_id, _, eval_student_id = _class_with_students()

    record = db.save_evaluation("teacher-1", eval_student_id, "HW", 4, chapter_number=2, teacher_notes="Neat")

    assert record["student_name"] == "Ada Lovelace"
    assert record["stored_class_id"] == class_id
    assert record["stored_category"] == "HW"
    assert record["rating"] == "4"

    again = db.save_evaluation("teacher-1", eval_student_id, "HW", 5, chapter_number=2)

    assert again["id"] == record["id"]
    assert again["rating"] == "5"
    assert again["teacher_notes"] == "Neat"


def test_dated_evaluations_are_keyed_by_date(database) -> None:
    _, _, eval_student_id = _class_with_students()

    first = db.save_evaluation("teacher-1", eval_student_id, "D", 3, evaluation_date="2025-09-21")
    second = db.save_evaluation("teacher-1", eval_student_id, "D", 2, evaluation_date="2025-09-28")
    updated = db.save_evaluation("teacher-1", eval_student_id, "D", 5, evaluation_date="2025-09-21")

    assert first["id"] != second["id"]
    assert updated["id"] == first["id"]


def test_evaluation_validation(database) -> None:
    _, _, eval_student_id = _class_with_students()

    with pytest.raises(ValueError):
        db.save_evaluation("teacher-1", eval_student_id, "D", 3)
    with pytest.raises(LookupError):
        db.save_evaluation("teacher-1", "missing", "D", 3, chapter_number=1)


def test_mark_synced_and_failed(database) -> None:
    _, student_id, _ = _class_with_students()
    record = db.save_attendance("teacher-1", student_id, "2025-09-08", "P")

    assert db.mark_failed(db.ATTENDANCE, [record["id"]], "boom") == 1
    failed = db.fetch_record(db.ATTENDANCE, record["id"])
    assert failed["sync_error"] == "boom"
    assert failed["synced_to_sheets"] is False

    assert db.mark_synced(db.ATTENDANCE, [record["id"]]) == 1
    synced = db.fetch_record(db.ATTENDANCE, record["id"])
    assert synced["sync_error"] is None
    assert synced["synced_to_sheets"] is True

    assert db.mark_synced(db.ATTENDANCE, []) == 0


def test_fetch_unsynced_returns_oldest_first_with_limit(database) -> None:
    _, student_id, _ = _class_with_students()
    days = ["2025-09-08", "2025-09-15", "2025-09-22"]
    ids = [db.save_attendance("teacher-1", student_id, day, "P")["id"] for day in days]
    db.mark_synced(db.ATTENDANCE, [ids[0]])
    _, other_student, _ = _class_with_students("teacher-2")
    db.save_attendance("teacher-2", other_student, "2025-09-08", "P")

    pending = db.fetch_unsynced(db.ATTENDANCE, "teacher-1", limit=1)

    assert [record["id"] for record in pending] == [ids[1]]
    assert len(db.fetch_unsynced(db.ATTENDANCE, "teacher-1")) == 2


def test_deleting_eval_student_orphans_the_evaluation(database) -> None:
    class_id, _, eval_student_id = _class_with_students()
    record = db.save_evaluation("teacher-1", eval_student_id, "AP", 3, chapter_number=1)

    db.delete_roster_entry(db.EVALUATION, eval_student_id)

    orphan = db.fetch_record(db.EVALUATION, record["id"])
    assert orphan["eval_student_id"] is None
    assert orphan["student_name"] == "Ada Lovelace"
    assert orphan["stored_class_id"] == class_id
    assert [row["id"] for row in db.fetch_evaluations(orphaned_only=True)] == [record["id"]]


def test_replacing_roster_cascades_attendance(database) -> None:
    class_id, student_id, _ = _class_with_students()
    db.save_attendance("teacher-1", student_id, "2025-09-08", "P")

    ids = db.replace_roster(
        db.ATTENDANCE,
        class_id,
        [{"student_name": "Grace Hopper", "row_number": 4}, {"student_name": "Alan Turing", "row_number": 5}],
        replace=True,
    )

    roster = db.fetch_roster(db.ATTENDANCE, class_id)
    assert [entry["id"] for entry in roster] == ids
    assert roster[0]["sheet_name"] == "7A"
    assert db.fetch_student(student_id) is None
    with db.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM attendance_records").fetchone()[0] == 0


def test_fetch_subject_reports_sheet_position(database) -> None:
    class_id, student_id, eval_student_id = _class_with_students()

    assert db.fetch_attendance_subject(student_id) == {"row_number": 4, "sheet_name": "7A", "class_id": class_id}
    assert db.fetch_evaluation_subject(eval_student_id)["row_number"] == 4
    assert db.fetch_attendance_subject("missing") is None
    assert db.fetch_attendance_subject(None) is None


def test_teacher_sheet_id_per_kind(database) -> None:
    _class_with_students()

    assert db.teacher_sheet_id("teacher-1", db.ATTENDANCE) == "sheet-att"
    assert db.teacher_sheet_id("teacher-1", db.EVALUATION) is None
    assert db.teacher_sheet_id("unknown", db.ATTENDANCE) is None
    with pytest.raises(ValueError):
        db.teacher_sheet_id("teacher-1", "homework")


def test_parent_links(database) -> None:
    _, student_id, _ = _class_with_students()
    link_id = db.create_parent_link("parent-1", "Ada Lovelace", student_id=student_id, year_group="7", verified=True)

    db.flag_link_for_review(link_id, "two students match")
    flagged = db.fetch_parent_link(link_id)
    assert flagged["needs_review"] is True
    assert flagged["review_reason"] == "two students match"

    db.update_link_student(link_id, student_id)
    cleared = db.fetch_parent_link(link_id)
    assert cleared["needs_review"] is False
    assert cleared["review_reason"] is None
    assert [link["id"] for link in db.fetch_parent_links("parent-1", verified=True)] == [link_id]
    assert db.fetch_parent_links("parent-1", verified=False) == []

    with pytest.raises(LookupError):
        db.update_link_student("missing", student_id)
