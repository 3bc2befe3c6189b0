"""SQLite-backed data access layer for Classbook."""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from core import app_paths

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH = Path(
    os.environ.get("CLASSBOOK_DB_PATH", str(app_paths.data_path("classbook.db")))
).resolve()
_DB_PATH = _DEFAULT_DB_PATH
DB_PATH = _DB_PATH

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

ATTENDANCE = "attendance"
EVALUATION = "evaluation"

# sync_error prefix for records that could not be placed on a sheet
SKIPPED_PREFIX = "Skipped: "

# Record kind -> (record table, roster table, roster foreign key, profile sheet column)
RECORD_KINDS: Dict[str, Tuple[str, str, str, str]] = {
    ATTENDANCE: ("attendance_records", "students", "student_id", "google_sheets_id"),
    EVALUATION: ("lesson_evaluations", "eval_students", "eval_student_id", "evaluation_sheets_id"),
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
_SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        full_name TEXT,
        email TEXT,
        google_sheets_id TEXT,
        evaluation_sheets_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS classes (
        id TEXT PRIMARY KEY,
        teacher_id TEXT REFERENCES profiles(id) ON DELETE SET NULL,
        name TEXT NOT NULL,
        year_level TEXT,
        section TEXT,
        sheet_name TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS students (
        id TEXT PRIMARY KEY,
        class_id TEXT NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
        student_name TEXT NOT NULL,
        house TEXT,
        student_identifier TEXT,
        row_number INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS eval_students (
        id TEXT PRIMARY KEY,
        class_id TEXT NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
        student_name TEXT NOT NULL,
        house TEXT,
        student_identifier TEXT,
        row_number INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attendance_records (
        id TEXT PRIMARY KEY,
        teacher_id TEXT,
        student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
        class_id TEXT,
        attendance_date TEXT NOT NULL,
        status TEXT NOT NULL,
        synced_to_sheets INTEGER NOT NULL DEFAULT 0,
        sync_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (student_id, attendance_date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lesson_evaluations (
        id TEXT PRIMARY KEY,
        teacher_id TEXT,
        eval_student_id TEXT REFERENCES eval_students(id) ON DELETE SET NULL,
        class_id TEXT,
        student_name TEXT,
        stored_class_id TEXT,
        chapter_number INTEGER,
        category TEXT NOT NULL,
        stored_category TEXT,
        rating TEXT,
        teacher_notes TEXT,
        evaluation_date TEXT,
        synced_to_sheets INTEGER NOT NULL DEFAULT 0,
        sync_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (eval_student_id, chapter_number, category)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parent_children (
        id TEXT PRIMARY KEY,
        parent_id TEXT NOT NULL,
        student_id TEXT,
        child_name_submitted TEXT NOT NULL,
        year_group TEXT,
        class_id TEXT,
        verified INTEGER NOT NULL DEFAULT 0,
        needs_review INTEGER NOT NULL DEFAULT 0,
        review_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS absence_requests (
        id TEXT PRIMARY KEY,
        parent_id TEXT,
        student_id TEXT REFERENCES students(id) ON DELETE SET NULL,
        student_name TEXT,
        class_id TEXT,
        absence_date TEXT NOT NULL,
        reason TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_attendance_sync ON attendance_records(teacher_id, synced_to_sheets)",
    "CREATE INDEX IF NOT EXISTS idx_evaluation_sync ON lesson_evaluations(teacher_id, synced_to_sheets)",
    "CREATE INDEX IF NOT EXISTS idx_parent_children_parent ON parent_children(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_absence_requests_student ON absence_requests(student_id)",
    "CREATE INDEX IF NOT EXISTS idx_students_class ON students(class_id)",
    "CREATE INDEX IF NOT EXISTS idx_eval_students_class ON eval_students(class_id)",
)

_BOOL_COLUMNS = {"synced_to_sheets", "verified", "needs_review"}

# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------


def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    DB_PATH = _DB_PATH
    _SCHEMA_READY = False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    for statement in _SCHEMA_STATEMENTS:
        conn.execute(statement)


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(_DB_PATH)
        try:
            _ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
        _SCHEMA_READY = True


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    conn = sqlite3.connect(_DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def connection() -> Iterator[sqlite3.Connection]:
    """Yield a read connection that is always closed afterwards."""

    conn = get_connection()
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def initialize_database() -> Path:
    _ensure_database()
    return _DB_PATH


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for column in _BOOL_COLUMNS:
        if column in data and data[column] is not None:
            data[column] = bool(data[column])
    return data


def _rows_to_dicts(rows: Iterable[sqlite3.Row]) -> List[Dict[str, Any]]:
    return [_row_to_dict(row) for row in rows]  # type: ignore[misc]


def _date_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text[:10] if text else None


def _record_kind(kind: str) -> Tuple[str, str, str, str]:
    try:
        return RECORD_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown record kind {kind!r}") from None


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


# ---------------------------------------------------------------------------
# Profiles, classes and rosters
# ---------------------------------------------------------------------------


def create_profile(
    full_name: str,
    *,
    email: Optional[str] = None,
    google_sheets_id: Optional[str] = None,
    evaluation_sheets_id: Optional[str] = None,
    profile_id: Optional[str] = None,
) -> str:
    profile_id = profile_id or _new_id()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO profiles (id, full_name, email, google_sheets_id, evaluation_sheets_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (profile_id, full_name, email, google_sheets_id, evaluation_sheets_id, _utc_now_iso()),
        )
    return profile_id


def fetch_profile(profile_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
    return _row_to_dict(row)


def teacher_sheet_id(teacher_id: str, kind: str) -> Optional[str]:
    """Return the spreadsheet configured for ``teacher_id`` and record ``kind``."""

    column = _record_kind(kind)[3]
    with connection() as conn:
        row = conn.execute(f"SELECT {column} FROM profiles WHERE id = ?", (teacher_id,)).fetchone()
    if row is None or row[0] is None:
        return None
    return str(row[0]).strip() or None


def create_class(
    teacher_id: Optional[str],
    name: str,
    *,
    year_level: Optional[str] = None,
    section: Optional[str] = None,
    sheet_name: Optional[str] = None,
    class_id: Optional[str] = None,
) -> str:
    class_id = class_id or _new_id()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO classes (id, teacher_id, name, year_level, section, sheet_name, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (class_id, teacher_id, name, year_level, section, sheet_name, _utc_now_iso()),
        )
    return class_id


def fetch_class(class_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute("SELECT * FROM classes WHERE id = ?", (class_id,)).fetchone()
    return _row_to_dict(row)


def _roster_table(kind: str) -> str:
    return _record_kind(kind)[1]


def create_roster_entry(
    kind: str,
    class_id: str,
    student_name: str,
    row_number: int,
    *,
    house: Optional[str] = None,
    student_identifier: Optional[str] = None,
    entry_id: Optional[str] = None,
) -> str:
    """Insert one row into the attendance or evaluation roster."""

    table = _roster_table(kind)
    entry_id = entry_id or _new_id()
    with transaction() as conn:
        conn.execute(
            f"""
            INSERT INTO {table} (id, class_id, student_name, house, student_identifier, row_number, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (entry_id, class_id, student_name, house, student_identifier, int(row_number), _utc_now_iso()),
        )
    return entry_id


def create_student(class_id: str, student_name: str, row_number: int, **kwargs: Any) -> str:
    return create_roster_entry(ATTENDANCE, class_id, student_name, row_number, **kwargs)


def create_eval_student(class_id: str, student_name: str, row_number: int, **kwargs: Any) -> str:
    return create_roster_entry(EVALUATION, class_id, student_name, row_number, **kwargs)


def replace_roster(
    kind: str,
    class_id: str,
    rows: Sequence[Mapping[str, Any]],
    *,
    replace: bool = False,
) -> List[str]:
    """Insert ``rows`` into the roster of ``class_id`` in one transaction.

    With ``replace`` the existing roster rows for the class are deleted first.
    Attendance records cascade with their roster rows, evaluations keep their
    denormalised copy and lose the roster reference.
    """

    table = _roster_table(kind)
    created_at = _utc_now_iso()
    new_ids: List[str] = []
    with transaction() as conn:
        if replace:
            conn.execute(f"DELETE FROM {table} WHERE class_id = ?", (class_id,))
        for row in rows:
            entry_id = _new_id()
            conn.execute(
                f"""
                INSERT INTO {table} (id, class_id, student_name, house, student_identifier, row_number, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    class_id,
                    row["student_name"],
                    row.get("house"),
                    row.get("student_identifier"),
                    int(row["row_number"]),
                    created_at,
                ),
            )
            new_ids.append(entry_id)
    return new_ids


def fetch_roster(kind: str, class_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return roster rows joined with their class name and year level."""

    table = _roster_table(kind)
    sql = (
        f"SELECT r.*, c.name AS class_name, c.year_level AS year_level, c.sheet_name AS sheet_name "
        f"FROM {table} r LEFT JOIN classes c ON c.id = r.class_id"
    )
    params: List[Any] = []
    if class_id:
        sql += " WHERE r.class_id = ?"
        params.append(class_id)
    sql += " ORDER BY r.class_id, r.row_number"
    with connection() as conn:
        return _rows_to_dicts(conn.execute(sql, params).fetchall())


def fetch_roster_entry(kind: str, entry_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not entry_id:
        return None
    table = _roster_table(kind)
    with connection() as conn:
        row = conn.execute(
            f"SELECT r.*, c.name AS class_name, c.year_level AS year_level, c.sheet_name AS sheet_name "
            f"FROM {table} r LEFT JOIN classes c ON c.id = r.class_id WHERE r.id = ?",
            (entry_id,),
        ).fetchone()
    return _row_to_dict(row)


def fetch_student(student_id: Optional[str]) -> Optional[Dict[str, Any]]:
    return fetch_roster_entry(ATTENDANCE, student_id)


def delete_roster_entry(kind: str, entry_id: str) -> None:
    table = _roster_table(kind)
    with transaction() as conn:
        conn.execute(f"DELETE FROM {table} WHERE id = ?", (entry_id,))


def fetch_subject(kind: str, subject_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return ``{"row_number", "sheet_name", "class_id"}`` for a roster row."""

    entry = fetch_roster_entry(kind, subject_id)
    if entry is None:
        return None
    return {
        "row_number": entry.get("row_number"),
        "sheet_name": entry.get("sheet_name"),
        "class_id": entry.get("class_id"),
    }


def fetch_attendance_subject(student_id: Optional[str]) -> Optional[Dict[str, Any]]:
    return fetch_subject(ATTENDANCE, student_id)


def fetch_evaluation_subject(eval_student_id: Optional[str]) -> Optional[Dict[str, Any]]:
    return fetch_subject(EVALUATION, eval_student_id)


# ---------------------------------------------------------------------------
# Syncable records
# ---------------------------------------------------------------------------


def save_attendance(
    teacher_id: str,
    student_id: str,
    attendance_date: Any,
    status: str,
    *,
    class_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Upsert the attendance entry for ``(student_id, attendance_date)``.

    Saving always resets the sync status so the entry is picked up by the
    next sync or "retry failed" run.
    """

    day = _date_text(attendance_date)
    if not day:
        raise ValueError("attendance_date is required")
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO attendance_records (
                id, teacher_id, student_id, class_id, attendance_date, status,
                synced_to_sheets, sync_error, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?, ?)
            ON CONFLICT (student_id, attendance_date) DO UPDATE SET
                status = excluded.status,
                teacher_id = excluded.teacher_id,
                class_id = COALESCE(excluded.class_id, attendance_records.class_id),
                synced_to_sheets = 0,
                sync_error = NULL,
                updated_at = excluded.updated_at
            """,
            (_new_id(), teacher_id, student_id, class_id, day, status, now, now),
        )
        row = conn.execute(
            "SELECT * FROM attendance_records WHERE student_id = ? AND attendance_date = ?",
            (student_id, day),
        ).fetchone()
    return _row_to_dict(row)  # type: ignore[return-value]


def save_evaluation(
    teacher_id: str,
    eval_student_id: str,
    category: str,
    rating: Any,
    *,
    chapter_number: Optional[int] = None,
    evaluation_date: Any = None,
    teacher_notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Upsert an evaluation keyed by student, chapter (or date) and category.

    The student's name and class are copied onto the evaluation so it can be
    re-attached after a roster re-import.
    """

    if chapter_number is None and evaluation_date is None:
        raise ValueError("An evaluation needs a chapter number or a date")
    day = _date_text(evaluation_date)
    now = _utc_now_iso()
    rating_text = None if rating is None else str(rating)

    with transaction() as conn:
        student = conn.execute(
            "SELECT student_name, class_id FROM eval_students WHERE id = ?",
            (eval_student_id,),
        ).fetchone()
        if student is None:
            raise LookupError(f"Evaluation student {eval_student_id} not found")

        if chapter_number is not None:
            existing = conn.execute(
                """
                SELECT id FROM lesson_evaluations
                WHERE eval_student_id = ? AND chapter_number = ? AND category = ?
                """,
                (eval_student_id, int(chapter_number), category),
            ).fetchone()
        else:
            existing = conn.execute(
                """
                SELECT id FROM lesson_evaluations
                WHERE eval_student_id = ? AND chapter_number IS NULL
                  AND evaluation_date = ? AND category = ?
                """,
                (eval_student_id, day, category),
            ).fetchone()

        if existing:
            record_id = existing["id"]
            conn.execute(
                """
                UPDATE lesson_evaluations
                SET rating = ?, teacher_notes = COALESCE(?, teacher_notes),
                    evaluation_date = COALESCE(?, evaluation_date), teacher_id = ?,
                    student_name = ?, stored_class_id = ?, class_id = ?,
                    synced_to_sheets = 0, sync_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    rating_text,
                    teacher_notes,
                    day,
                    teacher_id,
                    student["student_name"],
                    student["class_id"],
                    student["class_id"],
                    now,
                    record_id,
                ),
            )
        else:
            record_id = _new_id()
            conn.execute(
                """
                INSERT INTO lesson_evaluations (
                    id, teacher_id, eval_student_id, class_id, student_name, stored_class_id,
                    chapter_number, category, stored_category, rating, teacher_notes,
                    evaluation_date, synced_to_sheets, sync_error, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, ?)
                """,
                (
                    record_id,
                    teacher_id,
                    eval_student_id,
                    student["class_id"],
                    student["student_name"],
                    student["class_id"],
                    None if chapter_number is None else int(chapter_number),
                    category,
                    category,
                    rating_text,
                    teacher_notes,
                    day,
                    now,
                    now,
                ),
            )
        row = conn.execute("SELECT * FROM lesson_evaluations WHERE id = ?", (record_id,)).fetchone()
    return _row_to_dict(row)  # type: ignore[return-value]


def fetch_record(kind: str, record_id: str) -> Optional[Dict[str, Any]]:
    table = _record_kind(kind)[0]
    with connection() as conn:
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
    return _row_to_dict(row)


def fetch_records(kind: str, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
    if not record_ids:
        return []
    table = _record_kind(kind)[0]
    with connection() as conn:
        rows = conn.execute(
            f"SELECT * FROM {table} WHERE id IN ({_placeholders(len(record_ids))}) ORDER BY created_at",
            list(record_ids),
        ).fetchall()
    return _rows_to_dicts(rows)


def fetch_unsynced(kind: str, teacher_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Return the oldest unsynced records of ``teacher_id``.

    Records previously skipped as unplaceable come after every other unsynced
    record so they cannot fill the batch on their own.
    """

    table = _record_kind(kind)[0]
    with connection() as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM {table}
            WHERE teacher_id = ? AND synced_to_sheets = 0
            ORDER BY COALESCE(substr(sync_error, 1, ?) = ?, 0) ASC, created_at ASC
            LIMIT ?
            """,
            (teacher_id, len(SKIPPED_PREFIX), SKIPPED_PREFIX, int(limit)),
        ).fetchall()
    return _rows_to_dicts(rows)


def mark_synced(kind: str, record_ids: Sequence[str]) -> int:
    """Mark ``record_ids`` as mirrored in one transaction."""

    if not record_ids:
        return 0
    table = _record_kind(kind)[0]
    with transaction() as conn:
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET synced_to_sheets = 1, sync_error = NULL, updated_at = ?
            WHERE id IN ({_placeholders(len(record_ids))})
            """,
            [_utc_now_iso(), *record_ids],
        )
        return cursor.rowcount


def mark_failed(kind: str, record_ids: Sequence[str], message: str) -> int:
    """Record a sync failure for ``record_ids`` in one transaction."""

    if not record_ids:
        return 0
    table = _record_kind(kind)[0]
    with transaction() as conn:
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET synced_to_sheets = 0, sync_error = ?, updated_at = ?
            WHERE id IN ({_placeholders(len(record_ids))})
            """,
            [message, _utc_now_iso(), *record_ids],
        )
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Evaluations detached from their roster rows
# ---------------------------------------------------------------------------


def fetch_evaluations(*, orphaned_only: bool = False) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM lesson_evaluations"
    if orphaned_only:
        sql += (
            " WHERE eval_student_id IS NULL"
            " OR eval_student_id NOT IN (SELECT id FROM eval_students)"
        )
    sql += " ORDER BY created_at"
    with connection() as conn:
        return _rows_to_dicts(conn.execute(sql).fetchall())


def find_evaluation(
    eval_student_id: str,
    chapter_number: Optional[int],
    category: str,
    *,
    evaluation_date: Any = None,
    exclude_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Return the evaluation stored under the same key, if any.

    Chapter evaluations are keyed by chapter and category. Dated ones are
    keyed by category and date.
    """

    sql = "SELECT * FROM lesson_evaluations WHERE eval_student_id = ? AND category = ?"
    params: List[Any] = [eval_student_id, category]
    if chapter_number is None:
        sql += " AND chapter_number IS NULL AND evaluation_date IS ?"
        params.append(_date_text(evaluation_date))
    else:
        sql += " AND chapter_number = ?"
        params.append(int(chapter_number))
    if exclude_id:
        sql += " AND id != ?"
        params.append(exclude_id)
    with connection() as conn:
        return _row_to_dict(conn.execute(sql, params).fetchone())


def reattach_evaluation(evaluation_id: str, eval_student_id: str, class_id: Optional[str]) -> None:
    with transaction() as conn:
        conn.execute(
            """
            UPDATE lesson_evaluations
            SET eval_student_id = ?, class_id = ?, synced_to_sheets = 0, sync_error = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (eval_student_id, class_id, _utc_now_iso(), evaluation_id),
        )


def merge_evaluation(
    orphan_id: str,
    target_id: str,
    *,
    rating: Optional[str],
    teacher_notes: Optional[str],
) -> None:
    """Fold an orphaned evaluation into ``target_id`` and delete the orphan."""

    with transaction() as conn:
        conn.execute(
            """
            UPDATE lesson_evaluations
            SET rating = ?, teacher_notes = ?, synced_to_sheets = 0, sync_error = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (rating, teacher_notes, _utc_now_iso(), target_id),
        )
        conn.execute("DELETE FROM lesson_evaluations WHERE id = ?", (orphan_id,))


# ---------------------------------------------------------------------------
# Guardian links
# ---------------------------------------------------------------------------


def create_parent_link(
    parent_id: str,
    child_name_submitted: str,
    *,
    student_id: Optional[str] = None,
    year_group: Optional[str] = None,
    class_id: Optional[str] = None,
    verified: bool = False,
    link_id: Optional[str] = None,
) -> str:
    link_id = link_id or _new_id()
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO parent_children (
                id, parent_id, student_id, child_name_submitted, year_group, class_id,
                verified, needs_review, review_reason, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, ?)
            """,
            (
                link_id,
                parent_id,
                student_id,
                child_name_submitted,
                year_group,
                class_id,
                1 if verified else 0,
                now,
                now,
            ),
        )
    return link_id


def fetch_parent_link(link_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute("SELECT * FROM parent_children WHERE id = ?", (link_id,)).fetchone()
    return _row_to_dict(row)


def fetch_parent_links(
    parent_id: Optional[str] = None,
    *,
    verified: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if parent_id is not None:
        clauses.append("parent_id = ?")
        params.append(parent_id)
    if verified is not None:
        clauses.append("verified = ?")
        params.append(1 if verified else 0)
    sql = "SELECT * FROM parent_children"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at"
    with connection() as conn:
        return _rows_to_dicts(conn.execute(sql, params).fetchall())


def update_link_student(link_id: str, student_id: str) -> None:
    """Point a guardian link at ``student_id`` and clear any review flag."""

    with transaction() as conn:
        cursor = conn.execute(
            """
            UPDATE parent_children
            SET student_id = ?, needs_review = 0, review_reason = NULL, updated_at = ?
            WHERE id = ?
            """,
            (student_id, _utc_now_iso(), link_id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Guardian link {link_id} not found")


def flag_link_for_review(link_id: str, reason: str) -> None:
    with transaction() as conn:
        conn.execute(
            "UPDATE parent_children SET needs_review = 1, review_reason = ?, updated_at = ? WHERE id = ?",
            (reason, _utc_now_iso(), link_id),
        )


# ---------------------------------------------------------------------------
# Absence requests
# ---------------------------------------------------------------------------


def create_absence_request(
    parent_id: Optional[str],
    student_id: str,
    absence_date: Any,
    *,
    reason: Optional[str] = None,
    status: str = "pending",
) -> str:
    """Store an absence request with a copy of the student's name and class."""

    day = _date_text(absence_date)
    if not day:
        raise ValueError("Absence requests need a date")
    student = fetch_student(student_id)
    if student is None:
        raise LookupError(f"Student {student_id} not found")
    request_id = _new_id()
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO absence_requests (
                id, parent_id, student_id, student_name, class_id, absence_date,
                reason, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request_id,
                parent_id,
                student_id,
                student["student_name"],
                student["class_id"],
                day,
                reason,
                status,
                now,
                now,
            ),
        )
    return request_id


def fetch_absence_request(request_id: str) -> Optional[Dict[str, Any]]:
    with connection() as conn:
        row = conn.execute("SELECT * FROM absence_requests WHERE id = ?", (request_id,)).fetchone()
    return _row_to_dict(row)


def fetch_orphaned_absence_requests() -> List[Dict[str, Any]]:
    """Return requests that lost their student but still carry a name and class."""

    with connection() as conn:
        rows = conn.execute(
            """
            SELECT * FROM absence_requests
            WHERE student_id IS NULL AND student_name IS NOT NULL AND class_id IS NOT NULL
            ORDER BY created_at
            """
        ).fetchall()
    return _rows_to_dicts(rows)


def reattach_absence_request(request_id: str, student_id: str) -> None:
    with transaction() as conn:
        conn.execute(
            "UPDATE absence_requests SET student_id = ?, updated_at = ? WHERE id = ?",
            (student_id, _utc_now_iso(), request_id),
        )


__all__ = [
    "ATTENDANCE",
    "DB_PATH",
    "EVALUATION",
    "RECORD_KINDS",
    "SKIPPED_PREFIX",
    "connection",
    "create_absence_request",
    "create_class",
    "create_eval_student",
    "create_parent_link",
    "create_profile",
    "create_roster_entry",
    "create_student",
    "delete_roster_entry",
    "fetch_absence_request",
    "fetch_attendance_subject",
    "fetch_class",
    "fetch_evaluation_subject",
    "fetch_evaluations",
    "fetch_orphaned_absence_requests",
    "fetch_parent_link",
    "fetch_parent_links",
    "fetch_profile",
    "fetch_record",
    "fetch_records",
    "fetch_roster",
    "fetch_roster_entry",
    "fetch_student",
    "fetch_subject",
    "fetch_unsynced",
    "find_evaluation",
    "flag_link_for_review",
    "get_connection",
    "initialize_database",
    "mark_failed",
    "mark_synced",
    "merge_evaluation",
    "reattach_absence_request",
    "reattach_evaluation",
    "replace_roster",
    "save_attendance",
    "save_evaluation",
    "set_database_path",
    "teacher_sheet_id",
    "transaction",
    "update_link_student",
]
