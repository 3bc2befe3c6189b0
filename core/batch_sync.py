"""Mirror attendance and evaluation records into the teacher's spreadsheets."""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import db
from core.credentials import SESSION_EXPIRED_MESSAGE, CredentialManager, SessionExpired
from core.retry import AuthRetry
from core.sheet_address import AddressError, CellAddress, attendance_column, evaluation_column
from core.sheets_client import SheetsClient
from settings import SheetLayout, SyncSettings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], SheetsClient]
Record = Mapping[str, Any]


class SyncError(Exception):
    """Raised when a sync batch could not be mirrored."""

    def __init__(
        self,
        message: str,
        *,
        session_expired: bool = False,
        outcome: Optional["SyncOutcome"] = None,
    ) -> None:
        super().__init__(message)
        self.session_expired = session_expired
        self.outcome = outcome


class NothingToSyncError(SyncError):
    """Raised when ``sync`` is called without records."""


class _Unresolvable(Exception):
    pass


@dataclass(frozen=True)
class CellUpdate:
    record_id: str
    address: CellAddress
    value: Any


@dataclass
class SyncOutcome:
    kind: str
    synced_count: int = 0
    total_records: int = 0
    skipped: Dict[str, str] = field(default_factory=dict)
    failed_sheets: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed_sheets

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "syncedCount": self.synced_count,
            "totalRecords": self.total_records,
        }


def _cell_value(value: Any) -> Any:
    return "" if value is None else value


class BatchSyncExecutor:
    """Write batches of records to the mirror and record per-record status.

    One call handles the records of a single teacher.  Each record is mapped
    to a cell; records that cannot be mapped are skipped and marked with the
    reason.  The remaining cells are grouped by sheet tab and each group is
    written with one ``batchUpdate`` request, one group at a time.  The status
    of a group's records is updated in a single transaction after its write.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        settings: Optional[SyncSettings] = None,
        *,
        layout: Optional[SheetLayout] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._settings = settings or SyncSettings()
        self._layout = layout or self._settings.layout()
        self._credentials = credentials
        if client_factory is None:
            retry = AuthRetry(
                credentials,
                max_attempts=self._settings.max_auth_attempts,
                propagation_delay=self._settings.propagation_delay,
                sleep=sleep,
            )

            def client_factory(spreadsheet_id: str) -> SheetsClient:
                return SheetsClient(spreadsheet_id, credentials, retry=retry)

        self._client_factory = client_factory

    @property
    def layout(self) -> SheetLayout:
        return self._layout

    # ------------------------------------------------------------------
    # Record resolution
    # ------------------------------------------------------------------
    def _subject_address(self, kind: str, subject_id: Any, column: int) -> CellAddress:
        subject = db.fetch_subject(kind, subject_id)
        if subject is None:
            raise _Unresolvable("student not found")
        sheet_name = (subject.get("sheet_name") or "").strip()
        if not sheet_name:
            raise _Unresolvable("class has no sheet name")
        row_number = subject.get("row_number")
        if not row_number:
            raise _Unresolvable("student has no sheet row")
        return CellAddress(sheet_name, int(row_number), column)

    def resolve(self, kind: str, record: Record) -> CellUpdate:
        """Return the cell write for ``record``.

        Raises :class:`~core.sheet_address.AddressError` or an internal
        resolution error when the record cannot be placed.
        """

        if kind == db.ATTENDANCE:
            column = attendance_column(self._layout, record.get("attendance_date"))
            address = self._subject_address(kind, record.get("student_id"), column)
            value = record.get("status")
        elif kind == db.EVALUATION:
            column = evaluation_column(
                self._layout,
                record.get("category") or "",
                chapter=record.get("chapter_number"),
                evaluation_date=record.get("evaluation_date"),
            )
            address = self._subject_address(kind, record.get("eval_student_id"), column)
            value = record.get("rating")
        else:
            raise ValueError(f"Unknown record kind {kind!r}")
        return CellUpdate(str(record["id"]), address, _cell_value(value))

    def _resolve_all(
        self, kind: str, records: Iterable[Record], outcome: SyncOutcome
    ) -> List[CellUpdate]:
        updates: List[CellUpdate] = []
        for record in records:
            record_id = str(record["id"])
            try:
                updates.append(self.resolve(kind, record))
            except (_Unresolvable, AddressError) as exc:
                reason = str(exc)
                outcome.skipped[record_id] = reason
                logger.warning("Skipping %s record %s: %s", kind, record_id, reason)
                db.mark_failed(kind, [record_id], f"{db.SKIPPED_PREFIX}{reason}")
        return updates

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def sync(self, kind: str, records: Iterable[Record]) -> SyncOutcome:
        batch = list(records)
        if not batch:
            raise NothingToSyncError("No records to sync")

        record_ids = [str(record["id"]) for record in batch]
        outcome = SyncOutcome(kind=kind, total_records=len(batch))

        teacher_ids = {record.get("teacher_id") for record in batch}
        if len(teacher_ids) != 1 or None in teacher_ids:
            self._fail_batch(kind, record_ids, "A sync batch must belong to exactly one teacher", outcome)
        (teacher_id,) = teacher_ids

        spreadsheet_id = db.teacher_sheet_id(str(teacher_id), kind)
        if not spreadsheet_id:
            self._fail_batch(
                kind, record_ids, "No Google Sheets ID configured for this teacher", outcome
            )

        updates = self._resolve_all(kind, batch, outcome)
        if not updates:
            raise SyncError("No valid records to sync", outcome=outcome)

        groups: "OrderedDict[str, List[CellUpdate]]" = OrderedDict()
        for update in updates:
            groups.setdefault(update.address.sheet_name, []).append(update)

        client = self._client_factory(str(spreadsheet_id))
        last_error: Optional[BaseException] = None
        pending: List[Tuple[str, List[CellUpdate]]] = list(groups.items())
        for index, (sheet_name, group) in enumerate(pending):
            group_ids = [update.record_id for update in group]
            try:
                client.batch_update_cells([(update.address, update.value) for update in group])
            except SessionExpired as exc:
                unwritten = [item for _, rest in pending[index:] for item in rest]
                for name, _rest in pending[index:]:
                    outcome.failed_sheets[name] = SESSION_EXPIRED_MESSAGE
                db.mark_failed(kind, [update.record_id for update in unwritten], SESSION_EXPIRED_MESSAGE)
                logger.warning(
                    "Session expired while syncing %s sheet %s; %d records left unsynced",
                    kind,
                    sheet_name,
                    len(unwritten),
                )
                raise SyncError(SESSION_EXPIRED_MESSAGE, session_expired=True, outcome=outcome) from exc
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                outcome.failed_sheets[sheet_name] = message
                db.mark_failed(kind, group_ids, message)
                logger.warning("Failed to sync %d %s records to %s: %s", len(group), kind, sheet_name, message)
                last_error = exc
                continue

            db.mark_synced(kind, group_ids)
            outcome.synced_count += len(group_ids)
            logger.info("Synced %d %s records to sheet %s", len(group_ids), kind, sheet_name)

        if outcome.synced_count == 0:
            message = next(iter(outcome.failed_sheets.values()), "Sync failed")
            raise SyncError(message, outcome=outcome) from last_error
        return outcome

    def sync_attendance(self, records: Iterable[Record]) -> SyncOutcome:
        return self.sync(db.ATTENDANCE, records)

    def sync_evaluations(self, records: Iterable[Record]) -> SyncOutcome:
        return self.sync(db.EVALUATION, records)

    def sync_one(self, kind: str, record: Record) -> SyncOutcome:
        return self.sync(kind, [record])

    def retry_failed(self, kind: str, teacher_id: str) -> SyncOutcome:
        """Re-sync the oldest unsynced records of ``teacher_id``."""

        records = db.fetch_unsynced(kind, teacher_id, self._settings.retry_batch_limit)
        if not records:
            logger.info("No unsynced %s records for teacher %s", kind, teacher_id)
            return SyncOutcome(kind=kind)
        logger.info("Retrying %d unsynced %s records", len(records), kind)
        return self.sync(kind, records)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _fail_batch(
        self, kind: str, record_ids: List[str], message: str, outcome: SyncOutcome
    ) -> None:
        db.mark_failed(kind, record_ids, message)
        logger.warning("Cannot sync %d %s records: %s", len(record_ids), kind, message)
        raise SyncError(message, outcome=outcome)


__all__ = [
    "BatchSyncExecutor",
    "CellUpdate",
    "NothingToSyncError",
    "SyncError",
    "SyncOutcome",
]
