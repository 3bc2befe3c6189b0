"""Background synchronisation worker for Classbook."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from core.batch_sync import BatchSyncExecutor, NothingToSyncError, SyncError, SyncOutcome

STATUS_SYNCED = "synced"
STATUS_PARTIAL = "partial"
STATUS_NOTHING = "nothing"
STATUS_REAUTHORISE = "reauthorise"
STATUS_FAILED = "failed"


@dataclass
class SyncResult:
    action: str
    message: str
    status: str
    outcome: Optional[SyncOutcome] = None


StatusCallback = Callable[[str, Optional[SyncResult]], None]


def _outcome_result(action: str, outcome: SyncOutcome) -> SyncResult:
    if outcome.total_records == 0:
        return SyncResult(action, "Nothing to sync", STATUS_NOTHING, outcome)
    message = f"Synced {outcome.synced_count} of {outcome.total_records} records"
    if outcome.failed_sheets or outcome.skipped:
        return SyncResult(action, message, STATUS_PARTIAL, outcome)
    return SyncResult(action, message, STATUS_SYNCED, outcome)


class SyncWorker:
    """Run sync and "retry failed" requests off the UI thread.

    Only one request runs at a time; a request made while another is running
    is refused.  :attr:`is_busy` lets the window warn before closing while a
    sync is still in flight.
    """

    def __init__(
        self,
        root,
        executor: BatchSyncExecutor,
        status_callback: Optional[StatusCallback] = None,
    ) -> None:
        self.root = root
        self.executor = executor
        self.status_callback = status_callback
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger(__name__)

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def sync_records(self, kind: str, records: Iterable[Mapping[str, Any]]) -> bool:
        batch = list(records)
        return self._start("sync", lambda: self.executor.sync(kind, batch))

    def retry_failed(self, kind: str, teacher_id: str) -> bool:
        return self._start("retry", lambda: self.executor.retry_failed(kind, teacher_id))

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _start(self, action: str, job: Callable[[], SyncOutcome]) -> bool:
        if not self._lock.acquire(blocking=False):
            self._logger.info("Ignoring %s request while another sync is running", action)
            return False
        try:
            self._thread = threading.Thread(target=self._execute, args=(action, job), daemon=True)
            self._thread.start()
        except RuntimeError:
            self._lock.release()
            raise
        return True

    def _execute(self, action: str, job: Callable[[], SyncOutcome]) -> None:
        try:
            try:
                result = _outcome_result(action, job())
            except NothingToSyncError as exc:
                result = SyncResult(action, str(exc), STATUS_NOTHING, exc.outcome)
            except SyncError as exc:
                status = STATUS_REAUTHORISE if exc.session_expired else STATUS_FAILED
                result = SyncResult(action, str(exc), status, exc.outcome)
                self._logger.warning("Sync %s failed: %s", action, exc)
            except Exception as exc:
                result = SyncResult(action, f"Sync failed: {exc}", STATUS_FAILED)
                self._logger.exception("Unexpected error during %s", action)
        finally:
            self._lock.release()
        self._dispatch_status(result.message, result)

    def _dispatch_status(self, message: str, result: Optional[SyncResult]) -> None:
        if not self.status_callback:
            return

        def callback() -> None:
            self.status_callback(message, result)

        self.root.after(0, callback)


__all__ = [
    "STATUS_FAILED",
    "STATUS_NOTHING",
    "STATUS_PARTIAL",
    "STATUS_REAUTHORISE",
    "STATUS_SYNCED",
    "SyncResult",
    "SyncWorker",
]
