from __future__ import annotations

from dirsync.runs.store import SyncRunStore
from dirsync.runs.types import StatusSnapshot


class StatusTracker:
    """Derives the current sync status from the run store on every call."""

    def __init__(self, store: SyncRunStore):
        self._store = store

    def get_status(self) -> StatusSnapshot:
        rows = self._store.read_status_rows()
        return StatusSnapshot(
            is_running=rows.running is not None,
            last_run_at=None if rows.latest_started is None else rows.latest_started.started_at,
            last_run_status=None if rows.latest_finished is None else rows.latest_finished.status,
            current_run_id=None if rows.running is None else rows.running.id,
        )
