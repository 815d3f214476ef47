from __future__ import annotations

from dirsync.core.config import Settings
from dirsync.runs.errors import SyncRunNotFoundError
from dirsync.runs.store import SyncRunStore
from dirsync.runs.tracker import StatusTracker
from dirsync.runs.types import StatusSnapshot, SyncRunSnapshot


class SyncRunQueries:
    def __init__(self, settings: Settings, store: SyncRunStore):
        self._settings = settings
        self._store = store
        self._tracker = StatusTracker(store)

    def get_history(self, limit: int | None = None) -> list[SyncRunSnapshot]:
        if limit is None:
            limit = self._settings.history_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError("limit must be a positive integer")
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        if limit > self._settings.history_max_limit:
            raise ValueError(f"limit must not exceed {self._settings.history_max_limit}")
        return self._store.list_recent(limit)

    def get_run(self, run_id: int) -> SyncRunSnapshot:
        snapshot = self._store.get(run_id)
        if snapshot is None:
            raise SyncRunNotFoundError(f"Sync run not found: {run_id}")
        return snapshot

    def get_status(self) -> StatusSnapshot:
        return self._tracker.get_status()
