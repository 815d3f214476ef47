from dirsync.runs.errors import (
    AlreadyRunningError,
    ProtocolViolationError,
    ReconcilerNotConfiguredError,
    RunnerClosedError,
    StoreUnavailableError,
    SyncRunNotFoundError,
)
from dirsync.runs.queries import SyncRunQueries
from dirsync.runs.reporter import Reconciler, RunReporter, load_reconciler, unconfigured_reconciler
from dirsync.runs.runner import JobRunner, RunTask
from dirsync.runs.store import SyncRunStore
from dirsync.runs.tracker import StatusTracker
from dirsync.runs.types import StatusSnapshot, SyncRunSnapshot
from dirsync.runs.wire import run_to_dict, status_from_wire, status_snapshot_to_dict, status_to_wire

__all__ = [
    "AlreadyRunningError",
    "ProtocolViolationError",
    "ReconcilerNotConfiguredError",
    "RunnerClosedError",
    "StoreUnavailableError",
    "SyncRunNotFoundError",
    "JobRunner",
    "RunTask",
    "Reconciler",
    "RunReporter",
    "load_reconciler",
    "unconfigured_reconciler",
    "SyncRunStore",
    "StatusTracker",
    "SyncRunQueries",
    "StatusSnapshot",
    "SyncRunSnapshot",
    "run_to_dict",
    "status_snapshot_to_dict",
    "status_to_wire",
    "status_from_wire",
]
