from __future__ import annotations

import importlib
import logging
import queue
import threading
from typing import Callable

from dirsync.db.models import TERMINAL_STATUSES, SyncRunStatus
from dirsync.runs.errors import ProtocolViolationError, ReconcilerNotConfiguredError
from dirsync.runs.types import RunEvent, RunEventKind

logger = logging.getLogger(__name__)


class RunReporter:
    """Progress callbacks handed to the directory reconciler for one run.

    Every call posts a message on the run's channel; the runner applies them
    in order. After ``on_finished`` the reporter is closed and further reports
    are rejected and logged.
    """

    def __init__(self, run_id: int, channel: queue.Queue[RunEvent]):
        self._run_id = run_id
        self._channel = channel
        self._lock = threading.Lock()
        self._closed = False

    @property
    def run_id(self) -> int:
        return self._run_id

    @property
    def closed(self) -> bool:
        return self._closed

    def on_group_processed(self, count: int = 1) -> bool:
        return self._post(RunEventKind.GROUP_PROCESSED, count)

    def on_member_added(self, count: int = 1) -> bool:
        return self._post(RunEventKind.MEMBER_ADDED, count)

    def on_member_updated(self, count: int = 1) -> bool:
        return self._post(RunEventKind.MEMBER_UPDATED, count)

    def on_member_removed(self, count: int = 1) -> bool:
        return self._post(RunEventKind.MEMBER_REMOVED, count)

    def on_membership_added(self, count: int = 1) -> bool:
        return self._post(RunEventKind.MEMBERSHIP_ADDED, count)

    def on_membership_removed(self, count: int = 1) -> bool:
        return self._post(RunEventKind.MEMBERSHIP_REMOVED, count)

    def on_validation_request_created(self, count: int = 1) -> bool:
        return self._post(RunEventKind.VALIDATION_REQUEST_CREATED, count)

    def on_finished(
        self,
        outcome: SyncRunStatus,
        error_message: str | None = None,
        *,
        error_details: str | None = None,
    ) -> bool:
        outcome = SyncRunStatus(outcome)
        if outcome not in TERMINAL_STATUSES:
            raise ValueError(f"Outcome must be one of {sorted(status.value for status in TERMINAL_STATUSES)}")
        event = RunEvent(
            kind=RunEventKind.FINISHED,
            count=0,
            outcome=outcome,
            error_message=error_message,
            error_details=error_details,
        )
        with self._lock:
            if self._closed:
                self._reject(event)
                return False
            self._closed = True
            self._channel.put(event)
        return True

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def _post(self, kind: RunEventKind, count: int) -> bool:
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValueError("count must be a positive integer")
        event = RunEvent(kind=kind, count=count)
        with self._lock:
            if self._closed:
                self._reject(event)
                return False
            self._channel.put(event)
        return True

    def _reject(self, event: RunEvent) -> None:
        violation = ProtocolViolationError(
            f"Rejected {event.kind.value} report for sync run {self._run_id}: the run has already finished"
        )
        logger.warning("%s", violation)


Reconciler = Callable[[RunReporter], None]


def unconfigured_reconciler(_reporter: RunReporter) -> None:
    raise ReconcilerNotConfiguredError("No directory reconciler is configured; synchronization is not available")


def load_reconciler(path: str | None) -> Reconciler:
    if path is None:
        return unconfigured_reconciler

    module_name, _, attribute = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ReconcilerNotConfiguredError(f"Cannot import reconciler module {module_name!r}") from exc

    target = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ReconcilerNotConfiguredError(f"Reconciler {path!r} does not exist") from exc
    if not callable(target):
        raise ReconcilerNotConfiguredError(f"Reconciler {path!r} is not callable")
    return target
