from __future__ import annotations

import logging
import queue
import threading
import time
import traceback
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from dirsync.core.config import Settings
from dirsync.db.models import SyncRunStatus
from dirsync.runs.errors import ProtocolViolationError, RunnerClosedError, StoreUnavailableError
from dirsync.runs.reporter import Reconciler, RunReporter, load_reconciler
from dirsync.runs.store import SyncRunStore
from dirsync.runs.types import RunEvent, RunEventKind, SyncRunSnapshot

logger = logging.getLogger(__name__)

ORPHANED_RUN_MESSAGE = "Sync run was interrupted before finishing and was recovered at startup"
STALE_RUN_MESSAGE = "Sync run exceeded the configured time limit and was marked as failed"
UNFINALIZED_RUN_MESSAGE = "Sync run outcome could not be recorded and was marked as failed before starting a new run"


class RunTask:
    """Owns one run id and the channel its reconciler reports on.

    A single consumer drains the channel, so counter updates are applied in
    report order and the terminal write follows every increment posted
    before it.
    """

    def __init__(self, run_id: int, store: SyncRunStore, settings: Settings):
        self.run_id = run_id
        self._store = store
        self._settings = settings
        self._channel: queue.Queue[RunEvent] = queue.Queue()
        self._pending: Counter[str] = Counter()
        self.reporter = RunReporter(run_id, self._channel)

    def drain(self) -> SyncRunSnapshot | None:
        while True:
            batch = [self._channel.get()]
            while batch[-1].kind != RunEventKind.FINISHED:
                try:
                    batch.append(self._channel.get_nowait())
                except queue.Empty:
                    break

            terminal: RunEvent | None = None
            for event in batch:
                if event.kind == RunEventKind.FINISHED:
                    terminal = event
                    break
                self._pending[event.kind.value] += event.count

            if terminal is not None:
                return self._finalize(terminal)
            if not self._flush():
                return None

    def _flush(self) -> bool:
        if not self._pending:
            return True
        try:
            self._store.apply_increments(self.run_id, dict(self._pending))
        except StoreUnavailableError as exc:
            # Kept pending; the next flush or the terminal write carries them.
            logger.warning("Deferred progress for sync run %s: %s", self.run_id, exc)
            return True
        except ProtocolViolationError as exc:
            logger.warning("%s; closing its reporter", exc)
            self._pending.clear()
            self.reporter.close()
            return False
        self._pending.clear()
        return True

    def _finalize(self, event: RunEvent) -> SyncRunSnapshot | None:
        assert event.outcome is not None
        attempts = self._settings.store_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                snapshot = self._store.finalize(
                    self.run_id,
                    event.outcome,
                    increments=dict(self._pending),
                    error_message=event.error_message,
                    error_details=event.error_details,
                )
            except ProtocolViolationError as exc:
                logger.warning("%s", exc)
                return None
            except StoreUnavailableError as exc:
                logger.warning(
                    "Finalizing sync run %s failed (attempt %d/%d): %s", self.run_id, attempt, attempts, exc
                )
                if attempt < attempts:
                    time.sleep(self._settings.store_retry_backoff_seconds * attempt)
                continue

            self._pending.clear()
            logger.info(
                "Sync run %s finished with status %s: groups=%d added=%d updated=%d removed=%d validations=%d",
                snapshot.id,
                snapshot.status.value,
                snapshot.groups_processed,
                snapshot.members_added,
                snapshot.members_updated,
                snapshot.members_removed,
                snapshot.validation_requests_created,
            )
            return snapshot

        logger.error(
            "Could not finalize sync run %s after %d attempts; it stays running until the next start",
            self.run_id,
            attempts,
        )
        return None


class JobRunner:
    """Single-flight executor for directory synchronization runs."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        reconciler: Reconciler | None = None,
    ):
        self._settings = settings
        self._store = SyncRunStore(settings, session_factory)
        self._reconciler = reconciler if reconciler is not None else load_reconciler(settings.reconciler)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dirsync-run")
        self._lock = threading.RLock()
        self._tasks: dict[int, Future[SyncRunSnapshot | None]] = {}
        # Runs created here whose terminal write has not succeeded yet.
        self._unfinalized: set[int] = set()
        self._recovered = False
        self._closed = False

    @property
    def store(self) -> SyncRunStore:
        return self._store

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def active_run_ids(self) -> set[int]:
        with self._lock:
            return set(self._tasks)

    def recover_orphaned_runs(self) -> list[SyncRunSnapshot]:
        with self._lock:
            recovered = self._store.fail_running(
                exclude_ids=set(self._tasks),
                error_message=ORPHANED_RUN_MESSAGE,
            )
            self._recovered = True
        for snapshot in recovered:
            logger.info(
                "Recovered orphaned sync run %s (started at %s by %s); marked as failed",
                snapshot.id,
                snapshot.started_at.isoformat(),
                snapshot.started_by or "unknown",
            )
        return recovered

    def _expire_stale_runs(self) -> None:
        stale_after = self._settings.run_stale_after_seconds
        if stale_after is None:
            return
        cutoff = self._now() - timedelta(seconds=stale_after)
        expired = self._store.fail_running(
            exclude_ids=set(self._tasks),
            started_before=cutoff,
            error_message=STALE_RUN_MESSAGE,
        )
        for snapshot in expired:
            logger.warning(
                "Stale sync run %s (started at %s) marked as failed before starting a new run",
                snapshot.id,
                snapshot.started_at.isoformat(),
            )

    def _fail_unfinalized_runs(self) -> None:
        abandoned = self._unfinalized - set(self._tasks)
        if not abandoned:
            return
        failed = self._store.fail_running(only_ids=abandoned, error_message=UNFINALIZED_RUN_MESSAGE)
        # Ids that are no longer running were closed elsewhere.
        self._unfinalized -= abandoned
        for snapshot in failed:
            logger.warning(
                "Sync run %s could not be finalized earlier; marked as failed before starting a new run",
                snapshot.id,
            )

    def start_run(self, triggered_by: str | None = None) -> int:
        with self._lock:
            if self._closed:
                raise RunnerClosedError("Job runner is shut down")
            if not self._recovered:
                self.recover_orphaned_runs()
            self._fail_unfinalized_runs()
            self._expire_stale_runs()

            snapshot = self._store.create_running(triggered_by)
            self._unfinalized.add(snapshot.id)
            task = RunTask(snapshot.id, self._store, self._settings)
            self._tasks[snapshot.id] = self._executor.submit(self._drive, task)

        logger.info("Sync run %s started by %s", snapshot.id, snapshot.started_by or "unknown")
        return snapshot.id

    def wait(self, run_id: int, timeout: float | None = None) -> bool:
        with self._lock:
            future = self._tasks.get(run_id)
        if future is None:
            return True
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _drive(self, task: RunTask) -> SyncRunSnapshot | None:
        producer = threading.Thread(
            target=self._produce,
            args=(task.reporter,),
            name=f"dirsync-reconciler-{task.run_id}",
            daemon=True,
        )
        producer.start()
        finalized: SyncRunSnapshot | None = None
        try:
            finalized = task.drain()
        except Exception:
            logger.exception("Sync run %s worker crashed", task.run_id)
            task.reporter.close()
        finally:
            with self._lock:
                self._tasks.pop(task.run_id, None)
                if finalized is not None:
                    self._unfinalized.discard(task.run_id)
        return finalized

    def _produce(self, reporter: RunReporter) -> None:
        try:
            self._reconciler(reporter)
        except Exception as exc:
            logger.exception("Reconciler failed for sync run %s", reporter.run_id)
            reporter.on_finished(
                SyncRunStatus.FAILED,
                str(exc) or exc.__class__.__name__,
                error_details=traceback.format_exc(),
            )
            return
        if not reporter.closed:
            reporter.on_finished(SyncRunStatus.COMPLETED)
