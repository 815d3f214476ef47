from __future__ import annotations

import threading
from collections.abc import Collection, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from dirsync.core.config import Settings
from dirsync.db.models import COUNTER_COLUMNS, TERMINAL_STATUSES, SyncRun, SyncRunStatus
from dirsync.runs.errors import AlreadyRunningError, ProtocolViolationError, StoreUnavailableError
from dirsync.runs.types import SyncRunSnapshot

# Shared by every store in the process; the partial unique index covers other processes.
_CREATE_LOCK = threading.Lock()

STARTED_BY_MAX_LENGTH = 256


@dataclass(frozen=True)
class StatusRows:
    running: SyncRunSnapshot | None
    latest_started: SyncRunSnapshot | None
    latest_finished: SyncRunSnapshot | None


class SyncRunStore:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Run store unavailable while {action}: {exc}") from exc

    def _validate_increments(self, increments: Mapping[str, int]) -> dict[str, int]:
        normalized: dict[str, int] = {}
        for column, amount in increments.items():
            if column not in COUNTER_COLUMNS:
                raise ValueError(f"Unknown counter: {column}")
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise ValueError(f"Counter increment for {column} must be an integer")
            if amount < 0:
                raise ValueError(f"Counter increment for {column} must be >= 0")
            if amount:
                normalized[column] = amount
        return normalized

    def create_running(self, started_by: str | None = None) -> SyncRunSnapshot:
        normalized_started_by = (started_by or "").strip()[:STARTED_BY_MAX_LENGTH] or None
        with _CREATE_LOCK, self._guard("starting a run"), self._session_factory() as session:
            active = session.scalar(select(SyncRun).where(SyncRun.status == SyncRunStatus.RUNNING).limit(1))
            if active is not None:
                started_at = self._coerce_utc(active.started_at)
                raise AlreadyRunningError(
                    f"A sync run is already running (run {active.id}, started at "
                    f"{started_at.isoformat() if started_at else 'unknown'} by {active.started_by or 'unknown'})"
                )

            now = self._now()
            row = SyncRun(
                status=SyncRunStatus.RUNNING,
                started_by=normalized_started_by,
                started_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise AlreadyRunningError("A sync run is already running") from exc
            session.refresh(row)
            return self._to_snapshot(row)

    def apply_increments(self, run_id: int, increments: Mapping[str, int]) -> None:
        normalized = self._validate_increments(increments)
        if not normalized:
            return
        values = {column: getattr(SyncRun, column) + amount for column, amount in normalized.items()}
        values["updated_at"] = self._now()
        with self._guard(f"updating run {run_id}"), self._session_factory() as session:
            result = session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncRunStatus.RUNNING)
                .values(**values)
            )
            if int(result.rowcount or 0) == 0:
                session.rollback()
                raise ProtocolViolationError(f"Progress report for sync run {run_id}, which is not running")
            session.commit()

    def finalize(
        self,
        run_id: int,
        status: SyncRunStatus,
        *,
        increments: Mapping[str, int] | None = None,
        error_message: str | None = None,
        error_details: str | None = None,
    ) -> SyncRunSnapshot:
        status = SyncRunStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Illegal transition: running -> {status.value}")

        normalized = self._validate_increments(increments or {})
        now = self._now()
        values: dict[str, object] = {column: getattr(SyncRun, column) + amount for column, amount in normalized.items()}
        values.update(
            status=status,
            finished_at=now,
            updated_at=now,
            error_message=error_message,
            error_details=error_details,
        )
        with self._guard(f"finalizing run {run_id}"), self._session_factory() as session:
            result = session.execute(
                update(SyncRun)
                .where(SyncRun.id == run_id, SyncRun.status == SyncRunStatus.RUNNING)
                .values(**values)
            )
            if int(result.rowcount or 0) == 0:
                session.rollback()
                raise ProtocolViolationError(f"Terminal report for sync run {run_id}, which is not running")
            session.commit()
            row = session.get(SyncRun, run_id, populate_existing=True)
            assert row is not None
            return self._to_snapshot(row)

    def fail_running(
        self,
        *,
        exclude_ids: Collection[int] = (),
        only_ids: Collection[int] | None = None,
        started_before: datetime | None = None,
        error_message: str,
    ) -> list[SyncRunSnapshot]:
        now = self._now()
        stmt = select(SyncRun.id).where(SyncRun.status == SyncRunStatus.RUNNING)
        if exclude_ids:
            stmt = stmt.where(SyncRun.id.not_in(list(exclude_ids)))
        if only_ids is not None:
            if not only_ids:
                return []
            stmt = stmt.where(SyncRun.id.in_(list(only_ids)))
        if started_before is not None:
            stmt = stmt.where(SyncRun.started_at <= started_before)

        failed: list[SyncRunSnapshot] = []
        with self._guard("recovering running runs"), self._session_factory() as session:
            for run_id in list(session.scalars(stmt).all()):
                result = session.execute(
                    update(SyncRun)
                    .where(SyncRun.id == run_id, SyncRun.status == SyncRunStatus.RUNNING)
                    .values(
                        status=SyncRunStatus.FAILED,
                        finished_at=now,
                        updated_at=now,
                        error_message=error_message,
                    )
                )
                if int(result.rowcount or 0) == 0:
                    continue
                row = session.get(SyncRun, run_id, populate_existing=True)
                if row is not None:
                    failed.append(self._to_snapshot(row))
            session.commit()
        return failed

    def get(self, run_id: int) -> SyncRunSnapshot | None:
        with self._guard(f"reading run {run_id}"), self._session_factory() as session:
            row = session.get(SyncRun, run_id)
            return None if row is None else self._to_snapshot(row)

    def list_recent(self, limit: int) -> list[SyncRunSnapshot]:
        with self._guard("listing runs"), self._session_factory() as session:
            rows = session.scalars(
                select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def read_status_rows(self) -> StatusRows:
        with self._guard("reading run status"), self._session_factory() as session, session.begin():
            running = session.scalar(select(SyncRun).where(SyncRun.status == SyncRunStatus.RUNNING).limit(1))
            latest_started = session.scalar(
                select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(1)
            )
            latest_finished = session.scalar(
                select(SyncRun)
                .where(SyncRun.status != SyncRunStatus.RUNNING, SyncRun.finished_at.is_not(None))
                .order_by(SyncRun.finished_at.desc(), SyncRun.id.desc())
                .limit(1)
            )
            return StatusRows(
                running=None if running is None else self._to_snapshot(running),
                latest_started=None if latest_started is None else self._to_snapshot(latest_started),
                latest_finished=None if latest_finished is None else self._to_snapshot(latest_finished),
            )

    def _to_snapshot(self, row: SyncRun) -> SyncRunSnapshot:
        started_at = self._coerce_utc(row.started_at)
        assert started_at is not None
        return SyncRunSnapshot(
            id=row.id,
            status=row.status,
            started_by=row.started_by,
            started_at=started_at,
            finished_at=self._coerce_utc(row.finished_at),
            groups_processed=row.groups_processed,
            members_added=row.members_added,
            members_updated=row.members_updated,
            members_removed=row.members_removed,
            memberships_added=row.memberships_added,
            memberships_removed=row.memberships_removed,
            validation_requests_created=row.validation_requests_created,
            error_message=row.error_message,
            error_details=row.error_details,
        )
