from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SyncRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    # Decode fallback only; the engine never persists it.
    UNKNOWN = "unknown"


TERMINAL_STATUSES: frozenset[SyncRunStatus] = frozenset(
    {SyncRunStatus.COMPLETED, SyncRunStatus.PARTIALLY_COMPLETED, SyncRunStatus.FAILED}
)

COUNTER_COLUMNS: tuple[str, ...] = (
    "groups_processed",
    "members_added",
    "members_updated",
    "members_removed",
    "memberships_added",
    "memberships_removed",
    "validation_requests_created",
)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        SAEnum(SyncRunStatus, native_enum=False, values_callable=_enum_values, length=32),
        nullable=False,
        default=SyncRunStatus.RUNNING,
    )
    started_by: Mapped[str | None] = mapped_column(String(256), nullable=True)

    groups_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    members_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    members_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    members_removed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    memberships_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    memberships_removed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    validation_requests_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_sync_runs_started_id", "started_at", "id"),
        Index("ix_sync_runs_status_started", "status", "started_at"),
        Index("ix_sync_runs_finished_at", "finished_at"),
        {"sqlite_autoincrement": True},
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
