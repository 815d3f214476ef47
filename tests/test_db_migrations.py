from __future__ import annotations

import os
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

import dirsync.db.session as db_session_module
from dirsync.core.config import get_settings
from dirsync.db.init_db import initialize_database
from dirsync.db.migrations import MIGRATIONS, apply_migrations
from dirsync.db.models import Base, SyncRunStatus
from dirsync.runs.errors import AlreadyRunningError
from dirsync.runs.store import SyncRunStore


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _insert_run(
    conn,
    status: str,
    started_by: str | None,
    started_at: str,
    finished_at: str | None,
    members_added: int = 0,
) -> None:
    conn.execute(
        text(
            "INSERT INTO sync_runs(status, started_by, started_at, finished_at, updated_at, "
            "groups_processed, members_added, members_updated, members_removed, "
            "memberships_added, memberships_removed, validation_requests_created) "
            "VALUES (:status, :started_by, :started_at, :finished_at, :updated_at, 0, :members_added, 0, 0, 0, 0, 0)"
        ),
        {
            "status": status,
            "started_by": started_by,
            "started_at": started_at,
            "finished_at": finished_at,
            "updated_at": finished_at or started_at,
            "members_added": members_added,
        },
    )


def _migration_versions(conn) -> list[int]:
    return [
        int(row[0])
        for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
    ]


def test_apply_migrations_on_empty_database_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        migration_versions = _migration_versions(conn)

    assert migration_versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_adds_mutex_and_resolves_duplicate_running_rows(tmp_path: Path) -> None:
    db_path = tmp_path / "unmigrated.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)
    # create_all alone builds the table without the partial unique index.
    Base.metadata.create_all(bind=engine)

    with engine.begin() as conn:
        assert "ix_sync_runs_single_running" not in _index_names(conn, "sync_runs")
        _insert_run(conn, "completed", "alice", "2026-01-05 08:00:00", "2026-01-05 08:10:00")
        _insert_run(conn, "running", "bob", "2026-01-05 09:00:00", None)
        _insert_run(conn, "running", "carol", "2026-01-05 10:00:00", None)
        _insert_run(conn, "failed", None, "2026-01-05 07:00:00", "2026-01-05 07:05:00")

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        indexes = _index_names(conn, "sync_runs")
        rows = conn.execute(
            text("SELECT id, status, finished_at, error_message FROM sync_runs ORDER BY id ASC")
        ).all()
        migration_versions = _migration_versions(conn)

    assert {
        "ix_sync_runs_single_running",
        "ix_sync_runs_started_id",
        "ix_sync_runs_status_started",
        "ix_sync_runs_finished_at",
    }.issubset(indexes)

    statuses = {row[0]: row[1] for row in rows}
    assert statuses == {1: "completed", 2: "failed", 3: "running", 4: "failed"}
    assert rows[1][2] is not None
    assert rows[1][3]
    assert rows[2][2] is None
    assert rows[3][3] is None
    assert migration_versions == [step.version for step in MIGRATIONS]

    with engine.begin() as conn:
        with pytest.raises(IntegrityError):
            _insert_run(conn, "running", "dave", "2026-01-06 00:00:00", None)


def test_initialized_store_reads_rows_written_before_migration(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["DIRSYNC_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    db_session_module.reset_engine()

    engine = db_session_module.get_engine()
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        _insert_run(conn, "running", "bob", "2026-01-05 09:00:00", None, members_added=4)

    initialize_database()
    store = SyncRunStore(get_settings(), db_session_module.get_session_factory())

    (existing,) = store.list_recent(10)
    assert existing.status == SyncRunStatus.RUNNING
    assert existing.started_by == "bob"
    assert existing.members_added == 4
    assert existing.memberships_added == 0
    assert existing.started_at.tzinfo is not None

    with pytest.raises(AlreadyRunningError):
        store.create_running("alice")
