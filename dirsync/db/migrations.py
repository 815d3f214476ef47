from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _resolve_duplicate_running_sync_runs(conn: Connection) -> None:
    # Tables created without migrations lack the mutex index and may hold several
    # running rows. Keep the newest; older ones are leftovers of crashed processes.
    conn.execute(
        text(
            """
            WITH ranked AS (
                SELECT
                    id,
                    ROW_NUMBER() OVER (
                        ORDER BY started_at DESC, id DESC
                    ) AS row_num
                FROM sync_runs
                WHERE status = 'running'
            )
            UPDATE sync_runs
            SET status = 'failed',
                error_message = CASE
                    WHEN error_message IS NULL OR trim(error_message) = ''
                    THEN 'Reclassified during migration: a newer sync run was already running'
                    ELSE error_message
                END,
                finished_at = COALESCE(finished_at, CURRENT_TIMESTAMP),
                updated_at = CURRENT_TIMESTAMP
            WHERE id IN (
                SELECT id
                FROM ranked
                WHERE row_num > 1
            )
            """
        )
    )


def _rebuild_single_running_index(conn: Connection) -> None:
    conn.execute(text("DROP INDEX IF EXISTS ix_sync_runs_single_running"))
    conn.execute(
        text(
            "CREATE UNIQUE INDEX ix_sync_runs_single_running "
            "ON sync_runs((1)) WHERE status = 'running'"
        )
    )


def _migration_0002_single_running_mutex(conn: Connection) -> None:
    if not _table_exists(conn, "sync_runs"):
        return

    _resolve_duplicate_running_sync_runs(conn)
    _rebuild_single_running_index(conn)


def _migration_0003_history_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "sync_runs"):
        return

    if not _index_exists(conn, "sync_runs", "ix_sync_runs_started_id"):
        conn.execute(text("CREATE INDEX ix_sync_runs_started_id ON sync_runs (started_at, id)"))

    if not _index_exists(conn, "sync_runs", "ix_sync_runs_status_started"):
        conn.execute(text("CREATE INDEX ix_sync_runs_status_started ON sync_runs (status, started_at)"))

    if not _index_exists(conn, "sync_runs", "ix_sync_runs_finished_at"):
        conn.execute(text("CREATE INDEX ix_sync_runs_finished_at ON sync_runs (finished_at)"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="sync_runs_single_running_mutex", apply=_migration_0002_single_running_mutex),
    MigrationStep(version=3, name="sync_runs_history_indexes", apply=_migration_0003_history_indexes),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
