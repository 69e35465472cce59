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


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


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


def _migration_0002_job_retry_policy_columns(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _column_exists(conn, "jobs", "max_attempts"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN max_attempts INTEGER NOT NULL DEFAULT 3"))

    if not _column_exists(conn, "jobs", "backoff_base_ms"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN backoff_base_ms INTEGER NOT NULL DEFAULT 2000"))

    if not _column_exists(conn, "jobs", "stalled_count"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN stalled_count INTEGER NOT NULL DEFAULT 0"))


def _migration_0003_job_queue_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _index_exists(conn, "jobs", "ix_jobs_state_available"):
        conn.execute(text("CREATE INDEX ix_jobs_state_available ON jobs (state, available_at, created_at)"))

    if not _index_exists(conn, "jobs", "ix_jobs_active_lease"):
        conn.execute(text("CREATE INDEX ix_jobs_active_lease ON jobs (state, lease_expires_at)"))

    if not _index_exists(conn, "jobs", "ix_jobs_state_finished"):
        conn.execute(text("CREATE INDEX ix_jobs_state_finished ON jobs (state, finished_at)"))


def _migration_0004_entries_user_date_index(conn: Connection) -> None:
    if not _table_exists(conn, "entries"):
        return

    if not _index_exists(conn, "entries", "ix_entries_user_date"):
        conn.execute(text("CREATE INDEX ix_entries_user_date ON entries (user_id, entry_date)"))


def _migration_0005_job_lease_token(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _column_exists(conn, "jobs", "lease_token"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN lease_token VARCHAR(64)"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="job_retry_policy_columns", apply=_migration_0002_job_retry_policy_columns),
    MigrationStep(version=3, name="job_queue_indexes", apply=_migration_0003_job_queue_indexes),
    MigrationStep(version=4, name="entries_user_date_index", apply=_migration_0004_entries_user_date_index),
    MigrationStep(version=5, name="job_lease_token", apply=_migration_0005_job_lease_token),
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
