"""Versioned schema migrations for the state database.

The current version lives in the single-row ``schema_version`` table. Each
migration runs in its own ``BEGIN IMMEDIATE`` transaction together with the
version bump, so another process either sees the whole migration or none of it.
The version is re-read after the write lock is taken, which lets several
processes race to open a fresh file without applying anything twice.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from tim_state.db.errors import ConstraintViolation, MigrationFailed
from tim_state.db.sql import write_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]


_V1_INITIAL_SCHEMA = (
    """
    CREATE TABLE project (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        repository_id TEXT NOT NULL UNIQUE,
        remote_url TEXT,
        last_git_root TEXT,
        external_config_path TEXT,
        external_tasks_dir TEXT,
        remote_label TEXT,
        highest_plan_id INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE TABLE workspace (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES project(id),
        task_id TEXT,
        workspace_path TEXT NOT NULL UNIQUE,
        original_plan_file_path TEXT,
        branch TEXT,
        name TEXT,
        description TEXT,
        plan_id TEXT,
        plan_title TEXT,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    "CREATE INDEX idx_workspace_project_id ON workspace(project_id)",
    "CREATE INDEX idx_workspace_task_id ON workspace(task_id)",
    """
    CREATE TABLE workspace_issue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id INTEGER NOT NULL REFERENCES workspace(id) ON DELETE CASCADE,
        issue_url TEXT NOT NULL,
        UNIQUE(workspace_id, issue_url)
    )
    """,
    """
    CREATE TABLE workspace_lock (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id INTEGER NOT NULL UNIQUE REFERENCES workspace(id) ON DELETE CASCADE,
        lock_type TEXT NOT NULL CHECK(lock_type IN ('persistent', 'pid')),
        pid INTEGER,
        started_at TEXT NOT NULL,
        hostname TEXT NOT NULL,
        command TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE permission (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES project(id),
        permission_type TEXT NOT NULL CHECK(permission_type IN ('allow', 'deny')),
        pattern TEXT NOT NULL,
        UNIQUE(project_id, permission_type, pattern)
    )
    """,
    """
    CREATE TABLE assignment (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES project(id),
        plan_uuid TEXT NOT NULL,
        plan_id INTEGER,
        workspace_id INTEGER REFERENCES workspace(id) ON DELETE SET NULL,
        claimed_by_user TEXT,
        status TEXT,
        assigned_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        UNIQUE(project_id, plan_uuid)
    )
    """,
    "CREATE INDEX idx_assignment_workspace_id ON assignment(workspace_id)",
)

MIGRATIONS: tuple[Migration, ...] = (
    Migration(version=1, name="initial_schema", statements=_V1_INITIAL_SCHEMA),
)

SCHEMA_VERSION = MIGRATIONS[-1].version


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    with write_transaction(conn):
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL,
                import_completed INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        row = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()
        if int(row[0]) == 0:
            conn.execute("INSERT INTO schema_version (version, import_completed) VALUES (0, 0)")


def get_schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT version FROM schema_version").fetchone()
    return int(row[0]) if row is not None else 0


def run_migrations(
    conn: sqlite3.Connection, migrations: tuple[Migration, ...] = MIGRATIONS
) -> int:
    """Apply every migration newer than the recorded version; return the final version."""

    _ensure_version_table(conn)
    known_version = migrations[-1].version if migrations else 0
    current = get_schema_version(conn)
    if current > known_version:
        raise MigrationFailed(
            f"database schema is newer than supported (db={current}, code={known_version})",
            version=current,
        )

    for migration in migrations:
        if migration.version <= current:
            continue
        try:
            with write_transaction(conn):
                current = get_schema_version(conn)
                if migration.version <= current:
                    continue
                for statement in migration.statements:
                    conn.execute(statement)
                conn.execute("UPDATE schema_version SET version = ?", (migration.version,))
        except (sqlite3.Error, ConstraintViolation) as exc:
            # StorageBusy is not a script failure and propagates unchanged.
            raise MigrationFailed(
                f"migration {migration.version} ({migration.name}) failed: {exc}",
                version=migration.version,
            ) from exc
        current = migration.version
        logger.info("Applied schema migration %s (%s)", migration.version, migration.name)

    return current
