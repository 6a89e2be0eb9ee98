"""Project rows: one per repository the tool has seen."""

from __future__ import annotations

import sqlite3
from typing import Any

from tim_state.db.models import Project, ProjectDetails
from tim_state.db.sql import SQL_NOW_ISO_UTC, write_transaction

UPDATABLE_FIELDS = frozenset(
    {
        "remote_url",
        "last_git_root",
        "external_config_path",
        "external_tasks_dir",
        "remote_label",
    }
)


def get_project(conn: sqlite3.Connection, repository_id: str) -> Project | None:
    row = conn.execute(
        "SELECT * FROM project WHERE repository_id = ?", (repository_id,)
    ).fetchone()
    return Project.from_row(row) if row is not None else None


def get_project_by_id(conn: sqlite3.Connection, project_id: int) -> Project | None:
    row = conn.execute("SELECT * FROM project WHERE id = ?", (project_id,)).fetchone()
    return Project.from_row(row) if row is not None else None


def get_or_create_project(
    conn: sqlite3.Connection,
    repository_id: str,
    details: ProjectDetails | None = None,
) -> Project:
    """Return the project for ``repository_id``, inserting it when missing.

    A concurrent creator losing the race hits the unique constraint, which the
    ``ON CONFLICT DO NOTHING`` turns into a no-op before the winner's row is read.
    """

    existing = get_project(conn, repository_id)
    if existing is not None:
        return existing

    details = details or ProjectDetails()
    with write_transaction(conn):
        conn.execute(
            """
            INSERT INTO project (
              repository_id,
              remote_url,
              last_git_root,
              external_config_path,
              external_tasks_dir,
              remote_label
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(repository_id) DO NOTHING
            """,
            (
                repository_id,
                details.remote_url,
                details.last_git_root,
                details.external_config_path,
                details.external_tasks_dir,
                details.remote_label,
            ),
        )
        project = get_project(conn, repository_id)
    if project is None:
        raise RuntimeError(f"project_insert_failed:{repository_id}")
    return project


def update_project(
    conn: sqlite3.Connection, project_id: int, /, **fields: Any
) -> Project | None:
    """Update only the supplied columns and bump ``updated_at``."""

    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown project fields: {', '.join(sorted(unknown))}")

    assignments = [f"{column} = ?" for column in fields]
    assignments.append(f"updated_at = {SQL_NOW_ISO_UTC}")
    with write_transaction(conn):
        conn.execute(
            f"UPDATE project SET {', '.join(assignments)} WHERE id = ?",
            (*fields.values(), project_id),
        )
    return get_project_by_id(conn, project_id)


def reserve_next_plan_id(
    conn: sqlite3.Connection,
    repository_id: str,
    local_max_observed: int = 0,
    count: int = 1,
) -> tuple[int, int]:
    """Reserve ``count`` consecutive plan ids and return ``(first, last)``.

    The bump is a single UPDATE evaluated under the write lock, so callers in
    separate processes can never receive overlapping blocks.
    """

    if count < 1:
        raise ValueError(f"count must be at least 1, received: {count}")

    with write_transaction(conn):
        get_or_create_project(conn, repository_id)
        rows = conn.execute(
            f"""
            UPDATE project
            SET highest_plan_id = max(highest_plan_id, ?) + ?,
                updated_at = {SQL_NOW_ISO_UTC}
            WHERE repository_id = ?
            RETURNING highest_plan_id
            """,
            (max(0, int(local_max_observed)), count, repository_id),
        ).fetchall()
    last = int(rows[0][0])
    return last - count + 1, last


def raise_highest_plan_id(conn: sqlite3.Connection, project_id: int, highest_plan_id: int) -> None:
    """Move ``highest_plan_id`` up to at least the given value; never lowers it."""

    with write_transaction(conn):
        conn.execute(
            f"""
            UPDATE project
            SET highest_plan_id = max(highest_plan_id, ?),
                updated_at = {SQL_NOW_ISO_UTC}
            WHERE id = ?
            """,
            (highest_plan_id, project_id),
        )


def list_projects(conn: sqlite3.Connection) -> list[Project]:
    rows = conn.execute("SELECT * FROM project ORDER BY id ASC").fetchall()
    return [Project.from_row(row) for row in rows]
