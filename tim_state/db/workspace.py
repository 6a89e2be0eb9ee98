"""Workspace rows and their issue links."""

from __future__ import annotations

import sqlite3
from typing import Any

from tim_state.db.models import Workspace, WorkspaceRecord
from tim_state.db.sql import SQL_NOW_ISO_UTC, write_transaction

PATCHABLE_FIELDS = frozenset(
    {
        "project_id",
        "task_id",
        "original_plan_file_path",
        "branch",
        "name",
        "description",
        "plan_id",
        "plan_title",
    }
)


def record_workspace(conn: sqlite3.Connection, record: WorkspaceRecord) -> Workspace:
    """Insert or update the workspace at ``record.workspace_path``.

    The owning project must already exist; a dangling ``project_id`` surfaces
    as ``ConstraintViolation``.
    """

    with write_transaction(conn):
        conn.execute(
            f"""
            INSERT INTO workspace (
              project_id,
              task_id,
              workspace_path,
              original_plan_file_path,
              branch,
              name,
              description,
              plan_id,
              plan_title
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(workspace_path) DO UPDATE SET
              project_id = excluded.project_id,
              task_id = COALESCE(excluded.task_id, workspace.task_id),
              original_plan_file_path = COALESCE(
                excluded.original_plan_file_path, workspace.original_plan_file_path
              ),
              branch = COALESCE(excluded.branch, workspace.branch),
              name = COALESCE(excluded.name, workspace.name),
              description = COALESCE(excluded.description, workspace.description),
              plan_id = COALESCE(excluded.plan_id, workspace.plan_id),
              plan_title = COALESCE(excluded.plan_title, workspace.plan_title),
              updated_at = {SQL_NOW_ISO_UTC}
            """,
            (
                record.project_id,
                record.task_id,
                record.workspace_path,
                record.original_plan_file_path,
                record.branch,
                record.name,
                record.description,
                record.plan_id,
                record.plan_title,
            ),
        )
        workspace = get_workspace_by_path(conn, record.workspace_path)
    if workspace is None:
        raise RuntimeError(f"workspace_insert_failed:{record.workspace_path}")
    return workspace


def get_workspace_by_path(conn: sqlite3.Connection, workspace_path: str) -> Workspace | None:
    row = conn.execute(
        "SELECT * FROM workspace WHERE workspace_path = ?", (workspace_path,)
    ).fetchone()
    return Workspace.from_row(row) if row is not None else None


def get_workspace_by_id(conn: sqlite3.Connection, workspace_id: int) -> Workspace | None:
    row = conn.execute("SELECT * FROM workspace WHERE id = ?", (workspace_id,)).fetchone()
    return Workspace.from_row(row) if row is not None else None


def find_workspaces_by_task_id(conn: sqlite3.Connection, task_id: str) -> list[Workspace]:
    rows = conn.execute(
        "SELECT * FROM workspace WHERE task_id = ? ORDER BY created_at ASC, id ASC",
        (task_id,),
    ).fetchall()
    return [Workspace.from_row(row) for row in rows]


def find_workspaces_by_project_id(conn: sqlite3.Connection, project_id: int) -> list[Workspace]:
    rows = conn.execute(
        "SELECT * FROM workspace WHERE project_id = ? ORDER BY created_at ASC, id ASC",
        (project_id,),
    ).fetchall()
    return [Workspace.from_row(row) for row in rows]


def find_workspaces_by_repository_id(
    conn: sqlite3.Connection, repository_id: str
) -> list[Workspace]:
    rows = conn.execute(
        """
        SELECT w.*
        FROM workspace w
        INNER JOIN project p ON p.id = w.project_id
        WHERE p.repository_id = ?
        ORDER BY w.created_at ASC, w.id ASC
        """,
        (repository_id,),
    ).fetchall()
    return [Workspace.from_row(row) for row in rows]


def list_workspaces(conn: sqlite3.Connection) -> list[Workspace]:
    rows = conn.execute("SELECT * FROM workspace ORDER BY id ASC").fetchall()
    return [Workspace.from_row(row) for row in rows]


def patch_workspace(
    conn: sqlite3.Connection, workspace_path: str, /, **fields: Any
) -> Workspace | None:
    """Update the supplied columns; explicit ``None`` clears a column."""

    unknown = set(fields) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown workspace fields: {', '.join(sorted(unknown))}")

    assignments = [f"{column} = ?" for column in fields]
    assignments.append(f"updated_at = {SQL_NOW_ISO_UTC}")
    with write_transaction(conn):
        conn.execute(
            f"UPDATE workspace SET {', '.join(assignments)} WHERE workspace_path = ?",
            (*fields.values(), workspace_path),
        )
    return get_workspace_by_path(conn, workspace_path)


def delete_workspace(conn: sqlite3.Connection, workspace_path: str) -> bool:
    """Delete the workspace; its issue links and lock go with it."""

    with write_transaction(conn):
        cur = conn.execute("DELETE FROM workspace WHERE workspace_path = ?", (workspace_path,))
    return int(cur.rowcount or 0) > 0


def set_workspace_issues(conn: sqlite3.Connection, workspace_id: int, urls: list[str]) -> None:
    with write_transaction(conn):
        conn.execute("DELETE FROM workspace_issue WHERE workspace_id = ?", (workspace_id,))
        conn.executemany(
            "INSERT OR IGNORE INTO workspace_issue (workspace_id, issue_url) VALUES (?, ?)",
            [(workspace_id, url) for url in urls],
        )


def add_workspace_issue(conn: sqlite3.Connection, workspace_id: int, url: str) -> bool:
    with write_transaction(conn):
        cur = conn.execute(
            "INSERT OR IGNORE INTO workspace_issue (workspace_id, issue_url) VALUES (?, ?)",
            (workspace_id, url),
        )
    return int(cur.rowcount or 0) > 0


def get_workspace_issues(conn: sqlite3.Connection, workspace_id: int) -> list[str]:
    rows = conn.execute(
        "SELECT issue_url FROM workspace_issue WHERE workspace_id = ? ORDER BY id ASC",
        (workspace_id,),
    ).fetchall()
    return [str(row[0]) for row in rows]
