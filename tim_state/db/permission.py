"""Pre-approved command patterns per project."""

from __future__ import annotations

import sqlite3

from tim_state.db.models import Permissions
from tim_state.db.sql import write_transaction

PERMISSION_TYPES = ("allow", "deny")


def _check_type(permission_type: str) -> None:
    if permission_type not in PERMISSION_TYPES:
        raise ValueError(f"permission type must be 'allow' or 'deny', received: {permission_type}")


def get_permissions(conn: sqlite3.Connection, project_id: int) -> Permissions:
    rows = conn.execute(
        """
        SELECT permission_type, pattern
        FROM permission
        WHERE project_id = ?
        ORDER BY id ASC
        """,
        (project_id,),
    ).fetchall()
    permissions = Permissions()
    for row in rows:
        getattr(permissions, row["permission_type"]).append(str(row["pattern"]))
    return permissions


def add_permission(
    conn: sqlite3.Connection, project_id: int, permission_type: str, pattern: str
) -> bool:
    """Insert the pattern unless the project already has it; return whether it was added."""

    _check_type(permission_type)
    with write_transaction(conn):
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO permission (project_id, permission_type, pattern)
            VALUES (?, ?, ?)
            """,
            (project_id, permission_type, pattern),
        )
    return int(cur.rowcount or 0) > 0


def remove_permission(
    conn: sqlite3.Connection, project_id: int, permission_type: str, pattern: str
) -> bool:
    _check_type(permission_type)
    with write_transaction(conn):
        cur = conn.execute(
            """
            DELETE FROM permission
            WHERE project_id = ? AND permission_type = ? AND pattern = ?
            """,
            (project_id, permission_type, pattern),
        )
    return int(cur.rowcount or 0) > 0


def set_permissions(conn: sqlite3.Connection, project_id: int, permissions: Permissions) -> None:
    """Replace the project's whole permission set."""

    with write_transaction(conn):
        conn.execute("DELETE FROM permission WHERE project_id = ?", (project_id,))
        conn.executemany(
            """
            INSERT OR IGNORE INTO permission (project_id, permission_type, pattern)
            VALUES (?, ?, ?)
            """,
            [(project_id, "allow", pattern) for pattern in permissions.allow]
            + [(project_id, "deny", pattern) for pattern in permissions.deny],
        )
