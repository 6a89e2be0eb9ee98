"""Plan claims per project.

Only current state is kept: releasing the last claimant deletes the row.
"""

from __future__ import annotations

import math
import sqlite3

from tim_state.db.models import Assignment, AssignmentEntry, ClaimResult, ReleaseResult
from tim_state.db.sql import SQL_NOW_ISO_UTC, write_transaction

DEFAULT_CLAIM_STATUS = "in_progress"


def get_assignment(
    conn: sqlite3.Connection, project_id: int, plan_uuid: str
) -> Assignment | None:
    row = conn.execute(
        "SELECT * FROM assignment WHERE project_id = ? AND plan_uuid = ?",
        (project_id, plan_uuid),
    ).fetchone()
    return Assignment.from_row(row) if row is not None else None


def list_assignments_by_project(conn: sqlite3.Connection, project_id: int) -> list[Assignment]:
    rows = conn.execute(
        "SELECT * FROM assignment WHERE project_id = ? ORDER BY assigned_at ASC, id ASC",
        (project_id,),
    ).fetchall()
    return [Assignment.from_row(row) for row in rows]


def claim_assignment(
    conn: sqlite3.Connection,
    project_id: int,
    plan_uuid: str,
    plan_id: int | None,
    workspace_id: int | None = None,
    user: str | None = None,
) -> ClaimResult:
    """Create or take over the claim on ``plan_uuid``.

    ``created`` distinguishes a new claim from an update of an existing one;
    an existing row keeps its status.
    """

    with write_transaction(conn):
        existing = get_assignment(conn, project_id, plan_uuid)
        conn.execute(
            f"""
            INSERT INTO assignment (
              project_id,
              plan_uuid,
              plan_id,
              workspace_id,
              claimed_by_user,
              status,
              assigned_at,
              updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, {SQL_NOW_ISO_UTC}, {SQL_NOW_ISO_UTC})
            ON CONFLICT(project_id, plan_uuid) DO UPDATE SET
              plan_id = excluded.plan_id,
              workspace_id = excluded.workspace_id,
              claimed_by_user = excluded.claimed_by_user,
              updated_at = {SQL_NOW_ISO_UTC}
            """,
            (project_id, plan_uuid, plan_id, workspace_id, user, DEFAULT_CLAIM_STATUS),
        )
        assignment = get_assignment(conn, project_id, plan_uuid)
    if assignment is None:
        raise RuntimeError(
            f"assignment_claim_failed:project_id={project_id},plan_uuid={plan_uuid}"
        )

    created = existing is None
    return ClaimResult(
        assignment=assignment,
        created=created,
        updated_workspace=not created and existing.workspace_id != assignment.workspace_id,
        updated_user=not created and existing.claimed_by_user != assignment.claimed_by_user,
    )


def release_assignment(
    conn: sqlite3.Connection,
    project_id: int,
    plan_uuid: str,
    workspace_path: str | None = None,
    user: str | None = None,
) -> ReleaseResult:
    """Drop a claimant from the assignment, deleting it once nobody is left.

    With neither ``workspace_path`` nor ``user`` the row is removed outright.
    The workspace pointer is cleared only when ``workspace_path`` names the
    stored workspace; the user is cleared only when it matches and the
    workspace side was cleared too, absent, or not asked about.
    """

    with write_transaction(conn):
        existing = get_assignment(conn, project_id, plan_uuid)
        if existing is None:
            return ReleaseResult(
                existed=False, removed=False, cleared_workspace=False, cleared_user=False
            )

        if workspace_path is None and user is None:
            _delete(conn, project_id, plan_uuid)
            return ReleaseResult(
                existed=True,
                removed=True,
                cleared_workspace=existing.workspace_id is not None,
                cleared_user=existing.claimed_by_user is not None,
            )

        next_workspace_id = existing.workspace_id
        cleared_workspace = False
        if workspace_path is not None:
            row = conn.execute(
                "SELECT id FROM workspace WHERE workspace_path = ?", (workspace_path,)
            ).fetchone()
            if row is not None and existing.workspace_id == int(row["id"]):
                next_workspace_id = None
                cleared_workspace = True

        next_user = existing.claimed_by_user
        cleared_user = False
        can_clear_user = (
            workspace_path is None or cleared_workspace or existing.workspace_id is None
        )
        if can_clear_user and user is not None and existing.claimed_by_user == user:
            next_user = None
            cleared_user = True

        if not cleared_workspace and not cleared_user:
            return ReleaseResult(
                existed=True, removed=False, cleared_workspace=False, cleared_user=False
            )

        if next_workspace_id is None and next_user is None:
            _delete(conn, project_id, plan_uuid)
            return ReleaseResult(
                existed=True,
                removed=True,
                cleared_workspace=cleared_workspace,
                cleared_user=cleared_user,
            )

        conn.execute(
            f"""
            UPDATE assignment
            SET workspace_id = ?,
                claimed_by_user = ?,
                updated_at = {SQL_NOW_ISO_UTC}
            WHERE project_id = ? AND plan_uuid = ?
            """,
            (next_workspace_id, next_user, project_id, plan_uuid),
        )
        return ReleaseResult(
            existed=True,
            removed=False,
            cleared_workspace=cleared_workspace,
            cleared_user=cleared_user,
        )


def _delete(conn: sqlite3.Connection, project_id: int, plan_uuid: str) -> int:
    cur = conn.execute(
        "DELETE FROM assignment WHERE project_id = ? AND plan_uuid = ?",
        (project_id, plan_uuid),
    )
    return int(cur.rowcount or 0)


def remove_assignment(conn: sqlite3.Connection, project_id: int, plan_uuid: str) -> bool:
    with write_transaction(conn):
        return _delete(conn, project_id, plan_uuid) > 0


def import_assignment(
    conn: sqlite3.Connection,
    project_id: int,
    plan_uuid: str,
    *,
    plan_id: int | None,
    workspace_id: int | None,
    user: str | None,
    status: str | None,
    assigned_at: str,
    updated_at: str,
) -> bool:
    """Insert a legacy assignment verbatim; an existing row for the plan wins."""

    with write_transaction(conn):
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO assignment (
              project_id,
              plan_uuid,
              plan_id,
              workspace_id,
              claimed_by_user,
              status,
              assigned_at,
              updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (project_id, plan_uuid, plan_id, workspace_id, user, status, assigned_at, updated_at),
        )
    return int(cur.rowcount or 0) > 0


def get_assignment_entries_by_project(
    conn: sqlite3.Connection, project_id: int
) -> dict[str, AssignmentEntry]:
    """Assignments keyed by plan UUID, in the list-valued shape of the old file."""

    rows = conn.execute(
        """
        SELECT
          a.plan_uuid,
          a.plan_id,
          a.claimed_by_user,
          a.status,
          a.assigned_at,
          a.updated_at,
          w.workspace_path
        FROM assignment a
        LEFT JOIN workspace w ON w.id = a.workspace_id
        WHERE a.project_id = ?
        ORDER BY a.assigned_at ASC, a.id ASC
        """,
        (project_id,),
    ).fetchall()
    entries: dict[str, AssignmentEntry] = {}
    for row in rows:
        workspace_path = row["workspace_path"]
        user = row["claimed_by_user"]
        entries[str(row["plan_uuid"])] = AssignmentEntry(
            plan_id=row["plan_id"],
            workspace_paths=[workspace_path] if workspace_path else [],
            workspace_owners={workspace_path: user} if workspace_path and user else None,
            users=[user] if user else [],
            status=row["status"],
            assigned_at=row["assigned_at"],
            updated_at=row["updated_at"],
        )
    return entries


def clean_stale_assignments(
    conn: sqlite3.Connection, project_id: int, stale_threshold_days: float
) -> int:
    """Delete the project's assignments not updated within the threshold."""

    if not math.isfinite(stale_threshold_days) or stale_threshold_days < 0:
        raise ValueError(
            "stale_threshold_days must be a non-negative number, "
            f"received: {stale_threshold_days}"
        )
    modifier = f"-{math.floor(stale_threshold_days)} days"
    with write_transaction(conn):
        cur = conn.execute(
            """
            DELETE FROM assignment
            WHERE project_id = ?
              AND updated_at < strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
            """,
            (project_id, modifier),
        )
    return int(cur.rowcount or 0)
