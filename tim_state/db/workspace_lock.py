"""Advisory per-workspace execution locks.

The ``workspace_lock`` table is a convention honored by cooperating tim
processes, not an OS-level mutex: anything with write access to the database
can delete a row. The unique ``workspace_id`` column is what guarantees at most
one holder per workspace.

A ``pid`` lock is stale once its process is gone or it is older than
``STALE_LOCK_TIMEOUT`` (pids get reused). ``persistent`` locks never go stale.
Stale rows are reclaimed by whichever acquire or inspect call notices them.
"""

from __future__ import annotations

import logging
import os
import socket
import sqlite3
import sys
from datetime import datetime, timedelta, timezone

from tim_state.db.errors import AlreadyLocked
from tim_state.db.models import LockInfo, WorkspaceLock
from tim_state.db.sql import SQL_NOW_ISO_UTC, write_transaction

logger = logging.getLogger(__name__)

STALE_LOCK_TIMEOUT = timedelta(hours=24)


def is_process_alive(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    if sys.platform == "win32":
        # Signal 0 terminates the target on Windows; only lock age applies there.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    return True


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_lock_stale(lock: WorkspaceLock, now: datetime | None = None) -> bool:
    if lock.lock_type == "persistent":
        return False

    started_at = _parse_timestamp(lock.started_at)
    if started_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    if now - started_at > STALE_LOCK_TIMEOUT:
        return True
    return not is_process_alive(lock.pid)


def get_workspace_lock(conn: sqlite3.Connection, workspace_id: int) -> WorkspaceLock | None:
    """Read the lock row as stored, without any staleness check."""

    row = conn.execute(
        "SELECT * FROM workspace_lock WHERE workspace_id = ?", (workspace_id,)
    ).fetchone()
    return WorkspaceLock.from_row(row) if row is not None else None


def release_specific_workspace_lock(
    conn: sqlite3.Connection, workspace_id: int, pid: int | None, started_at: str
) -> bool:
    """Delete the lock only if it is still the exact row the caller looked at."""

    with write_transaction(conn):
        cur = conn.execute(
            """
            DELETE FROM workspace_lock
            WHERE workspace_id = ? AND pid IS ? AND started_at = ?
            """,
            (workspace_id, pid, started_at),
        )
    return int(cur.rowcount or 0) > 0


def _reclaim_if_stale(conn: sqlite3.Connection, lock: WorkspaceLock) -> bool:
    if not is_lock_stale(lock):
        return False
    removed = release_specific_workspace_lock(conn, lock.workspace_id, lock.pid, lock.started_at)
    if removed:
        logger.warning(
            "Removed stale %s lock on workspace %s (pid=%s, started_at=%s)",
            lock.lock_type,
            lock.workspace_id,
            lock.pid,
            lock.started_at,
        )
    return removed


def acquire_workspace_lock(
    conn: sqlite3.Connection, workspace_id: int, lock_info: LockInfo
) -> WorkspaceLock:
    """Take the lock for ``workspace_id`` or raise ``AlreadyLocked``.

    A stale holder is removed inside the same write transaction, so two
    processes reclaiming the same dead lock cannot both succeed.
    """

    pid = lock_info.pid if lock_info.pid is not None else os.getpid()
    hostname = lock_info.hostname or socket.gethostname()
    command = lock_info.command
    if lock_info.owner:
        command = f"{command} (owner: {lock_info.owner})"

    with write_transaction(conn):
        existing = get_workspace_lock(conn, workspace_id)
        if existing is not None:
            if not _reclaim_if_stale(conn, existing):
                raise AlreadyLocked(workspace_id, existing)
        conn.execute(
            f"""
            INSERT INTO workspace_lock (workspace_id, lock_type, pid, started_at, hostname, command)
            VALUES (?, ?, ?, {SQL_NOW_ISO_UTC}, ?, ?)
            """,
            (workspace_id, lock_info.lock_type, pid, hostname, command),
        )
        created = get_workspace_lock(conn, workspace_id)
    if created is None:
        raise RuntimeError(f"workspace_lock_insert_failed:{workspace_id}")
    return created


def release_workspace_lock(
    conn: sqlite3.Connection,
    workspace_id: int,
    *,
    pid: int | None = None,
    force: bool = False,
) -> bool:
    """Remove the lock row, returning whether one was deleted.

    With ``pid`` given, a ``pid`` lock held by a different live process is
    left in place unless ``force`` is set.
    """

    with write_transaction(conn):
        existing = get_workspace_lock(conn, workspace_id)
        if existing is None:
            return False
        if (
            not force
            and pid is not None
            and existing.lock_type == "pid"
            and existing.pid != pid
            and is_process_alive(existing.pid)
        ):
            return False
        cur = conn.execute("DELETE FROM workspace_lock WHERE id = ?", (existing.id,))
    return int(cur.rowcount or 0) > 0


def inspect_workspace_lock(conn: sqlite3.Connection, workspace_id: int) -> WorkspaceLock | None:
    """Return the live lock for ``workspace_id``, reclaiming a stale one first."""

    existing = get_workspace_lock(conn, workspace_id)
    if existing is None:
        return None
    if _reclaim_if_stale(conn, existing):
        return None
    return get_workspace_lock(conn, workspace_id)


def is_workspace_locked(conn: sqlite3.Connection, workspace_id: int) -> bool:
    return inspect_workspace_lock(conn, workspace_id) is not None


def clean_stale_locks(conn: sqlite3.Connection) -> int:
    rows = conn.execute("SELECT * FROM workspace_lock WHERE lock_type = 'pid'").fetchall()
    removed = 0
    for row in rows:
        if _reclaim_if_stale(conn, WorkspaceLock.from_row(row)):
            removed += 1
    return removed
