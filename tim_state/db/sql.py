"""SQL helpers shared by the repository modules."""

from __future__ import annotations

import itertools
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

from tim_state.db.errors import ConstraintViolation, StorageBusy

SQL_NOW_ISO_UTC = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_savepoint_ids = itertools.count(1)


def is_busy_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise ConstraintViolation(str(exc)) from exc
    except sqlite3.OperationalError as exc:
        if is_busy_error(exc):
            raise StorageBusy(str(exc)) from exc
        raise


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the body under the database write lock.

    An idle connection starts with ``BEGIN IMMEDIATE`` so the write lock is taken
    up front and concurrent writers queue on the busy timeout instead of failing
    at commit. Inside an outer transaction a savepoint is used instead.
    """

    with _translate_errors():
        if conn.in_transaction:
            savepoint = f"sp_{next(_savepoint_ids)}"
            conn.execute(f"SAVEPOINT {savepoint}")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
