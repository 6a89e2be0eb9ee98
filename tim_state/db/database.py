"""SQLite handle for the shared tim state database."""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import weakref
from pathlib import Path

from tim_state.db.errors import StorageUnavailable
from tim_state.db.json_import import import_if_needed
from tim_state.db.migrations import run_migrations
from tim_state.shared.settings import DEFAULT_BUSY_TIMEOUT_MS, StorageSettings, get_storage_settings

logger = logging.getLogger(__name__)


class StateDB:
    """One open connection to the state database, migrated and ready for use.

    Until the legacy JSON files under ``legacy_root`` (the database directory by
    default) have been imported, every open attempts the import before the
    constructor returns. A completed import or an existing project ends that.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        legacy_root: Path | str | None = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = Path(db_path)
        self.legacy_root = Path(legacy_root) if legacy_root is not None else self.db_path.parent
        self.busy_timeout_ms = int(busy_timeout_ms)
        self.created = not self.db_path.exists()
        self.opened_pid = os.getpid()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
        except (OSError, sqlite3.Error) as exc:
            raise StorageUnavailable(f"cannot open state database at {self.db_path}: {exc}") from exc

        self.conn.row_factory = sqlite3.Row
        try:
            self._configure_connection()
            self.schema_version = run_migrations(self.conn)
            if self.created:
                logger.info("Created state database at %s", self.db_path)
            import_if_needed(self.conn, self.legacy_root)
        except sqlite3.Error as exc:
            self.conn.close()
            raise StorageUnavailable(f"cannot initialize state database at {self.db_path}: {exc}") from exc
        except BaseException:
            self.conn.close()
            raise

    def _configure_connection(self) -> None:
        """Apply local-first SQLite settings for durability and concurrent reads."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def close(self) -> None:
        self.conn.close()


def open_database(
    db_path: Path | str | None = None,
    *,
    legacy_root: Path | str | None = None,
    settings: StorageSettings | None = None,
) -> StateDB:
    """Open a private handle; without a path the configured location is used."""

    if db_path is None:
        settings = settings or get_storage_settings()
        db_path = settings.sqlite_path
        if legacy_root is None:
            legacy_root = settings.legacy_root
    busy_timeout_ms = settings.busy_timeout_ms if settings else DEFAULT_BUSY_TIMEOUT_MS
    return StateDB(db_path, legacy_root=legacy_root, busy_timeout_ms=busy_timeout_ms)


_shared_lock = threading.Lock()
_local = threading.local()
_shared_handles: weakref.WeakSet[StateDB] = weakref.WeakSet()
_generation = 0
_override: tuple[Path, Path | None] | None = None


def _open_shared() -> StateDB:
    if _override is not None:
        db_path, legacy_root = _override
        db = StateDB(db_path, legacy_root=legacy_root)
    else:
        db = open_database()
    _local.db = db
    _local.generation = _generation
    _shared_handles.add(db)
    return db


def _close_shared() -> None:
    pid = os.getpid()
    for db in list(_shared_handles):
        if db.opened_pid == pid:
            db.close()
    _shared_handles.clear()


def get_database() -> StateDB:
    """Return the calling thread's handle on the shared database.

    Every thread, and every forked child, gets its own connection so one
    caller's transaction never swallows another's statements. Opens are
    serialized, so migration and import run once.
    """

    db = getattr(_local, "db", None)
    if (
        db is not None
        and db.opened_pid == os.getpid()
        and getattr(_local, "generation", None) == _generation
    ):
        return db
    with _shared_lock:
        return _open_shared()


def set_database_for_testing(
    db_path: Path | str, *, legacy_root: Path | str | None = None
) -> StateDB:
    """Point every thread's handle at ``db_path``; returns the caller's handle."""

    global _generation, _override
    with _shared_lock:
        _close_shared()
        _generation += 1
        _override = (Path(db_path), Path(legacy_root) if legacy_root is not None else None)
        return _open_shared()


def close_database_for_testing() -> None:
    global _generation, _override
    with _shared_lock:
        _close_shared()
        _generation += 1
        _override = None
