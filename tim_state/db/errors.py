"""Error taxonomy for the state database."""

from __future__ import annotations

from typing import Any


class StorageError(RuntimeError):
    reason_code = "storage_error"

    def __init__(self, message: str, reason_code: str | None = None) -> None:
        super().__init__(message)
        if reason_code:
            self.reason_code = reason_code


class StorageUnavailable(StorageError):
    """The database file could not be created or opened."""

    reason_code = "storage_unavailable"


class MigrationFailed(StorageUnavailable):
    """A schema migration failed and was rolled back."""

    reason_code = "migration_failed"

    def __init__(self, message: str, version: int) -> None:
        super().__init__(message)
        self.version = version


class StorageBusy(StorageError):
    """The busy wait was exhausted while another process held the write lock."""

    reason_code = "storage_busy"


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key invariant would have been violated."""

    reason_code = "constraint_violation"


class AlreadyLocked(StorageError):
    reason_code = "already_locked"

    def __init__(self, workspace_id: int, lock: Any) -> None:
        super().__init__(f"workspace {workspace_id} is already locked")
        self.workspace_id = workspace_id
        self.lock = lock
