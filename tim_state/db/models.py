"""Row, input and result models for the state database.

Row models validate ``sqlite3.Row`` objects read back from the tables; the
input models reject unknown fields so typos fail before any SQL runs.
"""

from __future__ import annotations

import sqlite3
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

LockType = Literal["persistent", "pid"]
PermissionType = Literal["allow", "deny"]


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_row(cls, row: sqlite3.Row):
        return cls.model_validate(dict(row))


class Project(_Row):
    id: int
    repository_id: str = Field(min_length=1)
    remote_url: str | None = None
    last_git_root: str | None = None
    external_config_path: str | None = None
    external_tasks_dir: str | None = None
    remote_label: str | None = None
    highest_plan_id: int = Field(default=0, ge=0)
    created_at: str
    updated_at: str


class ProjectDetails(BaseModel):
    """Optional columns supplied when a project is first created."""

    model_config = ConfigDict(extra="forbid")

    remote_url: str | None = None
    last_git_root: str | None = None
    external_config_path: str | None = None
    external_tasks_dir: str | None = None
    remote_label: str | None = None


class Workspace(_Row):
    id: int
    project_id: int
    task_id: str | None = None
    workspace_path: str = Field(min_length=1)
    original_plan_file_path: str | None = None
    branch: str | None = None
    name: str | None = None
    description: str | None = None
    plan_id: str | None = None
    plan_title: str | None = None
    created_at: str
    updated_at: str


class WorkspaceRecord(BaseModel):
    """Input for ``record_workspace``; ``None`` fields keep any stored value."""

    model_config = ConfigDict(extra="forbid")

    project_id: int
    workspace_path: str = Field(min_length=1)
    task_id: str | None = None
    original_plan_file_path: str | None = None
    branch: str | None = None
    name: str | None = None
    description: str | None = None
    plan_id: str | None = None
    plan_title: str | None = None


class LockInfo(BaseModel):
    """Requested lock, as passed to ``acquire_workspace_lock``."""

    model_config = ConfigDict(extra="forbid")

    lock_type: LockType = "persistent"
    pid: int | None = None
    hostname: str = ""
    command: str = ""
    owner: str | None = None


class WorkspaceLock(_Row):
    id: int
    workspace_id: int
    lock_type: LockType
    pid: int | None = None
    started_at: str
    hostname: str
    command: str


class Permissions(BaseModel):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class Assignment(_Row):
    id: int
    project_id: int
    plan_uuid: str
    plan_id: int | None = None
    workspace_id: int | None = None
    claimed_by_user: str | None = None
    status: str | None = None
    assigned_at: str
    updated_at: str


class AssignmentEntry(BaseModel):
    """Assignment in the shape callers of the old assignments file expect."""

    plan_id: int | None = None
    workspace_paths: list[str] = Field(default_factory=list)
    workspace_owners: dict[str, str] | None = None
    users: list[str] = Field(default_factory=list)
    status: str | None = None
    assigned_at: str
    updated_at: str


class ClaimResult(BaseModel):
    assignment: Assignment
    created: bool
    updated_workspace: bool
    updated_user: bool


class ReleaseResult(BaseModel):
    existed: bool
    removed: bool
    cleared_workspace: bool
    cleared_user: bool
