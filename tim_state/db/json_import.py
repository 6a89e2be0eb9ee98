"""One-time import of the legacy JSON state files.

Legacy layout under the config root::

    shared/<repositoryId>/assignments.json
    shared/<repositoryId>/permissions.json
    repositories/<repositoryId>/metadata.json
    workspaces.json

Reading is defensive: a missing or invalid file (or a single invalid entry)
is logged and skipped. ``build_import_plan`` turns the parsed files into row
sets without touching the database; ``apply_import_plan`` writes them. The
legacy files are never modified.

Assignments used to list several workspaces and users per plan. Each one is
collapsed to the most recently updated workspace and that workspace's owner;
the other workspaces lose their claim.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from tim_state.db.assignment import import_assignment
from tim_state.db.models import Permissions, ProjectDetails, WorkspaceRecord
from tim_state.db.permission import set_permissions
from tim_state.db.project import get_or_create_project, raise_highest_plan_id, update_project
from tim_state.db.sql import write_transaction
from tim_state.db.workspace import get_workspace_by_path, record_workspace, set_workspace_issues

logger = logging.getLogger(__name__)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
PlanStatus = Literal["pending", "in_progress", "done", "cancelled", "deferred"]


def _parse_datetime(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class _LegacyModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class LegacyAssignmentEntry(_LegacyModel):
    plan_id: int | None = None
    workspace_paths: list[NonEmptyStr] = Field(default_factory=list)
    workspace_owners: dict[NonEmptyStr, NonEmptyStr] | None = None
    users: list[NonEmptyStr] = Field(default_factory=list)
    status: PlanStatus | None = None
    assigned_at: str
    updated_at: str

    @field_validator("plan_id", mode="before")
    @classmethod
    def _positive_plan_id(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str) and value.isdigit() and not value.startswith("0"):
            return int(value)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        raise ValueError("planId must be a positive integer")

    @field_validator("assigned_at", "updated_at")
    @classmethod
    def _iso_datetime(cls, value: str) -> str:
        if _parse_datetime(value) is None:
            raise ValueError("expected an ISO-8601 timestamp")
        return value


class LegacyAssignmentsFile(_LegacyModel):
    repository_id: NonEmptyStr
    repository_remote_url: str | None = None
    version: int = Field(default=0, ge=0)
    assignments: dict[str, Any] = Field(default_factory=dict)
    highest_plan_id: int | None = Field(default=None, ge=0)


class LegacyPermissionLists(_LegacyModel):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class LegacyPermissionsFile(_LegacyModel):
    repository_id: NonEmptyStr
    version: int = Field(default=0, ge=0)
    permissions: LegacyPermissionLists


class LegacyWorkspaceEntry(_LegacyModel):
    task_id: NonEmptyStr
    workspace_path: NonEmptyStr
    created_at: NonEmptyStr
    repository_id: str | None = None
    original_plan_file_path: str | None = None
    branch: str | None = None
    name: str | None = None
    description: str | None = None
    plan_id: str | None = None
    plan_title: str | None = None
    issue_urls: list[str] = Field(default_factory=list)
    updated_at: str | None = None

    @field_validator("plan_id", mode="before")
    @classmethod
    def _plan_id_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value if isinstance(value, str) else None

    # A malformed optional field is dropped; the workspace itself is kept.
    @field_validator(
        "repository_id",
        "original_plan_file_path",
        "branch",
        "name",
        "description",
        "plan_title",
        "updated_at",
        mode="before",
    )
    @classmethod
    def _drop_non_text(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @field_validator("issue_urls", mode="before")
    @classmethod
    def _text_urls_only(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [url for url in value if isinstance(url, str) and url]


class LegacyRepositoryMetadata(_LegacyModel):
    repository_name: NonEmptyStr
    created_at: NonEmptyStr
    updated_at: NonEmptyStr
    remote_label: str | None = None
    last_git_root: str | None = None
    external_config_path: str | None = None
    external_tasks_dir: str | None = None


@dataclass
class LegacyRepository:
    assignments: LegacyAssignmentsFile | None = None
    assignment_entries: dict[str, LegacyAssignmentEntry] = field(default_factory=dict)
    permissions: LegacyPermissionsFile | None = None
    metadata: LegacyRepositoryMetadata | None = None


@dataclass
class LegacyData:
    repositories: dict[str, LegacyRepository] = field(default_factory=dict)
    workspaces: dict[str, LegacyWorkspaceEntry] = field(default_factory=dict)


def _read_json(path: Path) -> Any | None:
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Skipping unreadable legacy file %s: %s", path, exc)
        return None


def _load_model(path: Path, model: type[BaseModel]) -> Any | None:
    raw = _read_json(path)
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Skipping invalid legacy file %s (%s validation errors)", path, exc.error_count()
        )
        return None


def _valid_assignment_entries(
    path: Path, assignments: dict[str, Any]
) -> dict[str, LegacyAssignmentEntry]:
    entries: dict[str, LegacyAssignmentEntry] = {}
    for plan_uuid, raw_entry in assignments.items():
        try:
            entries[plan_uuid] = LegacyAssignmentEntry.model_validate(raw_entry)
        except ValidationError as exc:
            logger.debug("Skipping legacy assignment %s in %s: %s", plan_uuid, path, exc)
    return entries


def _load_workspaces(path: Path) -> dict[str, LegacyWorkspaceEntry]:
    raw = _read_json(path)
    if not isinstance(raw, dict):
        return {}
    workspaces: dict[str, LegacyWorkspaceEntry] = {}
    for workspace_path, raw_entry in raw.items():
        try:
            entry = LegacyWorkspaceEntry.model_validate(raw_entry)
        except ValidationError:
            logger.debug("Skipping invalid legacy workspace entry %s", workspace_path)
            continue
        if entry.workspace_path != workspace_path:
            logger.debug("Skipping legacy workspace entry %s with mismatched path", workspace_path)
            continue
        workspaces[workspace_path] = entry
    return workspaces


def _child_dirs(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(entry for entry in root.iterdir() if entry.is_dir())


def collect_legacy_data(legacy_root: Path | str) -> LegacyData:
    root = Path(legacy_root)
    data = LegacyData()

    for repository_dir in _child_dirs(root / "shared"):
        assignments_path = repository_dir / "assignments.json"
        assignments = _load_model(assignments_path, LegacyAssignmentsFile)
        permissions = _load_model(repository_dir / "permissions.json", LegacyPermissionsFile)
        if assignments is None and permissions is None:
            continue
        data.repositories[repository_dir.name] = LegacyRepository(
            assignments=assignments,
            assignment_entries=(
                _valid_assignment_entries(assignments_path, assignments.assignments)
                if assignments is not None
                else {}
            ),
            permissions=permissions,
        )

    data.workspaces = _load_workspaces(root / "workspaces.json")

    for repository_dir in _child_dirs(root / "repositories"):
        metadata = _load_model(repository_dir / "metadata.json", LegacyRepositoryMetadata)
        if metadata is None:
            continue
        repository = data.repositories.setdefault(repository_dir.name, LegacyRepository())
        repository.metadata = metadata

    return data


@dataclass
class ProjectImport:
    repository_id: str
    details: ProjectDetails
    highest_plan_id: int | None = None
    permissions: Permissions | None = None


@dataclass
class WorkspaceImport:
    repository_id: str
    workspace_path: str
    task_id: str
    original_plan_file_path: str | None = None
    branch: str | None = None
    name: str | None = None
    description: str | None = None
    plan_id: str | None = None
    plan_title: str | None = None
    issue_urls: list[str] = field(default_factory=list)


@dataclass
class AssignmentImport:
    repository_id: str
    plan_uuid: str
    plan_id: int | None
    workspace_path: str | None
    user: str | None
    status: str | None
    assigned_at: str
    updated_at: str


@dataclass
class ImportPlan:
    projects: list[ProjectImport] = field(default_factory=list)
    workspaces: list[WorkspaceImport] = field(default_factory=list)
    assignments: list[AssignmentImport] = field(default_factory=list)


@dataclass
class ImportSummary:
    projects: int = 0
    workspaces: int = 0
    assignments: int = 0
    permissions: int = 0


def _project_details(repository: LegacyRepository | None) -> ProjectDetails:
    if repository is None:
        return ProjectDetails()
    metadata = repository.metadata
    return ProjectDetails(
        remote_url=repository.assignments.repository_remote_url if repository.assignments else None,
        last_git_root=metadata.last_git_root if metadata else None,
        external_config_path=metadata.external_config_path if metadata else None,
        external_tasks_dir=metadata.external_tasks_dir if metadata else None,
        remote_label=metadata.remote_label if metadata else None,
    )


def _workspace_timestamp(workspace: LegacyWorkspaceEntry | None) -> float:
    if workspace is None:
        return float("-inf")
    for value in (workspace.updated_at, workspace.created_at):
        parsed = _parse_datetime(value) if value else None
        if parsed is not None:
            return parsed.timestamp()
    return float("-inf")


def pick_most_recent_workspace_path(
    workspace_paths: list[str], workspaces: dict[str, LegacyWorkspaceEntry]
) -> str | None:
    """Most recently updated path; the first listed path wins ties and unknowns."""

    if not workspace_paths:
        return None
    best_path = workspace_paths[0]
    best_timestamp = float("-inf")
    for workspace_path in workspace_paths:
        timestamp = _workspace_timestamp(workspaces.get(workspace_path))
        if timestamp > best_timestamp:
            best_path = workspace_path
            best_timestamp = timestamp
    return best_path


def build_import_plan(data: LegacyData) -> ImportPlan:
    """Map parsed legacy files to the rows to insert. Touches no database."""

    plan = ImportPlan()
    projects: dict[str, ProjectImport] = {}

    def project_for(repository_id: str) -> ProjectImport:
        if repository_id not in projects:
            repository = data.repositories.get(repository_id)
            projects[repository_id] = ProjectImport(
                repository_id=repository_id, details=_project_details(repository)
            )
            plan.projects.append(projects[repository_id])
        return projects[repository_id]

    for workspace_path, workspace in data.workspaces.items():
        repository_id = (workspace.repository_id or "").strip()
        if not repository_id:
            continue
        project_for(repository_id)
        plan.workspaces.append(
            WorkspaceImport(
                repository_id=repository_id,
                workspace_path=workspace_path,
                task_id=workspace.task_id,
                original_plan_file_path=workspace.original_plan_file_path,
                branch=workspace.branch,
                name=workspace.name,
                description=workspace.description,
                plan_id=workspace.plan_id,
                plan_title=workspace.plan_title,
                issue_urls=list(workspace.issue_urls),
            )
        )

    for repository_id, repository in data.repositories.items():
        project = project_for(repository_id)
        if repository.permissions is not None:
            project.permissions = Permissions(
                allow=list(repository.permissions.permissions.allow),
                deny=list(repository.permissions.permissions.deny),
            )
        if repository.assignments is None:
            continue
        project.highest_plan_id = repository.assignments.highest_plan_id

        for plan_uuid, entry in repository.assignment_entries.items():
            workspace_path = pick_most_recent_workspace_path(entry.workspace_paths, data.workspaces)
            owner = (entry.workspace_owners or {}).get(workspace_path) if workspace_path else None
            user = owner or (entry.users[0] if entry.users else None)
            if workspace_path is None and user is None:
                logger.debug("Skipping legacy assignment %s with no claimant", plan_uuid)
                continue
            plan.assignments.append(
                AssignmentImport(
                    repository_id=repository_id,
                    plan_uuid=plan_uuid,
                    plan_id=entry.plan_id,
                    workspace_path=workspace_path,
                    user=user,
                    status=entry.status,
                    assigned_at=entry.assigned_at,
                    updated_at=entry.updated_at,
                )
            )

    return plan


def apply_import_plan(conn: sqlite3.Connection, plan: ImportPlan) -> ImportSummary:
    """Write the planned rows inside one transaction. Re-applying adds no duplicates."""

    summary = ImportSummary()
    with write_transaction(conn):
        project_ids: dict[str, int] = {}
        for item in plan.projects:
            project = get_or_create_project(conn, item.repository_id, item.details)
            project_ids[item.repository_id] = project.id
            summary.projects += 1

            changed = {
                key: value
                for key, value in item.details.model_dump().items()
                if value is not None and getattr(project, key) != value
            }
            if changed:
                update_project(conn, project.id, **changed)
            if item.highest_plan_id is not None:
                raise_highest_plan_id(conn, project.id, item.highest_plan_id)
            if item.permissions is not None:
                set_permissions(conn, project.id, item.permissions)
                summary.permissions += len(item.permissions.allow) + len(item.permissions.deny)

        workspace_ids: dict[str, int] = {}
        for item in plan.workspaces:
            workspace = record_workspace(
                conn,
                WorkspaceRecord(
                    project_id=project_ids[item.repository_id],
                    workspace_path=item.workspace_path,
                    task_id=item.task_id,
                    original_plan_file_path=item.original_plan_file_path,
                    branch=item.branch,
                    name=item.name,
                    description=item.description,
                    plan_id=item.plan_id,
                    plan_title=item.plan_title,
                ),
            )
            workspace_ids[item.workspace_path] = workspace.id
            if item.issue_urls:
                set_workspace_issues(conn, workspace.id, item.issue_urls)
            summary.workspaces += 1

        for item in plan.assignments:
            workspace_id = None
            if item.workspace_path is not None:
                workspace_id = workspace_ids.get(item.workspace_path)
                if workspace_id is None:
                    existing = get_workspace_by_path(conn, item.workspace_path)
                    workspace_id = existing.id if existing is not None else None
            if workspace_id is None and item.user is None:
                logger.debug(
                    "Skipping legacy assignment %s: workspace %s is unknown",
                    item.plan_uuid,
                    item.workspace_path,
                )
                continue
            if import_assignment(
                conn,
                project_ids[item.repository_id],
                item.plan_uuid,
                plan_id=item.plan_id,
                workspace_id=workspace_id,
                user=item.user,
                status=item.status,
                assigned_at=item.assigned_at,
                updated_at=item.updated_at,
            ):
                summary.assignments += 1

    return summary


def should_run_import(conn: sqlite3.Connection) -> bool:
    row = conn.execute("SELECT import_completed FROM schema_version").fetchone()
    if row is None or int(row[0]) != 0:
        return False
    return conn.execute("SELECT 1 FROM project LIMIT 1").fetchone() is None


def mark_import_completed(conn: sqlite3.Connection) -> None:
    with write_transaction(conn):
        conn.execute("UPDATE schema_version SET import_completed = 1")


def import_if_needed(
    conn: sqlite3.Connection, legacy_root: Path | str, *, force: bool = False
) -> bool:
    """Run the legacy import unless it already happened; return whether it ran.

    The guard is re-checked under the write lock, so processes creating the
    database at the same moment import at most once.
    """

    if not force and not should_run_import(conn):
        return False

    plan = build_import_plan(collect_legacy_data(legacy_root))
    with write_transaction(conn):
        if not force and not should_run_import(conn):
            return False
        summary = apply_import_plan(conn, plan)
        mark_import_completed(conn)

    logger.info(
        "Imported legacy JSON state from %s: %s projects, %s workspaces, %s assignments, "
        "%s permissions",
        legacy_root,
        summary.projects,
        summary.workspaces,
        summary.assignments,
        summary.permissions,
    )
    return True
