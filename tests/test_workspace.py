from pathlib import Path

import pytest

from tim_state.db.database import StateDB
from tim_state.db.errors import ConstraintViolation
from tim_state.db.models import WorkspaceRecord
from tim_state.db.project import get_or_create_project
from tim_state.db.workspace import (
    add_workspace_issue,
    delete_workspace,
    find_workspaces_by_project_id,
    find_workspaces_by_repository_id,
    find_workspaces_by_task_id,
    get_workspace_by_id,
    get_workspace_by_path,
    get_workspace_issues,
    list_workspaces,
    patch_workspace,
    record_workspace,
    set_workspace_issues,
)


def _db_with_project(tmp_path: Path) -> tuple[StateDB, int]:
    db = StateDB(tmp_path / "tim.db")
    return db, get_or_create_project(db.conn, "repo-a").id


def test_record_workspace_upserts_by_path(tmp_path: Path) -> None:
    db, project_id = _db_with_project(tmp_path)

    first = record_workspace(
        db.conn,
        WorkspaceRecord(
            project_id=project_id,
            workspace_path="/work/a",
            task_id="task-1",
            branch="feature/a",
            plan_id="12",
        ),
    )
    second = record_workspace(
        db.conn,
        WorkspaceRecord(project_id=project_id, workspace_path="/work/a", name="Workspace A"),
    )

    assert second.id == first.id
    assert second.task_id == "task-1"
    assert second.branch == "feature/a"
    assert second.plan_id == "12"
    assert second.name == "Workspace A"
    assert len(list_workspaces(db.conn)) == 1
    db.close()


def test_record_workspace_requires_existing_project(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")

    with pytest.raises(ConstraintViolation):
        record_workspace(db.conn, WorkspaceRecord(project_id=42, workspace_path="/work/a"))
    assert list_workspaces(db.conn) == []
    db.close()


def test_lookups_by_task_project_and_repository(tmp_path: Path) -> None:
    db, project_id = _db_with_project(tmp_path)
    other_id = get_or_create_project(db.conn, "repo-b").id
    for path, project, task in (
        ("/work/a1", project_id, "task-1"),
        ("/work/a2", project_id, "task-2"),
        ("/work/b1", other_id, "task-1"),
    ):
        record_workspace(
            db.conn, WorkspaceRecord(project_id=project, workspace_path=path, task_id=task)
        )

    assert [w.workspace_path for w in find_workspaces_by_task_id(db.conn, "task-1")] == [
        "/work/a1",
        "/work/b1",
    ]
    assert [w.workspace_path for w in find_workspaces_by_project_id(db.conn, project_id)] == [
        "/work/a1",
        "/work/a2",
    ]
    assert [w.workspace_path for w in find_workspaces_by_repository_id(db.conn, "repo-b")] == [
        "/work/b1"
    ]
    assert find_workspaces_by_task_id(db.conn, "missing") == []
    assert get_workspace_by_path(db.conn, "/nowhere") is None
    workspace = get_workspace_by_path(db.conn, "/work/a2")
    assert get_workspace_by_id(db.conn, workspace.id) == workspace
    db.close()


def test_patch_workspace_updates_and_clears_fields(tmp_path: Path) -> None:
    db, project_id = _db_with_project(tmp_path)
    record_workspace(
        db.conn,
        WorkspaceRecord(
            project_id=project_id, workspace_path="/work/a", branch="main", plan_title="Old"
        ),
    )

    patched = patch_workspace(db.conn, "/work/a", plan_title="New", branch=None)

    assert patched.plan_title == "New"
    assert patched.branch is None
    assert patch_workspace(db.conn, "/missing", name="x") is None
    with pytest.raises(ValueError, match="workspace_path"):
        patch_workspace(db.conn, "/work/a", workspace_path="/elsewhere")
    db.close()


def test_issue_links_are_unique_and_replaceable(tmp_path: Path) -> None:
    db, project_id = _db_with_project(tmp_path)
    workspace = record_workspace(
        db.conn, WorkspaceRecord(project_id=project_id, workspace_path="/work/a")
    )

    assert add_workspace_issue(db.conn, workspace.id, "https://example.com/issues/1") is True
    assert add_workspace_issue(db.conn, workspace.id, "https://example.com/issues/1") is False
    set_workspace_issues(
        db.conn,
        workspace.id,
        ["https://example.com/issues/2", "https://example.com/issues/3"],
    )

    assert get_workspace_issues(db.conn, workspace.id) == [
        "https://example.com/issues/2",
        "https://example.com/issues/3",
    ]
    db.close()


def test_delete_workspace_cascades_issues(tmp_path: Path) -> None:
    db, project_id = _db_with_project(tmp_path)
    workspace = record_workspace(
        db.conn, WorkspaceRecord(project_id=project_id, workspace_path="/work/a")
    )
    add_workspace_issue(db.conn, workspace.id, "https://example.com/issues/1")

    assert delete_workspace(db.conn, "/work/a") is True
    assert delete_workspace(db.conn, "/work/a") is False
    count = db.conn.execute("SELECT COUNT(*) FROM workspace_issue").fetchone()[0]
    assert count == 0
    db.close()
