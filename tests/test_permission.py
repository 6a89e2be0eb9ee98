from pathlib import Path

import pytest

from tim_state.db.database import StateDB
from tim_state.db.models import Permissions
from tim_state.db.permission import (
    add_permission,
    get_permissions,
    remove_permission,
    set_permissions,
)
from tim_state.db.project import get_or_create_project


def test_add_and_remove_permissions(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")
    project_id = get_or_create_project(db.conn, "repo-a").id

    assert add_permission(db.conn, project_id, "allow", "Bash(git status)") is True
    assert add_permission(db.conn, project_id, "allow", "Bash(git status)") is False
    assert add_permission(db.conn, project_id, "deny", "Bash(rm -rf:*)") is True
    assert get_permissions(db.conn, project_id) == Permissions(
        allow=["Bash(git status)"], deny=["Bash(rm -rf:*)"]
    )

    assert remove_permission(db.conn, project_id, "allow", "Bash(git status)") is True
    assert remove_permission(db.conn, project_id, "allow", "Bash(git status)") is False
    assert get_permissions(db.conn, project_id).allow == []
    db.close()


def test_set_permissions_replaces_whole_set(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")
    project_id = get_or_create_project(db.conn, "repo-a").id
    other_id = get_or_create_project(db.conn, "repo-b").id
    add_permission(db.conn, project_id, "allow", "Bash(ls)")
    add_permission(db.conn, other_id, "allow", "Bash(ls)")

    set_permissions(
        db.conn, project_id, Permissions(allow=["Edit", "Bash(make test)"], deny=["WebFetch"])
    )

    assert get_permissions(db.conn, project_id) == Permissions(
        allow=["Edit", "Bash(make test)"], deny=["WebFetch"]
    )
    assert get_permissions(db.conn, other_id).allow == ["Bash(ls)"]
    db.close()


def test_unknown_permission_type_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")
    project_id = get_or_create_project(db.conn, "repo-a").id

    with pytest.raises(ValueError, match="allow"):
        add_permission(db.conn, project_id, "maybe", "Bash(ls)")
    assert get_permissions(db.conn, 999) == Permissions()
    db.close()
