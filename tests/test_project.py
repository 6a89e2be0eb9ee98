import multiprocessing
from pathlib import Path

import pytest

from tim_state.db.database import StateDB
from tim_state.db.models import ProjectDetails
from tim_state.db.project import (
    get_or_create_project,
    get_project,
    get_project_by_id,
    list_projects,
    raise_highest_plan_id,
    reserve_next_plan_id,
    update_project,
)


def _reserve_worker(db_path: str, rounds: int) -> list[int]:
    db = StateDB(db_path)
    reserved: list[int] = []
    try:
        for _ in range(rounds):
            first, last = reserve_next_plan_id(db.conn, "repo-shared", 0, 2)
            reserved.extend(range(first, last + 1))
    finally:
        db.close()
    return reserved


def _create_worker(db_path: str) -> int:
    db = StateDB(db_path)
    try:
        return get_or_create_project(db.conn, "repo-shared").id
    finally:
        db.close()


def test_get_or_create_then_reserve_ids(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")

    project = get_or_create_project(db.conn, "repo-a")
    assert project.highest_plan_id == 0
    assert reserve_next_plan_id(db.conn, "repo-a", 0, 3) == (1, 3)
    assert reserve_next_plan_id(db.conn, "repo-a", 0, 1) == (4, 4)
    assert get_project(db.conn, "repo-a").highest_plan_id == 4
    db.close()


def test_get_or_create_is_idempotent_and_keeps_details(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")

    created = get_or_create_project(
        db.conn, "repo-a", ProjectDetails(remote_url="git@example.com:org/repo-a.git")
    )
    again = get_or_create_project(db.conn, "repo-a", ProjectDetails(remote_url="other"))

    assert again.id == created.id
    assert again.remote_url == "git@example.com:org/repo-a.git"
    assert len(list_projects(db.conn)) == 1
    db.close()


def test_reserve_respects_local_max_observed(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")

    assert reserve_next_plan_id(db.conn, "repo-a", 10, 1) == (11, 11)
    assert reserve_next_plan_id(db.conn, "repo-a", 5, 2) == (12, 13)
    db.close()


def test_reserve_rejects_non_positive_count(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")

    with pytest.raises(ValueError, match="count"):
        reserve_next_plan_id(db.conn, "repo-a", 0, 0)
    assert get_project(db.conn, "repo-a") is None
    db.close()


def test_update_project_changes_only_supplied_fields(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")
    project = get_or_create_project(
        db.conn, "repo-a", ProjectDetails(remote_url="url", remote_label="origin")
    )

    updated = update_project(db.conn, project.id, last_git_root="/src/repo-a")

    assert updated is not None
    assert updated.last_git_root == "/src/repo-a"
    assert updated.remote_url == "url"
    assert updated.remote_label == "origin"
    assert update_project(db.conn, 999, remote_label="x") is None
    with pytest.raises(ValueError, match="highest_plan_id"):
        update_project(db.conn, project.id, highest_plan_id=50)
    with pytest.raises(ValueError, match="project_id"):
        update_project(db.conn, project.id, project_id=5)
    db.close()


def test_raise_highest_plan_id_never_lowers(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "tim.db")
    project = get_or_create_project(db.conn, "repo-a")

    raise_highest_plan_id(db.conn, project.id, 20)
    raise_highest_plan_id(db.conn, project.id, 5)

    assert get_project_by_id(db.conn, project.id).highest_plan_id == 20
    assert reserve_next_plan_id(db.conn, "repo-a") == (21, 21)
    db.close()


def test_concurrent_processes_never_share_plan_ids(tmp_path: Path) -> None:
    db_path = tmp_path / "tim.db"
    StateDB(db_path).close()

    ctx = multiprocessing.get_context("spawn")
    with ctx.Pool(processes=4) as pool:
        results = pool.starmap(_reserve_worker, [(str(db_path), 10)] * 4)

    reserved = [plan_id for chunk in results for plan_id in chunk]
    assert len(reserved) == 80
    assert sorted(reserved) == list(range(1, 81))


def test_concurrent_get_or_create_yields_one_project(tmp_path: Path) -> None:
    db_path = tmp_path / "tim.db"
    StateDB(db_path).close()

    ctx = multiprocessing.get_context("spawn")
    with ctx.Pool(processes=4) as pool:
        project_ids = pool.map(_create_worker, [str(db_path)] * 8)

    assert len(set(project_ids)) == 1
    db = StateDB(db_path)
    assert len(list_projects(db.conn)) == 1
    db.close()
