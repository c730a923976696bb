"""Tests for per-project team definitions."""

import tempfile
from pathlib import Path

import pytest

from sprintboard.core import projects as projects_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core import teams as teams_mod
from sprintboard.core import users as users_mod
from sprintboard.db.engine import init_db
from sprintboard.errors import ForbiddenError, NotFoundError, PreconditionFailedError


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "web", "Web", "WEB")
        projects_mod.create_project(conn, "api", "API", "API")
        users_mod.create_user(conn, "Alice", "alice@example.com", "ADMIN")
        users_mod.create_user(conn, "Bob", "bob@example.com")
        yield conn
        conn.close()


@pytest.fixture
def alice(db):
    return users_mod.get_user(db, "alice")


@pytest.fixture
def bob(db):
    return users_mod.get_user(db, "bob")


class TestDefineTeams:
    def test_key_normalized(self, db, alice):
        team = teams_mod.create_team(db, "web", " Frontend ", "front end", alice)
        assert (team.name, team.key, team.position) == ("Frontend", "FRONT_END", 0)
        assert teams_mod.create_team(db, "web", "Backend", "be", alice).position == 1

    def test_duplicate_key_in_project(self, db, alice):
        teams_mod.create_team(db, "web", "Frontend", "FE", alice)
        with pytest.raises(PreconditionFailedError):
            teams_mod.create_team(db, "web", "Front", "fe", alice)
        assert teams_mod.create_team(db, "api", "Frontend", "FE", alice).project_id == "api"

    def test_admin_only(self, db, bob):
        with pytest.raises(ForbiddenError):
            teams_mod.create_team(db, "web", "Frontend", "FE", bob)

    def test_name_and_key_required(self, db, alice):
        with pytest.raises(ValueError):
            teams_mod.create_team(db, "web", "Frontend", " ", alice)

    def test_reorder(self, db, alice, bob):
        fe = teams_mod.create_team(db, "web", "Frontend", "FE", alice)
        be = teams_mod.create_team(db, "web", "Backend", "BE", alice)

        with pytest.raises(ForbiddenError):
            teams_mod.reorder_teams(db, "web", [be.id, fe.id], bob)
        teams = teams_mod.reorder_teams(db, "web", [be.id, fe.id], alice)
        assert [(t.key, t.position) for t in teams] == [("BE", 0), ("FE", 1)]


class TestTaskTeams:
    def test_task_team_must_be_defined(self, db, alice, bob):
        teams_mod.create_team(db, "web", "Frontend", "FE", alice)
        teams_mod.create_team(db, "api", "Platform", "PLAT", alice)

        assert tasks_mod.create_task(db, "web", "Navbar", bob, team="fe").team == "FE"
        with pytest.raises(NotFoundError, match="Team not found"):
            tasks_mod.create_task(db, "web", "Gateway", bob, team="PLAT")

    def test_resolve_blank_clears(self, db):
        assert teams_mod.resolve_team(db, "web", None) is None
        assert teams_mod.resolve_team(db, "web", "  ") is None

    def test_delete_clears_tasks(self, db, alice, bob):
        fe = teams_mod.create_team(db, "web", "Frontend", "FE", alice)
        teams_mod.create_team(db, "web", "Backend", "BE", alice)
        teams_mod.create_team(db, "api", "Frontend", "FE", alice)
        task = tasks_mod.create_task(db, "web", "Navbar", bob, team="FE")
        other = tasks_mod.create_task(db, "api", "Docs", bob, team="FE")

        with pytest.raises(ForbiddenError):
            teams_mod.delete_team(db, fe.id, bob)
        assert teams_mod.delete_team(db, fe.id, alice) == 1

        assert tasks_mod.get_task(db, task.id).team is None
        assert tasks_mod.get_task(db, other.id).team == "FE"
        assert [(t.key, t.position) for t in teams_mod.list_teams(db, "web")] == [("BE", 0)]

    def test_delete_unknown(self, db, alice):
        with pytest.raises(NotFoundError):
            teams_mod.delete_team(db, "missing", alice)
