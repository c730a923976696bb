"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from sprintboard.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "SB_DB_PATH": str(Path(tmp) / "test.db"),
            "SB_USER": "alice",
            "SLACK_BOT_TOKEN": "",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        runner = CliRunner()
        runner.invoke(main, ["init", "Web App", "--key", "WEB"])
        runner.invoke(main, ["user", "add", "Alice", "alice@example.com", "--role", "ADMIN"])
        runner.invoke(main, ["user", "add", "Bob", "bob@example.com"])
        yield runner

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _sprint(runner, name):
    result = runner.invoke(main, ["sprint", "add", name, "--project", "web-app"])
    assert result.exit_code == 0, result.output
    return result.output.splitlines()[0].split(": ")[1]


def _task_list(runner, *args):
    result = runner.invoke(main, ["task", "list", "--project", "web-app", "--json", *args])
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestProjectAndUsers:
    def test_init_creates_project(self):
        with tempfile.TemporaryDirectory() as tmp:
            runner = CliRunner()
            result = runner.invoke(
                main, ["init", "Mobile", "--key", "mob"], env={"SB_DB_PATH": str(Path(tmp) / "t.db")}
            )
            assert result.exit_code == 0
            assert "Project created: mobile (Mobile)" in result.output
            assert "Key: MOB" in result.output

    def test_invalid_key(self, cli_env):
        result = cli_env.invoke(main, ["init", "Other", "--key", "1X"])
        assert result.exit_code == 1
        assert "Invalid project key" in result.output

    def test_user_list(self, cli_env):
        result = cli_env.invoke(main, ["user", "list"])
        assert "alice: Alice <alice@example.com> ADMIN" in result.output
        assert "bob: Bob <bob@example.com> MEMBER" in result.output


class TestTaskCommands:
    def test_add_and_list(self, cli_env):
        result = cli_env.invoke(main, ["task", "add", "Login form", "--project", "web-app"])
        assert result.exit_code == 0
        assert "Created task: WEB-001" in result.output
        assert "Sprint: Backlog" in result.output

        tasks = _task_list(cli_env)
        assert [(t["task_key"], t["order"]) for t in tasks] == [("WEB-001", 0)]

    def test_unknown_acting_user(self, cli_env):
        result = cli_env.invoke(main, ["--as", "mallory", "task", "add", "X", "--project", "web-app"])
        assert result.exit_code == 1
        assert "Unauthorized" in result.output

    def test_show_missing(self, cli_env):
        result = cli_env.invoke(main, ["task", "show", "WEB-999"])
        assert result.exit_code == 1
        assert "Task not found" in result.output

    def test_update_and_show(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Login form", "--project", "web-app"])
        result = cli_env.invoke(
            main, ["task", "update", "WEB-001", "--status", "IN_PROGRESS", "--assignee", "bob"]
        )
        assert result.exit_code == 0, result.output

        result = cli_env.invoke(main, ["task", "show", "WEB-001"])
        assert "Status: IN_PROGRESS" in result.output
        assert "Assignee: bob" in result.output
        assert "STATUS_CHANGED" in result.output

    def test_move_between_sprint_and_backlog(self, cli_env):
        sprint_id = _sprint(cli_env, "Sprint 1")
        cli_env.invoke(main, ["task", "add", "A", "--project", "web-app", "--sprint", sprint_id])
        cli_env.invoke(main, ["task", "add", "B", "--project", "web-app", "--sprint", sprint_id])

        result = cli_env.invoke(main, ["task", "move", "WEB-002", "--order", "0"])
        assert result.exit_code == 0, result.output
        assert [t["title"] for t in _task_list(cli_env, "--sprint", sprint_id)] == ["B", "A"]

        result = cli_env.invoke(main, ["task", "move", "WEB-001", "--backlog"])
        assert "Moved WEB-001 to Backlog at order 0" in result.output

    def test_split_and_chain(self, cli_env):
        sprint_id = _sprint(cli_env, "Sprint 1")
        cli_env.invoke(main, ["task", "add", "Search", "--project", "web-app"])
        cli_env.invoke(main, ["task", "comment", "WEB-001", "Index is slow", "-m", "bob"])

        result = cli_env.invoke(main, ["task", "split", "WEB-001", "--sprint", sprint_id])
        assert result.exit_code == 0, result.output
        assert "Split WEB-001 into WEB-002: Search #2" in result.output
        assert "Comments copied: 1" in result.output

        result = cli_env.invoke(main, ["task", "chain", "WEB-002"])
        assert "Chain of 2 tasks across 2 sprints" in result.output
        assert "Search #2 [Sprint 1] <" in result.output

    def test_delete_by_other_member_fails(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Mine", "--project", "web-app"])
        result = cli_env.invoke(main, ["--as", "bob", "task", "delete", "WEB-001"])
        assert result.exit_code == 1
        assert "only delete tasks you created" in result.output

        result = cli_env.invoke(main, ["task", "delete", "WEB-001"])
        assert "Deleted task: WEB-001" in result.output

    def test_delete_comment(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Search", "--project", "web-app"])
        result = cli_env.invoke(main, ["task", "comment", "WEB-001", "Index is slow"])
        assert "Added comment 1" in result.output

        result = cli_env.invoke(main, ["--as", "bob", "task", "delete-comment", "1"])
        assert result.exit_code == 1
        assert "only delete your own comments" in result.output

        result = cli_env.invoke(main, ["task", "delete-comment", "1"])
        assert result.exit_code == 0, result.output
        assert "Deleted comment 1" in result.output
        assert "#1 " not in cli_env.invoke(main, ["task", "show", "WEB-001"]).output


class TestSprintCommands:
    def test_lifecycle_and_uat(self, cli_env):
        first = _sprint(cli_env, "Sprint 1")
        _sprint(cli_env, "Sprint 2")
        cli_env.invoke(main, ["task", "add", "Open", "--project", "web-app", "--sprint", first])
        cli_env.invoke(
            main, ["task", "add", "Done", "--project", "web-app", "--sprint", first, "--status", "DONE"]
        )

        result = cli_env.invoke(main, ["sprint", "start", first])
        assert "Sprint Sprint 1 is now ACTIVE" in result.output

        result = cli_env.invoke(main, ["sprint", "uat", first, "--action", "split_all"])
        assert result.exit_code == 0, result.output
        assert "Target: Sprint 2" in result.output
        assert "split  WEB-003: Open #2" in result.output

        result = cli_env.invoke(main, ["sprint", "list", "--project", "web-app", "--json"])
        statuses = {s["name"]: s["status"] for s in json.loads(result.output)}
        assert statuses == {"Sprint 1": "UAT", "Sprint 2": "PLANNED"}

        result = cli_env.invoke(main, ["sprint", "show", first])
        assert "Progress: 100.0% of 2 tasks" in result.output

    def test_uat_without_target(self, cli_env):
        only = _sprint(cli_env, "Sprint 1")
        result = cli_env.invoke(main, ["sprint", "uat", only, "--action", "move_all"])
        assert result.exit_code == 1
        assert "No target sprint available" in result.output

    def test_reactivate_admin_only(self, cli_env):
        sprint_id = _sprint(cli_env, "Sprint 1")
        cli_env.invoke(main, ["sprint", "start", sprint_id])
        cli_env.invoke(main, ["sprint", "complete", sprint_id])

        result = cli_env.invoke(main, ["--as", "bob", "sprint", "reactivate", sprint_id])
        assert result.exit_code == 1
        assert "Admin role required" in result.output

        result = cli_env.invoke(main, ["sprint", "reactivate", sprint_id])
        assert "is now ACTIVE" in result.output


class TestEpicAndTeamCommands:
    def test_epics(self, cli_env):
        ids = []
        for name in ("Auth", "Billing"):
            result = cli_env.invoke(main, ["epic", "add", name, "--project", "web-app"])
            assert result.exit_code == 0, result.output
            ids.append(result.output.splitlines()[0].split(": ")[1])

        result = cli_env.invoke(main, ["task", "add", "Login", "--project", "web-app", "--epic", ids[0]])
        assert result.exit_code == 0, result.output

        result = cli_env.invoke(main, ["epic", "move", ids[1], "--order", "0"])
        assert "Moved epic Billing to order 0" in result.output

        result = cli_env.invoke(main, ["epic", "list", "--project", "web-app", "--json"])
        epics = json.loads(result.output)
        assert [(e["name"], e["order"], e["task_count"]) for e in epics] == [
            ("Billing", 0, 0),
            ("Auth", 1, 1),
        ]

        result = cli_env.invoke(main, ["epic", "delete", ids[0]])
        assert "(1 tasks unlinked)" in result.output
        assert _task_list(cli_env)[0]["epic_id"] is None

    def test_teams(self, cli_env):
        result = cli_env.invoke(
            main, ["--as", "bob", "team", "add", "Frontend", "--project", "web-app", "--key", "fe"]
        )
        assert result.exit_code == 1

        result = cli_env.invoke(main, ["team", "add", "Frontend", "--project", "web-app", "--key", "fe"])
        assert "Created team: FE (Frontend)" in result.output

        result = cli_env.invoke(main, ["task", "add", "Navbar", "--project", "web-app", "--team", "ops"])
        assert result.exit_code == 1
        assert "Team not found" in result.output

        cli_env.invoke(main, ["task", "add", "Navbar", "--project", "web-app", "--team", "fe"])
        assert _task_list(cli_env)[0]["team"] == "FE"

        result = cli_env.invoke(main, ["team", "list", "--project", "web-app"])
        assert "0. FE: Frontend" in result.output


class TestNotificationsCommand:
    def test_list_and_mark_read(self, cli_env):
        cli_env.invoke(main, ["task", "add", "Review", "--project", "web-app", "--assignee", "bob"])

        result = cli_env.invoke(main, ["--as", "bob", "notifications"])
        assert "* ASSIGNMENT WEB-001: Review" in result.output

        result = cli_env.invoke(main, ["--as", "bob", "notifications", "--mark-read"])
        assert "Marked 1 notifications read." in result.output

        result = cli_env.invoke(main, ["--as", "bob", "notifications", "--unread"])
        assert "No notifications." in result.output
