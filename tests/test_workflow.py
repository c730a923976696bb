"""Tests for task splitting and the sprint-to-UAT transition."""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from sprintboard.core import comments as comments_mod
from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core import teams as teams_mod
from sprintboard.core import users as users_mod
from sprintboard.core import workflow as workflow_mod
from sprintboard.db.engine import init_db
from sprintboard.errors import ForbiddenError, NotFoundError, PreconditionFailedError


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "p", "Platform", "P")
        users_mod.create_user(conn, "Alice", "alice@example.com", "ADMIN")
        users_mod.create_user(conn, "Bob", "bob@example.com")
        teams_mod.create_team(conn, "p", "Core", "core", users_mod.get_user(conn, "alice"))
        yield conn
        conn.close()


@pytest.fixture
def admin(db):
    return users_mod.get_user(db, "alice")


@pytest.fixture
def member(db):
    return users_mod.get_user(db, "bob")


def _snapshot(db):
    return {
        table: [tuple(r) for r in db.execute(f"SELECT * FROM {table} ORDER BY rowid").fetchall()]
        for table in ("projects", "sprints", "tasks", "comments", "comment_mentions", "activities")
    }


def _activity_types(db, task_id):
    return [a.type for a in tasks_mod.get_task_activities(db, task_id)]


def _failing_on_call(real, n):
    """Wrap ``real`` so that its ``n``-th call raises instead of running."""
    calls = []

    def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) == n:
            raise RuntimeError("disk full")
        return real(*args, **kwargs)

    return wrapper


class TestSplitTask:
    def test_end_to_end_split(self, db, admin, member):
        sprint_a = sprints_mod.create_sprint(db, "p", "Sprint A")
        sprint_b = sprints_mod.create_sprint(db, "p", "Sprint B")
        tasks_mod.create_task(db, "p", "First", admin, sprint_id=sprint_a.id)
        tasks_mod.create_task(db, "p", "Second", admin, sprint_id=sprint_a.id)
        source = tasks_mod.create_task(
            db, "p", "Add logging", admin,
            sprint_id=sprint_a.id, description="Structured logs", assignee_id="bob", team="core",
        )
        tasks_mod.create_task(db, "p", "Third", admin, sprint_id=sprint_b.id)
        tasks_mod.create_task(db, "p", "Fourth", admin, sprint_id=sprint_b.id)
        comments_mod.add_comment(db, source.id, admin, "Started on this", ["bob"])
        comments_mod.add_comment(db, source.id, member, "Half done")
        assert source.position == 2
        assert projects_mod.get_project(db, "p").task_counter == 5

        result = workflow_mod.split_task(
            db,
            source.id,
            admin,
            target_sprint_id=sprint_b.id,
            transfer_comments=True,
            transfer_description=True,
        )
        task = result.task

        assert task.task_key == "P-006"
        assert task.title == "Add logging #2"
        assert task.sprint_id == sprint_b.id
        assert task.position == 2
        assert task.description == "Structured logs"
        assert task.status == "TODO"
        assert task.assignee_id == "bob"
        assert task.team == "CORE"
        assert task.priority == source.priority
        assert task.split_from_id == source.id
        assert result.sequence_number == 2
        assert result.comments_copied == 2
        assert projects_mod.get_project(db, "p").task_counter == 6

        copied = comments_mod.list_comments(db, task.id)
        assert [(c.author_id, c.content) for c in copied] == [
            ("alice", "Started on this"),
            ("bob", "Half done"),
        ]
        assert copied[0].mention_ids == ["bob"]

        assert "SPLIT" in _activity_types(db, source.id)
        assert _activity_types(db, task.id) == ["CREATED"]
        created = tasks_mod.get_task_activities(db, task.id)[0]
        assert created.metadata["splitFromId"] == source.id
        assert created.metadata["fromSprint"] == "Sprint A"
        split = next(a for a in tasks_mod.get_task_activities(db, source.id) if a.type == "SPLIT")
        assert split.metadata["newTaskId"] == task.id
        assert split.metadata["splitNumber"] == 2
        assert split.metadata["targetSprint"] == "Sprint B"
        assert split.metadata["commentsCopied"] == 2

    def test_source_untouched(self, db, admin):
        source = tasks_mod.create_task(db, "p", "Fix login #3", admin, status="IN_PROGRESS")
        result = workflow_mod.split_task(db, source.id, admin)

        after = tasks_mod.get_task(db, source.id)
        assert after.title == "Fix login #3"
        assert after.status == "IN_PROGRESS"
        assert after.split_task_ids == [result.task.id]
        assert result.task.title == "Fix login #2"

    def test_defaults_to_source_sprint(self, db, admin):
        sprint = sprints_mod.create_sprint(db, "p", "Sprint A")
        source = tasks_mod.create_task(db, "p", "Task", admin, sprint_id=sprint.id)
        result = workflow_mod.split_task(db, source.id, admin)
        assert result.task.sprint_id == sprint.id
        assert result.task.position == 1

    def test_explicit_backlog(self, db, admin):
        sprint = sprints_mod.create_sprint(db, "p", "Sprint A")
        source = tasks_mod.create_task(db, "p", "Task", admin, sprint_id=sprint.id)
        result = workflow_mod.split_task(db, source.id, admin, target_sprint_id=None)
        assert result.task.sprint_id is None

    def test_without_comments_or_description(self, db, admin):
        source = tasks_mod.create_task(db, "p", "Task", admin, description="Details")
        comments_mod.add_comment(db, source.id, admin, "One")
        comments_mod.add_comment(db, source.id, admin, "Two")

        result = workflow_mod.split_task(
            db, source.id, admin, transfer_comments=False, transfer_description=False
        )

        assert result.comments_copied == 0
        assert comments_mod.list_comments(db, result.task.id) == []
        assert result.task.description is None

    def test_accepts_task_key(self, db, admin):
        tasks_mod.create_task(db, "p", "Task", admin)
        result = workflow_mod.split_task(db, "P-001", admin)
        assert result.source.task_key == "P-001"
        assert result.task.task_key == "P-002"

    def test_target_in_other_project(self, db, admin):
        projects_mod.create_project(db, "q", "Other", "Q")
        other = sprints_mod.create_sprint(db, "q", "Elsewhere")
        source = tasks_mod.create_task(db, "p", "Task", admin)
        with pytest.raises(PreconditionFailedError):
            workflow_mod.split_task(db, source.id, admin, target_sprint_id=other.id)

    def test_unknown_task(self, db, admin):
        with pytest.raises(NotFoundError):
            workflow_mod.split_task(db, "missing", admin)

    def test_failure_leaves_nothing_behind(self, db, admin):
        source = tasks_mod.create_task(db, "p", "Task", admin)
        comments_mod.add_comment(db, source.id, admin, "Note")
        before = _snapshot(db)

        with patch("sprintboard.core.comments.copy_comments", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                workflow_mod.split_task(db, source.id, admin)

        assert _snapshot(db) == before
        assert projects_mod.get_project(db, "p").task_counter == 1


class TestTransitionToUat:
    @pytest.fixture
    def board(self, db, admin):
        """An active sprint holding one task of every status, plus a planned sprint."""
        active = sprints_mod.create_sprint(db, "p", "Sprint 1", status="ACTIVE")
        planned = sprints_mod.create_sprint(db, "p", "Sprint 2")
        tasks_mod.create_task(db, "p", "Queued", admin, sprint_id=planned.id)
        tasks = {
            status: tasks_mod.create_task(
                db, "p", status.title(), admin, sprint_id=active.id, status=status
            )
            for status in ("TODO", "IN_PROGRESS", "READY_TO_TEST", "BLOCKED", "DONE", "LIVE")
        }
        return active, planned, tasks

    def test_close_all(self, db, admin, board):
        active, _, tasks = board
        result = workflow_mod.transition_to_uat(db, active.id, admin, "close_all")

        assert result.sprint.status == "UAT"
        assert {t.title for t in result.closed} == {"Todo", "In_Progress", "Blocked"}
        for status, task in tasks.items():
            after = tasks_mod.get_task(db, task.id)
            if status in ("TODO", "IN_PROGRESS", "BLOCKED"):
                assert after.status == "DONE"
                assert after.completed_at is not None
                change = tasks_mod.get_task_activities(db, task.id)[0]
                assert change.type == "STATUS_CHANGED"
                assert change.metadata == {"from": status, "to": "DONE", "reason": "Sprint moved to UAT"}
            else:
                assert after.status == status
                assert after.sprint_id == active.id

    @pytest.mark.parametrize(
        "action, target, real",
        [
            ("close_all", "sprintboard.core.tasks.log_activity", tasks_mod.log_activity),
            ("move_all", "sprintboard.core.ordering.append_to_container", ordering_mod.append_to_container),
            ("split_all", "sprintboard.core.comments.copy_comments", comments_mod.copy_comments),
        ],
    )
    def test_failure_on_second_task_rolls_back_everything(self, db, admin, board, action, target, real):
        active, _, tasks = board
        comments_mod.add_comment(db, tasks["TODO"].id, admin, "Note")
        comments_mod.add_comment(db, tasks["IN_PROGRESS"].id, admin, "Other note")
        before = _snapshot(db)
        counter = projects_mod.get_project(db, "p").task_counter

        with patch(target, side_effect=_failing_on_call(real, 2)):
            with pytest.raises(RuntimeError):
                workflow_mod.transition_to_uat(db, active.id, admin, action)

        assert _snapshot(db) == before
        assert sprints_mod.get_sprint(db, active.id).status == "ACTIVE"
        assert projects_mod.get_project(db, "p").task_counter == counter

    def test_close_all_needs_no_target(self, db, admin):
        sprint = sprints_mod.create_sprint(db, "p", "Only", status="ACTIVE")
        tasks_mod.create_task(db, "p", "Task", admin, sprint_id=sprint.id)
        result = workflow_mod.transition_to_uat(db, sprint.id, admin, "close_all")
        assert result.target_sprint is None
        assert sprints_mod.get_sprint(db, sprint.id).status == "UAT"

    def test_move_all_appends_and_keeps_orders_dense(self, db, admin, board):
        active, planned, tasks = board
        result = workflow_mod.transition_to_uat(db, active.id, admin, "move_all")

        assert result.target_sprint.id == planned.id
        titles = [t.title for t in sprints_mod.sprint_tasks(db, planned.id)]
        assert titles == ["Queued", "Todo", "In_Progress", "Blocked"]
        assert ordering_mod.container_orders(db, "p", planned.id) == [0, 1, 2, 3]
        assert ordering_mod.container_orders(db, "p", active.id) == [0, 1, 2]
        assert [t.status for t in result.moved] == ["TODO", "IN_PROGRESS", "BLOCKED"]

        moved = tasks_mod.get_task_activities(db, tasks["TODO"].id)[0]
        assert moved.type == "MOVED_TO_SPRINT"
        assert moved.metadata["to"] == "Sprint 2"
        assert tasks_mod.get_task(db, tasks["DONE"].id).sprint_id == active.id

    def test_split_all(self, db, admin, board):
        active, planned, tasks = board
        comments_mod.add_comment(db, tasks["BLOCKED"].id, admin, "Waiting on vendor")

        result = workflow_mod.transition_to_uat(db, active.id, admin, "split_all")

        assert [t.title for t in result.split] == ["Todo #2", "In_Progress #2", "Blocked #2"]
        assert all(t.sprint_id == planned.id and t.status == "TODO" for t in result.split)
        for status in ("TODO", "IN_PROGRESS", "BLOCKED"):
            source = tasks_mod.get_task(db, tasks[status].id)
            assert source.status == "DONE"
            assert source.sprint_id == active.id
            assert "SPLIT" in _activity_types(db, source.id)
        blocked_copy = next(t for t in result.split if t.title == "Blocked #2")
        assert [c.content for c in comments_mod.list_comments(db, blocked_copy.id)] == ["Waiting on vendor"]
        assert ordering_mod.container_orders(db, "p", planned.id) == [0, 1, 2, 3]
        assert result.sprint.status == "UAT"

    def test_explicit_target(self, db, admin, board):
        active, _, _ = board
        later = sprints_mod.create_sprint(db, "p", "Sprint 3")
        result = workflow_mod.transition_to_uat(db, active.id, admin, "move_all", later.id)
        assert result.target_sprint.id == later.id
        assert len(sprints_mod.sprint_tasks(db, later.id)) == 3

    def test_split_all_without_target_changes_nothing(self, db, admin):
        sprint = sprints_mod.create_sprint(db, "p", "Sprint 1", status="ACTIVE")
        for title in ("One", "Two", "Three"):
            task = tasks_mod.create_task(db, "p", title, admin, sprint_id=sprint.id)
            comments_mod.add_comment(db, task.id, admin, f"About {title}")
        before = _snapshot(db)

        with pytest.raises(PreconditionFailedError, match="No target sprint available"):
            workflow_mod.transition_to_uat(db, sprint.id, admin, "split_all")

        assert _snapshot(db) == before

    def test_target_must_be_same_project(self, db, admin, board):
        active, _, _ = board
        projects_mod.create_project(db, "q", "Other", "Q")
        other = sprints_mod.create_sprint(db, "q", "Elsewhere")
        with pytest.raises(PreconditionFailedError):
            workflow_mod.transition_to_uat(db, active.id, admin, "move_all", other.id)

    def test_target_cannot_be_the_sprint_itself(self, db, admin, board):
        active, _, _ = board
        with pytest.raises(PreconditionFailedError):
            workflow_mod.transition_to_uat(db, active.id, admin, "move_all", active.id)

    def test_unknown_target(self, db, admin, board):
        active, _, _ = board
        with pytest.raises(NotFoundError):
            workflow_mod.transition_to_uat(db, active.id, admin, "split_all", "missing")

    def test_admin_only(self, db, member, board):
        active, _, _ = board
        with pytest.raises(ForbiddenError):
            workflow_mod.transition_to_uat(db, active.id, member, "close_all")
        assert sprints_mod.get_sprint(db, active.id).status == "ACTIVE"

    def test_invalid_action(self, db, admin, board):
        active, _, _ = board
        with pytest.raises(ValueError):
            workflow_mod.transition_to_uat(db, active.id, admin, "archive_all")

    def test_slack_summary_posted(self, db, admin, board, monkeypatch):
        active, _, _ = board
        projects_mod.update_project(db, "p", slack_channel="#platform")
        monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")

        with patch("sprintboard.integrations.slack.send_message") as send:
            workflow_mod.transition_to_uat(db, active.id, admin, "close_all")

        send.assert_called_once()
        token, channel, text, blocks = send.call_args.args
        assert channel == "#platform"
        assert "UAT" in text
        assert "Closed: 3" in blocks[0]["text"]["text"]

    def test_slack_failure_does_not_undo_transition(self, db, admin, board, monkeypatch):
        active, _, _ = board
        projects_mod.update_project(db, "p", slack_channel="#platform")
        monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")

        with patch("sprintboard.integrations.slack.send_message", side_effect=Exception("boom")):
            result = workflow_mod.transition_to_uat(db, active.id, admin, "close_all")

        assert result.sprint.status == "UAT"
        assert sprints_mod.get_sprint(db, active.id).status == "UAT"
