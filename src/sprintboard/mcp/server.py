"""MCP server exposing sprintboard tools."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from sprintboard.config import Config, get_config
from sprintboard.core import chains as chains_mod
from sprintboard.core import comments as comments_mod
from sprintboard.core import epics as epics_mod
from sprintboard.core import notifications as notifications_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core import teams as teams_mod
from sprintboard.core import users as users_mod
from sprintboard.core import workflow as workflow_mod
from sprintboard.db.engine import init_db
from sprintboard.errors import SprintboardError
from sprintboard.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path, config.db_timeout)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("sprintboard", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _actor(app: AppContext):
    return users_mod.current_user(app.db, app.config.user_id)


def _error(e: Exception) -> dict:
    logger.debug("Tool call failed: %s", e)
    return {"error": str(e)}


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def list_projects(ctx: Context) -> list[dict]:
    """List all projects with their task key prefix."""
    app = _ctx(ctx)
    return [
        {"id": p.id, "key": p.key, "name": p.name, "task_counter": p.task_counter}
        for p in projects_mod.list_projects(app.db)
    ]


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    project: str,
    title: str,
    description: str | None = None,
    sprint_id: str | None = None,
    assignee_id: str | None = None,
    priority: str = "MEDIUM",
    team: str | None = None,
    epic_id: str | None = None,
) -> dict:
    """Create a task at the end of a sprint, or of the backlog when no sprint is given.

    Priority: LOW, MEDIUM, HIGH or URGENT. team must be one of the project's
    team keys (see list_teams).
    """
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db,
            project,
            title,
            _actor(app),
            description=description,
            sprint_id=sprint_id,
            assignee_id=assignee_id,
            priority=priority,
            team=team,
            epic_id=epic_id,
        )
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return _task_to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str,
    status: str | None = None,
    sprint_id: str | None = None,
    backlog: bool = False,
) -> list[dict]:
    """List a project's tasks in board order, optionally filtered by status, sprint or backlog."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, project, status=status, sprint_id=sprint_id, backlog=backlog)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task by ID or key (e.g. WEB-012), with its comments and history."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = _task_to_dict(task)
    result["comments"] = [
        {"author": c.author_id, "content": c.content, "created_at": str(c.created_at)}
        for c in comments_mod.list_comments(app.db, task.id)
    ]
    result["activities"] = [
        {"type": a.type, "metadata": a.metadata, "user": a.user_id, "created_at": str(a.created_at)}
        for a in tasks_mod.get_task_activities(app.db, task.id)
    ]
    return result


@mcp.tool()
def update_task(
    ctx: Context,
    task_id: str,
    title: str | None = None,
    description: str | None = None,
    status: str | None = None,
    priority: str | None = None,
    assignee_id: str | None = None,
    team: str | None = None,
    epic_id: str | None = None,
) -> dict:
    """Update a task. Statuses: TODO, IN_PROGRESS, READY_TO_TEST, BLOCKED, DONE, LIVE.

    Pass an empty string as assignee_id, team or epic_id to clear it.
    """
    app = _ctx(ctx)
    fields = {}
    if team is not None:
        fields["team"] = team or None
    if epic_id is not None:
        fields["epic_id"] = epic_id or None
    if description is not None:
        fields["description"] = description
    if assignee_id is not None:
        fields["assignee_id"] = assignee_id or None
    try:
        task = tasks_mod.update_task(
            app.db, task_id, _actor(app), title=title, status=status, priority=priority, **fields
        )
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return _task_to_dict(task)


@mcp.tool()
def move_task(
    ctx: Context,
    task_id: str,
    sprint_id: str | None = None,
    order: int | None = None,
) -> dict:
    """Move a task to a position in a sprint (or the backlog when sprint_id is null).

    Without an order the task goes to the end of the destination.
    """
    app = _ctx(ctx)
    try:
        task = tasks_mod.move_task(app.db, task_id, _actor(app), sprint_id, order)
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return _task_to_dict(task)


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task. Only its creator or an admin may delete it."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.require_task(app.db, task_id)
        tasks_mod.delete_task(app.db, task.id, _actor(app))
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return {"deleted": task.task_key}


@mcp.tool()
def split_task(
    ctx: Context,
    task_id: str,
    sprint_id: str | None = None,
    to_backlog: bool = False,
    transfer_comments: bool = True,
    transfer_description: bool = True,
) -> dict:
    """Continue a task as the next "#N" task of its split chain.

    The new task lands in sprint_id, in the backlog when to_backlog is set,
    or in the source task's sprint otherwise.
    """
    app = _ctx(ctx)
    if to_backlog:
        target = None
    elif sprint_id:
        target = sprint_id
    else:
        target = tasks_mod.UNSET
    try:
        result = workflow_mod.split_task(
            app.db,
            task_id,
            _actor(app),
            target_sprint_id=target,
            transfer_comments=transfer_comments,
            transfer_description=transfer_description,
        )
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return {
        "task": _task_to_dict(result.task),
        "source": result.source.task_key,
        "sequence_number": result.sequence_number,
        "comments_copied": result.comments_copied,
    }


@mcp.tool()
def get_task_chain(ctx: Context, task_id: str) -> dict:
    """Show every task in the split chain of a task, root first."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.require_task(app.db, task_id)
        chain = chains_mod.materialize_chain(app.db, task.id)
    except SprintboardError as e:
        return _error(e)
    return {
        "root_task_id": chain.root_task_id,
        "total_tasks": chain.total_tasks,
        "sprint_count": chain.sprint_count,
        "chain": [
            {
                "id": e.id,
                "title": e.title,
                "status": e.status,
                "sprint": e.sprint["name"] if e.sprint else "Backlog",
                "depth": e.depth,
                "is_current": e.is_current,
            }
            for e in chain.entries
        ],
    }


@mcp.tool()
def add_comment(
    ctx: Context,
    task_id: str,
    content: str,
    mention_ids: list[str] | None = None,
) -> dict:
    """Comment on a task, notifying the mentioned users."""
    app = _ctx(ctx)
    try:
        comment = comments_mod.add_comment(app.db, task_id, _actor(app), content, mention_ids)
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return {"id": comment.id, "task_id": comment.task_id, "mention_ids": comment.mention_ids}


@mcp.tool()
def delete_comment(ctx: Context, comment_id: int) -> dict:
    """Delete a comment. Only its author or an admin may delete it."""
    app = _ctx(ctx)
    try:
        comments_mod.delete_comment(app.db, comment_id, _actor(app))
    except SprintboardError as e:
        return _error(e)
    return {"deleted": comment_id}


# ── Epic and Team Tools ───────────────────────────────────────────────────────


@mcp.tool()
def list_epics(ctx: Context, project: str) -> list[dict]:
    """List a project's epics in rank order, with task counts."""
    app = _ctx(ctx)
    return [
        {"id": e.id, "name": e.name, "order": e.position, "task_count": e.task_count}
        for e in epics_mod.list_epics(app.db, project)
    ]


@mcp.tool()
def create_epic(
    ctx: Context,
    project: str,
    name: str,
    description: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> dict:
    """Create an epic at the end of the project's epic list."""
    app = _ctx(ctx)
    try:
        epic = epics_mod.create_epic(
            app.db, project, name, _actor(app), description,
            start_date=start_date, end_date=end_date,
        )
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return {"id": epic.id, "name": epic.name, "order": epic.position}


@mcp.tool()
def move_epic(ctx: Context, epic_id: str, order: int) -> dict:
    """Re-rank an epic within its project; the others shift to keep ranks dense."""
    app = _ctx(ctx)
    try:
        _actor(app)
        epic = epics_mod.update_epic(app.db, epic_id, order=order)
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return {"id": epic.id, "name": epic.name, "order": epic.position}


@mcp.tool()
def list_teams(ctx: Context, project: str) -> list[dict]:
    """List the teams a project's tasks can be labelled with."""
    app = _ctx(ctx)
    return [{"key": t.key, "name": t.name} for t in teams_mod.list_teams(app.db, project)]


# ── Sprint Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def create_sprint(
    ctx: Context,
    project: str,
    name: str,
    start_date: str | None = None,
    end_date: str | None = None,
) -> dict:
    """Create a PLANNED sprint after the project's last sprint."""
    app = _ctx(ctx)
    try:
        _actor(app)
        sprint = sprints_mod.create_sprint(app.db, project, name, start_date, end_date)
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return _sprint_to_dict(sprint)


@mcp.tool()
def list_sprints(ctx: Context, project: str, status: str | None = None) -> list[dict]:
    """List a project's sprints in board order."""
    app = _ctx(ctx)
    return [_sprint_to_dict(s) for s in sprints_mod.list_sprints(app.db, project, status=status)]


@mcp.tool()
def sprint_summary(ctx: Context, sprint_id: str) -> dict:
    """Task counts per status and progress of a sprint."""
    app = _ctx(ctx)
    try:
        return sprints_mod.sprint_summary(app.db, sprint_id)
    except SprintboardError as e:
        return _error(e)


@mcp.tool()
def set_sprint_status(ctx: Context, sprint_id: str, status: str) -> dict:
    """Move a sprint along PLANNED -> ACTIVE -> UAT -> COMPLETED.

    Use move_sprint_to_uat to enter UAT with open tasks handled.
    """
    app = _ctx(ctx)
    try:
        sprint = sprints_mod.set_sprint_status(app.db, sprint_id, status, _actor(app))
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return _sprint_to_dict(sprint)


@mcp.tool()
def move_sprint_to_uat(
    ctx: Context,
    sprint_id: str,
    action: str,
    target_sprint_id: str | None = None,
) -> dict:
    """Move a sprint to UAT. Admin only.

    action decides what happens to TODO, IN_PROGRESS and BLOCKED tasks:
    close_all marks them DONE, move_all moves them to the target sprint,
    split_all closes them and continues each as a new task in the target
    sprint. The target defaults to the next PLANNED sprint.
    """
    app = _ctx(ctx)
    try:
        result = workflow_mod.transition_to_uat(
            app.db, sprint_id, _actor(app), action, target_sprint_id
        )
    except (SprintboardError, ValueError) as e:
        return _error(e)
    return {
        "sprint": _sprint_to_dict(result.sprint),
        "action": result.action,
        "target_sprint": result.target_sprint.name if result.target_sprint else None,
        "closed": [t.task_key for t in result.closed],
        "moved": [t.task_key for t in result.moved],
        "split": [t.task_key for t in result.split],
    }


@mcp.tool()
def post_sprint_status(ctx: Context, sprint_id: str) -> dict:
    """Post a sprint progress update to the project's Slack channel."""
    app = _ctx(ctx)
    try:
        summary = sprints_mod.sprint_summary(app.db, sprint_id)
        sprint = sprints_mod.require_sprint(app.db, sprint_id)
    except SprintboardError as e:
        return _error(e)
    project = projects_mod.get_project(app.db, sprint.project_id)
    sent = notifications_mod.announce(
        project,
        f"Sprint status: {sprint.name}",
        slack_mod.format_sprint_status(sprint.name, summary["counts"]),
    )
    return {"sent": sent, "channel": project.slack_channel if project else None}


# ── Notification Tools ────────────────────────────────────────────────────────


@mcp.tool()
def list_notifications(ctx: Context, unread_only: bool = True) -> list[dict] | dict:
    """List the acting user's notifications, newest first."""
    app = _ctx(ctx)
    try:
        user = _actor(app)
    except SprintboardError as e:
        return _error(e)
    return [
        {"id": n.id, "type": n.type, "task_id": n.task_id, "read": n.read}
        for n in notifications_mod.list_notifications(app.db, user.id, unread_only=unread_only)
    ]


@mcp.tool()
def mark_notifications_read(ctx: Context, ids: list[int] | None = None) -> dict:
    """Mark notifications read; all unread ones when no ids are given."""
    app = _ctx(ctx)
    try:
        user = _actor(app)
    except SprintboardError as e:
        return _error(e)
    return {"marked": notifications_mod.mark_read(app.db, user.id, ids)}


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "task_key": task.task_key,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "order": task.position,
        "project": task.project_id,
        "sprint_id": task.sprint_id,
        "epic_id": task.epic_id,
        "split_from_id": task.split_from_id,
        "split_task_ids": task.split_task_ids,
        "assignee_id": task.assignee_id,
        "team": task.team,
    }


def _sprint_to_dict(sprint) -> dict:
    return {
        "id": sprint.id,
        "project": sprint.project_id,
        "name": sprint.name,
        "status": sprint.status,
        "order": sprint.position,
        "start_date": sprint.start_date,
        "end_date": sprint.end_date,
    }
