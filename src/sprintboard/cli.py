"""CLI entry point for sprintboard."""

import json
import logging
import sys

import click

from sprintboard.config import get_config
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
from sprintboard.db.engine import get_db
from sprintboard.db.models import PRIORITIES, ROLES, SPRINT_STATUSES, TASK_STATUSES
from sprintboard.errors import SprintboardError

STATUS_ICONS = {
    "TODO": "○",
    "IN_PROGRESS": "●",
    "READY_TO_TEST": "◐",
    "BLOCKED": "✗",
    "DONE": "✓",
    "LIVE": "★",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path, config.db_timeout)


def _user(db):
    """The acting user: ``--as`` on the command line, else ``SB_USER``."""
    ctx = click.get_current_context()
    user_id = (ctx.obj or {}).get("as_user") or get_config().user_id
    return users_mod.current_user(db, user_id)


class _Main(click.Group):
    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except (SprintboardError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


@click.group(cls=_Main)
@click.option("--as", "as_user", default=None, help="Act as this user ID (defaults to $SB_USER)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, as_user, verbose):
    """sb - sprint board CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)["as_user"] = as_user


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--key", "-k", required=True, help="Short upper-case code used in task keys")
@click.option("--slack-channel", default=None, help="Slack channel for announcements")
def init_project(project_name, key, slack_channel):
    """Initialize a new project."""
    project_id = projects_mod.slugify(project_name)

    with _get_db() as db:
        project = projects_mod.create_project(db, project_id, project_name, key, slack_channel)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Key: {project.key}")
        if project.slack_channel:
            click.echo(f"  Slack: {project.slack_channel}")


# ── User Commands ─────────────────────────────────────────────────────────────


@main.group("user")
def user_group():
    """Manage users."""
    pass


@user_group.command("add")
@click.argument("name")
@click.argument("email")
@click.option("--role", type=click.Choice(ROLES, case_sensitive=False), default="MEMBER")
def user_add(name, email, role):
    """Create a user."""
    with _get_db() as db:
        user = users_mod.create_user(db, name, email, role)
        click.echo(f"Created user: {user.id} ({user.role})")


@user_group.command("list")
def user_list():
    """List users."""
    with _get_db() as db:
        users = users_mod.list_users(db)
        if not users:
            click.echo("No users found.")
            return
        for u in users:
            click.echo(f"  {u.id}: {u.name} <{u.email}> {u.role}")


# ── Sprint Commands ───────────────────────────────────────────────────────────


@main.group("sprint")
def sprint_group():
    """Manage sprints."""
    pass


@sprint_group.command("add")
@click.argument("name")
@click.option("--project", required=True, help="Project ID")
@click.option("--start", "start_date", default=None, help="Start date (YYYY-MM-DD)")
@click.option("--end", "end_date", default=None, help="End date (YYYY-MM-DD)")
def sprint_add(name, project, start_date, end_date):
    """Create a sprint at the end of the project's sprint list."""
    with _get_db() as db:
        _user(db)
        sprint = sprints_mod.create_sprint(db, project, name, start_date, end_date)
        click.echo(f"Created sprint: {sprint.id}")
        click.echo(f"  Name: {sprint.name}")
        click.echo(f"  Status: {sprint.status}")


@sprint_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", type=click.Choice(SPRINT_STATUSES), default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def sprint_list(project, status, json_output):
    """List a project's sprints in board order."""
    with _get_db() as db:
        sprints = sprints_mod.list_sprints(db, project, status=status)

        if json_output:
            click.echo(
                json.dumps(
                    [
                        {"id": s.id, "name": s.name, "status": s.status, "order": s.position}
                        for s in sprints
                    ],
                    indent=2,
                )
            )
            return

        if not sprints:
            click.echo("No sprints found.")
            return
        for s in sprints:
            click.echo(f"  {s.position}. {s.name} [{s.status}] {s.id}")


@sprint_group.command("show")
@click.argument("sprint_id")
def sprint_show(sprint_id):
    """Show a sprint with its tasks and progress."""
    with _get_db() as db:
        summary = sprints_mod.sprint_summary(db, sprint_id)
        click.echo(f"Sprint: {summary['name']} ({sprint_id})")
        click.echo(f"  Status: {summary['status']}")
        click.echo(f"  Progress: {summary['progress_pct']}% of {summary['total']} tasks")
        for task in sprints_mod.sprint_tasks(db, sprint_id):
            click.echo(f"  {_task_line(task)}")


def _set_sprint_status(sprint_id, status):
    with _get_db() as db:
        sprint = sprints_mod.set_sprint_status(db, sprint_id, status, _user(db))
        click.echo(f"Sprint {sprint.name} is now {sprint.status}")


@sprint_group.command("start")
@click.argument("sprint_id")
def sprint_start(sprint_id):
    """Make a PLANNED sprint the active one."""
    _set_sprint_status(sprint_id, "ACTIVE")


@sprint_group.command("complete")
@click.argument("sprint_id")
def sprint_complete(sprint_id):
    """Mark a sprint COMPLETED."""
    _set_sprint_status(sprint_id, "COMPLETED")


@sprint_group.command("reactivate")
@click.argument("sprint_id")
def sprint_reactivate(sprint_id):
    """Move a UAT or COMPLETED sprint back to ACTIVE (admin only)."""
    _set_sprint_status(sprint_id, "ACTIVE")


@sprint_group.command("uat")
@click.argument("sprint_id")
@click.option(
    "--action",
    type=click.Choice(workflow_mod.UAT_ACTIONS),
    required=True,
    help="What to do with TODO, IN_PROGRESS and BLOCKED tasks",
)
@click.option("--target", "target_sprint_id", default=None, help="Destination sprint ID")
def sprint_uat(sprint_id, action, target_sprint_id):
    """Move a sprint to UAT (admin only)."""
    with _get_db() as db:
        result = workflow_mod.transition_to_uat(db, sprint_id, _user(db), action, target_sprint_id)
        click.echo(f"Sprint {result.sprint.name} moved to UAT ({action})")
        if result.target_sprint:
            click.echo(f"  Target: {result.target_sprint.name}")
        for task in result.closed:
            click.echo(f"  closed {task.task_key}: {task.title}")
        for task in result.moved:
            click.echo(f"  moved  {task.task_key}: {task.title}")
        for task in result.split:
            click.echo(f"  split  {task.task_key}: {task.title}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID")
@click.option("--sprint", "sprint_id", default=None, help="Sprint ID (backlog when omitted)")
@click.option("--description", "-d", default=None, help="Task description")
@click.option("--assignee", default=None, help="Assignee user ID")
@click.option("--team", default=None, help="Team key")
@click.option("--epic", "epic_id", default=None, help="Epic ID")
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default="MEDIUM")
@click.option("--status", type=click.Choice(TASK_STATUSES), default="TODO")
def task_add(title, project, sprint_id, description, assignee, team, epic_id, priority, status):
    """Create a new task."""
    with _get_db() as db:
        task = tasks_mod.create_task(
            db,
            project,
            title,
            _user(db),
            description=description,
            sprint_id=sprint_id,
            assignee_id=assignee,
            team=team,
            status=status,
            priority=priority,
            epic_id=epic_id,
        )
        click.echo(f"Created task: {task.task_key}")
        click.echo(f"  ID: {task.id}")
        click.echo(f"  Sprint: {tasks_mod.sprint_name(db, task.sprint_id)}")
        click.echo(f"  Order: {task.position}")


@task_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--sprint", "sprint_id", default=None, help="Only tasks of this sprint")
@click.option("--backlog", is_flag=True, help="Only backlog tasks")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, sprint_id, backlog, json_output):
    """List tasks in board order."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status, sprint_id=sprint_id, backlog=backlog)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return
        for task in tasks:
            click.echo(f"  {_task_line(task)} [{tasks_mod.sprint_name(db, task.sprint_id)}]")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details, comments and history."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.task_key} ({task.id})")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Sprint: {tasks_mod.sprint_name(db, task.sprint_id)} (order {task.position})")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assignee_id:
            click.echo(f"  Assignee: {task.assignee_id}")
        if task.team:
            click.echo(f"  Team: {task.team}")
        if task.epic_id:
            click.echo(f"  Epic: {epics_mod.require_epic(db, task.epic_id).name}")
        if task.split_from_id:
            click.echo(f"  Split from: {task.split_from_id}")
        if task.split_task_ids:
            click.echo(f"  Split into: {', '.join(task.split_task_ids)}")

        comments = comments_mod.list_comments(db, task.id)
        if comments:
            click.echo("  Comments:")
            for c in comments:
                click.echo(f"    #{c.id} [{c.created_at}] {c.author_id}: {c.content}")

        activities = tasks_mod.get_task_activities(db, task.id)
        if activities:
            click.echo("  History:")
            for a in activities:
                meta = f" {json.dumps(a.metadata)}" if a.metadata else ""
                click.echo(f"    [{a.created_at}] {a.type}{meta}")


@task_group.command("update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.option("--priority", "-p", type=click.Choice(PRIORITIES), default=None)
@click.option("--assignee", default=None, help="Assignee user ID ('' to unassign)")
@click.option("--team", default=None, help="Team key ('' to clear)")
@click.option("--epic", "epic_id", default=None, help="Epic ID ('' to clear)")
def task_update(task_id, title, description, status, priority, assignee, team, epic_id):
    """Update task fields."""
    fields = {}
    if description is not None:
        fields["description"] = description or None
    if assignee is not None:
        fields["assignee_id"] = assignee or None
    if team is not None:
        fields["team"] = team or None
    if epic_id is not None:
        fields["epic_id"] = epic_id or None

    with _get_db() as db:
        task = tasks_mod.update_task(
            db, task_id, _user(db), title=title, status=status, priority=priority, **fields
        )
        click.echo(f"Updated {task.task_key}: {task.title} ({task.status}, {task.priority})")


@task_group.command("move")
@click.argument("task_id")
@click.option("--sprint", "sprint_id", default=None, help="Destination sprint ID")
@click.option("--backlog", is_flag=True, help="Move to the project backlog")
@click.option("--order", type=int, default=None, help="Position in the destination (end when omitted)")
def task_move(task_id, sprint_id, backlog, order):
    """Move a task within its sprint or to another sprint or the backlog."""
    with _get_db() as db:
        task = tasks_mod.require_task(db, task_id)
        if backlog:
            target = None
        elif sprint_id:
            target = sprint_id
        else:
            target = task.sprint_id
        task = tasks_mod.move_task(db, task.id, _user(db), target, order)
        click.echo(
            f"Moved {task.task_key} to {tasks_mod.sprint_name(db, task.sprint_id)} at order {task.position}"
        )


@task_group.command("split")
@click.argument("task_id")
@click.option("--sprint", "sprint_id", default=None, help="Destination sprint (same sprint when omitted)")
@click.option("--backlog", is_flag=True, help="Split into the project backlog")
@click.option("--comments/--no-comments", default=True, help="Copy comments to the new task")
@click.option("--description/--no-description", default=True, help="Copy the description")
def task_split(task_id, sprint_id, backlog, comments, description):
    """Continue a task as the next task of its split chain."""
    if backlog:
        target = None
    elif sprint_id:
        target = sprint_id
    else:
        target = tasks_mod.UNSET

    with _get_db() as db:
        result = workflow_mod.split_task(
            db,
            task_id,
            _user(db),
            target_sprint_id=target,
            transfer_comments=comments,
            transfer_description=description,
        )
        click.echo(f"Split {result.source.task_key} into {result.task.task_key}: {result.task.title}")
        click.echo(f"  Sprint: {tasks_mod.sprint_name(db, result.task.sprint_id)}")
        click.echo(f"  Comments copied: {result.comments_copied}")


@task_group.command("chain")
@click.argument("task_id")
def task_chain(task_id):
    """Show the split chain a task belongs to."""
    with _get_db() as db:
        task = tasks_mod.require_task(db, task_id)
        chain = chains_mod.materialize_chain(db, task.id)
        click.echo(f"Chain of {chain.total_tasks} tasks across {chain.sprint_count} sprints")
        for entry in chain.entries:
            marker = " <" if entry.is_current else ""
            sprint = entry.sprint["name"] if entry.sprint else "Backlog"
            icon = STATUS_ICONS.get(entry.status, "?")
            click.echo(f"  {'  ' * entry.depth}{icon} {entry.title} [{sprint}]{marker}")


@task_group.command("comment")
@click.argument("task_id")
@click.argument("content")
@click.option("--mention", "-m", multiple=True, help="User ID to mention (repeatable)")
def task_comment(task_id, content, mention):
    """Comment on a task."""
    with _get_db() as db:
        comment = comments_mod.add_comment(db, task_id, _user(db), content, list(mention))
        click.echo(f"Added comment {comment.id}")
        if comment.mention_ids:
            click.echo(f"  Mentioned: {', '.join(comment.mention_ids)}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task (creator or admin only)."""
    with _get_db() as db:
        task = tasks_mod.require_task(db, task_id)
        tasks_mod.delete_task(db, task.id, _user(db))
        click.echo(f"Deleted task: {task.task_key}")


@task_group.command("delete-comment")
@click.argument("comment_id", type=int)
def task_delete_comment(comment_id):
    """Delete a comment (author or admin only)."""
    with _get_db() as db:
        comments_mod.delete_comment(db, comment_id, _user(db))
        click.echo(f"Deleted comment {comment_id}")


# ── Epic Commands ─────────────────────────────────────────────────────────────


@main.group("epic")
def epic_group():
    """Manage epics."""
    pass


@epic_group.command("add")
@click.argument("name")
@click.option("--project", required=True, help="Project ID")
@click.option("--description", "-d", default=None)
@click.option("--color", default=None, help="Hex color, e.g. #6366f1")
@click.option("--start", "start_date", default=None, help="Start date (YYYY-MM-DD)")
@click.option("--end", "end_date", default=None, help="End date (YYYY-MM-DD)")
def epic_add(name, project, description, color, start_date, end_date):
    """Create an epic at the end of the project's epic list."""
    with _get_db() as db:
        epic = epics_mod.create_epic(
            db, project, name, _user(db), description, color, start_date, end_date
        )
        click.echo(f"Created epic: {epic.id}")
        click.echo(f"  Name: {epic.name}")
        click.echo(f"  Order: {epic.position}")


@epic_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def epic_list(project, json_output):
    """List a project's epics in rank order."""
    with _get_db() as db:
        epics = epics_mod.list_epics(db, project)

        if json_output:
            click.echo(
                json.dumps(
                    [
                        {"id": e.id, "name": e.name, "order": e.position, "task_count": e.task_count}
                        for e in epics
                    ],
                    indent=2,
                )
            )
            return

        if not epics:
            click.echo("No epics found.")
            return
        for e in epics:
            click.echo(f"  {e.position}. {e.name} ({e.task_count} tasks) {e.id}")


@epic_group.command("show")
@click.argument("epic_id")
def epic_show(epic_id):
    """Show an epic and its tasks."""
    with _get_db() as db:
        epic = epics_mod.require_epic(db, epic_id, with_tasks=True)
        click.echo(f"Epic: {epic.name} ({epic.id})")
        if epic.description:
            click.echo(f"  Description: {epic.description}")
        if epic.start_date or epic.end_date:
            click.echo(f"  Dates: {epic.start_date or '?'} .. {epic.end_date or '?'}")
        for task in epic.tasks:
            click.echo(f"  {_task_line(task)} [{tasks_mod.sprint_name(db, task.sprint_id)}]")


@epic_group.command("move")
@click.argument("epic_id")
@click.option("--order", type=int, required=True, help="New rank in the project")
def epic_move(epic_id, order):
    """Re-rank an epic within its project."""
    with _get_db() as db:
        _user(db)
        epic = epics_mod.update_epic(db, epic_id, order=order)
        click.echo(f"Moved epic {epic.name} to order {epic.position}")


@epic_group.command("delete")
@click.argument("epic_id")
def epic_delete(epic_id):
    """Delete an epic; its tasks are kept."""
    with _get_db() as db:
        unlinked = epics_mod.delete_epic(db, epic_id, _user(db))
        click.echo(f"Deleted epic {epic_id} ({unlinked} tasks unlinked)")


# ── Team Commands ─────────────────────────────────────────────────────────────


@main.group("team")
def team_group():
    """Manage a project's teams."""
    pass


@team_group.command("add")
@click.argument("name")
@click.option("--project", required=True, help="Project ID")
@click.option("--key", "-k", required=True, help="Team key used on tasks")
@click.option("--color", default=None, help="Hex color, e.g. #64748b")
def team_add(name, project, key, color):
    """Define a team (admin only)."""
    with _get_db() as db:
        team = teams_mod.create_team(db, project, name, key, _user(db), color)
        click.echo(f"Created team: {team.key} ({team.name})")


@team_group.command("list")
@click.option("--project", required=True, help="Project ID")
def team_list(project):
    """List a project's teams."""
    with _get_db() as db:
        teams = teams_mod.list_teams(db, project)
        if not teams:
            click.echo("No teams found.")
            return
        for t in teams:
            click.echo(f"  {t.position}. {t.key}: {t.name} {t.id}")


@team_group.command("delete")
@click.argument("team_id")
def team_delete(team_id):
    """Delete a team and clear it from tasks (admin only)."""
    with _get_db() as db:
        cleared = teams_mod.delete_team(db, team_id, _user(db))
        click.echo(f"Deleted team {team_id} ({cleared} tasks cleared)")


# ── Notification Commands ─────────────────────────────────────────────────────


@main.command("notifications")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--mark-read", is_flag=True, help="Mark all notifications read")
def notifications_cmd(unread, mark_read):
    """List your notifications."""
    with _get_db() as db:
        user = _user(db)
        if mark_read:
            count = notifications_mod.mark_read(db, user.id)
            click.echo(f"Marked {count} notifications read.")
            return

        items = notifications_mod.list_notifications(db, user.id, unread_only=unread)
        if not items:
            click.echo("No notifications.")
            return
        for n in items:
            flag = " " if n.read else "*"
            task = tasks_mod.get_task(db, n.task_id) if n.task_id else None
            label = f"{task.task_key}: {task.title}" if task else "-"
            click.echo(f"  {flag} {n.type} {label}")


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the JSON API."""
    from sprintboard.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from sprintboard.mcp.server import mcp
    from sprintboard.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_line(task) -> str:
    icon = STATUS_ICONS.get(task.status, "?")
    assignee = f" @{task.assignee_id}" if task.assignee_id else ""
    return f"{icon} {task.position}. {task.task_key} {task.title} ({task.status}, {task.priority}){assignee}"


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "task_key": task.task_key,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "order": task.position,
        "project": task.project_id,
        "sprint_id": task.sprint_id,
        "epic_id": task.epic_id,
        "team": task.team,
        "split_from_id": task.split_from_id,
        "assignee_id": task.assignee_id,
    }


if __name__ == "__main__":
    main()
