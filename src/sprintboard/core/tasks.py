"""Task management operations."""

import json
import logging
import sqlite3
import uuid

from sprintboard.core import notifications as notifications_mod
from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import teams as teams_mod
from sprintboard.db.engine import transaction
from sprintboard.db.models import (
    ACTIVITY_TYPES,
    PRIORITIES,
    TASK_STATUSES,
    Activity,
    Task,
    User,
    parse_dt,
)
from sprintboard.errors import ForbiddenError, NotFoundError, PreconditionFailedError
from sprintboard.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

# Marks an optional argument the caller did not pass, where None is meaningful.
UNSET = object()


def new_id() -> str:
    return uuid.uuid4().hex


def create_task(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    user: User,
    description: str | None = None,
    sprint_id: str | None = None,
    assignee_id: str | None = None,
    team: str | None = None,
    status: str = "TODO",
    priority: str = "MEDIUM",
    epic_id: str | None = None,
) -> Task:
    """Create a task at the end of its sprint (or the backlog)."""
    title = title.strip()
    if not title:
        raise ValueError("Title is required")
    _check_choice("status", status, TASK_STATUSES)
    _check_choice("priority", priority, PRIORITIES)

    with transaction(db):
        projects_mod.require_project(db, project_id)
        if sprint_id is not None:
            ordering_mod.check_sprint(db, sprint_id, project_id)
        if epic_id is not None:
            _check_epic(db, epic_id, project_id)
        team = teams_mod.resolve_team(db, project_id, team)
        if assignee_id and _user_name(db, assignee_id) is None:
            raise NotFoundError(f"User not found: {assignee_id}")
        task_id = insert_task(
            db,
            project_id,
            title,
            user.id,
            description=description,
            sprint_id=sprint_id,
            assignee_id=assignee_id,
            team=team,
            status=status,
            priority=priority,
            epic_id=epic_id,
        )
        log_activity(db, task_id, user.id, "CREATED")
        if assignee_id and assignee_id != user.id:
            notifications_mod.create_notification(db, "ASSIGNMENT", assignee_id, task_id=task_id)

    task = get_task(db, task_id)
    logger.info("Created task %s in project %s", task.task_key, project_id)
    if assignee_id and assignee_id != user.id:
        _announce_assignment(db, task, user)
    return task


def insert_task(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    created_by_id: str,
    description: str | None = None,
    sprint_id: str | None = None,
    assignee_id: str | None = None,
    team: str | None = None,
    status: str = "TODO",
    priority: str = "MEDIUM",
    split_from_id: str | None = None,
    epic_id: str | None = None,
) -> str:
    """Insert a task row at the end of its container and return its id.

    Allocates the next task key from the project counter. Runs in the
    caller's transaction, so a rollback also releases the key.
    """
    task_id = new_id()
    task_key, task_number = projects_mod.allocate_task_key(db, project_id)
    position = ordering_mod.next_order(db, project_id, sprint_id)
    db.execute(
        """INSERT INTO tasks (id, project_id, task_key, task_number, title, description,
                              status, priority, position, team, sprint_id, epic_id, split_from_id,
                              assignee_id, assigned_at, created_by_id)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                   CASE WHEN ? IS NULL THEN NULL ELSE datetime('now') END, ?)""",
        (
            task_id, project_id, task_key, task_number, title, description,
            status, priority, position, team, sprint_id, epic_id, split_from_id,
            assignee_id, assignee_id, created_by_id,
        ),
    )
    return task_id


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID or by its human key (e.g. ``WEB-012``)."""
    row = db.execute(
        "SELECT * FROM tasks WHERE id = ? OR task_key = ?", (task_id, task_id)
    ).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    children = db.execute(
        "SELECT id FROM tasks WHERE split_from_id = ? ORDER BY created_at ASC, rowid ASC",
        (task.id,),
    ).fetchall()
    task.split_task_ids = [c["id"] for c in children]
    return task


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    sprint_id: str | None = None,
    backlog: bool = False,
    epic_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, in board order."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if epic_id:
        query += " AND epic_id = ?"
        params.append(epic_id)

    if backlog:
        query += " AND sprint_id IS NULL"
    elif sprint_id is not None:
        query += " AND sprint_id = ?"
        params.append(sprint_id)

    query += " ORDER BY sprint_id IS NOT NULL, sprint_id, position ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    user: User,
    title: str | None = None,
    description=UNSET,
    status: str | None = None,
    priority: str | None = None,
    assignee_id=UNSET,
    team=UNSET,
    epic_id=UNSET,
    sprint_id=UNSET,
    order: int | None = None,
) -> Task:
    """Update task fields, recording an activity for each tracked change.

    ``sprint_id`` and ``order`` also move the task, in the same transaction
    as the field changes: if the move is rejected nothing is written.
    """
    if status is not None:
        _check_choice("status", status, TASK_STATUSES)
    if priority is not None:
        _check_choice("priority", priority, PRIORITIES)

    assigned = False
    status_changed = False
    with transaction(db):
        task = require_task(db, task_id)
        updates: dict = {}

        if title is not None and title.strip() and title.strip() != task.title:
            updates["title"] = title.strip()

        if description is not UNSET and description != task.description:
            updates["description"] = description
            log_activity(db, task.id, user.id, "DESCRIPTION_UPDATED")

        if status is not None and status != task.status:
            updates["status"] = status
            if status == "DONE":
                updates["completed_at"] = _now(db)
            log_activity(db, task.id, user.id, "STATUS_CHANGED", {"from": task.status, "to": status})
            status_changed = True

        if priority is not None and priority != task.priority:
            updates["priority"] = priority
            log_activity(
                db, task.id, user.id, "PRIORITY_CHANGED", {"from": task.priority, "to": priority}
            )

        if assignee_id is not UNSET and assignee_id != task.assignee_id:
            new_assignee = _user_name(db, assignee_id) if assignee_id else None
            if assignee_id and new_assignee is None:
                raise NotFoundError(f"User not found: {assignee_id}")
            updates["assignee_id"] = assignee_id
            updates["assigned_at"] = _now(db) if assignee_id else None
            log_activity(
                db,
                task.id,
                user.id,
                "ASSIGNED",
                {"from": _user_name(db, task.assignee_id), "to": new_assignee},
            )
            if assignee_id and assignee_id != user.id:
                notifications_mod.create_notification(db, "ASSIGNMENT", assignee_id, task_id=task.id)
                assigned = True

        if team is not UNSET:
            team = teams_mod.resolve_team(db, task.project_id, team)
            if team != task.team:
                updates["team"] = team

        if epic_id is not UNSET and (epic_id or None) != task.epic_id:
            epic_id = epic_id or None
            if epic_id is not None:
                _check_epic(db, epic_id, task.project_id)
            updates["epic_id"] = epic_id

        if updates:
            set_parts = [f"{k} = ?" for k in updates]
            set_parts.append("updated_at = datetime('now')")
            db.execute(
                f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
                list(updates.values()) + [task.id],
            )

        target_sprint_id = task.sprint_id if sprint_id is UNSET else sprint_id
        if target_sprint_id != task.sprint_id or order is not None:
            _relocate(db, task, user, target_sprint_id, order)

    task = get_task(db, task.id)
    if assigned:
        _announce_assignment(db, task, user)
    if status_changed:
        project = projects_mod.get_project(db, task.project_id)
        notifications_mod.announce(
            project,
            f"{task.task_key} is now {task.status}",
            slack_mod.format_task_notification(
                task.task_key, task.title, task.status, project.name, notifications_mod.task_url(task.id)
            ),
        )
    return task


def move_task(
    db: sqlite3.Connection,
    task_id: str,
    user: User,
    target_sprint_id: str | None,
    new_order: int | None = None,
) -> Task:
    """Move a task within or across containers and record sprint changes.

    Without ``new_order`` the task goes to the end of the target container.
    """
    with transaction(db):
        task = require_task(db, task_id)
        _relocate(db, task, user, target_sprint_id, new_order)
    return get_task(db, task.id)


def _relocate(
    db: sqlite3.Connection,
    task: Task,
    user: User,
    target_sprint_id: str | None,
    new_order: int | None,
):
    if new_order is None:
        ordering_mod.append_to_container(db, task.id, target_sprint_id)
    else:
        ordering_mod.reorder_task(db, task.id, target_sprint_id, new_order)

    if task.sprint_id != target_sprint_id:
        log_activity(
            db,
            task.id,
            user.id,
            "MOVED_TO_SPRINT",
            {"from": sprint_name(db, task.sprint_id), "to": sprint_name(db, target_sprint_id)},
        )


def delete_task(db: sqlite3.Connection, task_id: str, user: User) -> bool:
    """Delete a task. Only its creator or an admin may do so."""
    with transaction(db):
        task = require_task(db, task_id)
        if not user.is_admin and task.created_by_id != user.id:
            raise ForbiddenError("You can only delete tasks you created")

        db.execute("DELETE FROM tasks WHERE id = ?", (task.id,))
        ordering_mod.close_gap(db, task.project_id, task.sprint_id, task.position)

    logger.info("Deleted task %s", task.task_key)
    return True


def log_activity(
    db: sqlite3.Connection,
    task_id: str,
    user_id: str,
    activity_type: str,
    metadata: dict | None = None,
):
    """Append an activity record. Runs in the caller's transaction."""
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Invalid activity type: {activity_type}")
    db.execute(
        "INSERT INTO activities (task_id, user_id, type, metadata) VALUES (?, ?, ?, ?)",
        (task_id, user_id, activity_type, json.dumps(metadata) if metadata is not None else None),
    )


def get_task_activities(db: sqlite3.Connection, task_id: str) -> list[Activity]:
    """Get the activity history for a task, newest first."""
    rows = db.execute(
        "SELECT * FROM activities WHERE task_id = ? ORDER BY created_at DESC, id DESC",
        (task_id,),
    ).fetchall()
    return [
        Activity(
            id=r["id"],
            task_id=r["task_id"],
            user_id=r["user_id"],
            type=r["type"],
            metadata=json.loads(r["metadata"]) if r["metadata"] else None,
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def sprint_name(db: sqlite3.Connection, sprint_id: str | None) -> str:
    if sprint_id is None:
        return "Backlog"
    row = db.execute("SELECT name FROM sprints WHERE id = ?", (sprint_id,)).fetchone()
    return row["name"] if row else "Unknown Sprint"


def _user_name(db: sqlite3.Connection, user_id: str | None) -> str | None:
    if not user_id:
        return None
    row = db.execute("SELECT name FROM users WHERE id = ?", (user_id,)).fetchone()
    return row["name"] if row else None


def _check_epic(db: sqlite3.Connection, epic_id: str, project_id: str):
    row = db.execute("SELECT project_id FROM epics WHERE id = ?", (epic_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Epic not found: {epic_id}")
    if row["project_id"] != project_id:
        raise PreconditionFailedError(f"Epic {epic_id} belongs to another project")


def _announce_assignment(db: sqlite3.Connection, task: Task, assigner: User):
    project = projects_mod.get_project(db, task.project_id)
    assignee = _user_name(db, task.assignee_id) or task.assignee_id
    notifications_mod.announce(
        project,
        f"{assigner.name} assigned {task.task_key} to {assignee}",
        slack_mod.format_assignment(
            task.task_key, task.title, assignee, assigner.name, notifications_mod.task_url(task.id)
        ),
    )


def _check_choice(name: str, value: str, allowed: tuple[str, ...]):
    if value not in allowed:
        raise ValueError(f"Invalid {name}: {value}. Expected one of {', '.join(allowed)}")


def _now(db: sqlite3.Connection) -> str:
    return db.execute("SELECT datetime('now') AS now").fetchone()["now"]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        created_by_id=row["created_by_id"],
        task_key=row["task_key"],
        task_number=row["task_number"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        position=row["position"],
        team=row["team"],
        sprint_id=row["sprint_id"],
        epic_id=row["epic_id"],
        split_from_id=row["split_from_id"],
        assignee_id=row["assignee_id"],
        assigned_at=parse_dt(row["assigned_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )
