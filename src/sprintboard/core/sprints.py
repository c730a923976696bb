"""Sprint management operations and the sprint lifecycle."""

import logging
import sqlite3

from sprintboard.core import notifications as notifications_mod
from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core.users import require_admin
from sprintboard.db.engine import transaction
from sprintboard.db.models import SPRINT_STATUSES, TASK_STATUSES, Sprint, Task, User, parse_dt
from sprintboard.errors import NotFoundError, PreconditionFailedError
from sprintboard.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "PLANNED": {"ACTIVE"},
    "ACTIVE": {"UAT", "COMPLETED"},
    "UAT": {"COMPLETED"},
    "COMPLETED": set(),
}

# Admin-only ways back into a running sprint.
REACTIVATIONS = {("UAT", "ACTIVE"), ("COMPLETED", "ACTIVE")}


def create_sprint(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    start_date: str | None = None,
    end_date: str | None = None,
    status: str = "PLANNED",
) -> Sprint:
    """Create a sprint after the project's last one."""
    name = name.strip()
    if not name:
        raise ValueError("Name is required")
    if status not in SPRINT_STATUSES:
        raise ValueError(f"Invalid sprint status: {status}")

    sprint_id = tasks_mod.new_id()
    with transaction(db):
        projects_mod.require_project(db, project_id)
        if status == "ACTIVE":
            _ensure_no_active(db, project_id)
        row = db.execute(
            "SELECT MAX(position) AS max_pos FROM sprints WHERE project_id = ?",
            (project_id,),
        ).fetchone()
        position = 0 if row["max_pos"] is None else row["max_pos"] + 1
        db.execute(
            """INSERT INTO sprints (id, project_id, name, status, position, start_date, end_date)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (sprint_id, project_id, name, status, position, start_date, end_date),
        )
    return get_sprint(db, sprint_id)


def get_sprint(db: sqlite3.Connection, sprint_id: str, with_tasks: bool = False) -> Sprint | None:
    row = db.execute("SELECT * FROM sprints WHERE id = ?", (sprint_id,)).fetchone()
    if not row:
        return None
    sprint = _row_to_sprint(row)
    if with_tasks:
        sprint.tasks = tasks_mod.list_tasks(db, sprint.project_id, sprint_id=sprint.id)
    return sprint


def require_sprint(db: sqlite3.Connection, sprint_id: str, with_tasks: bool = False) -> Sprint:
    sprint = get_sprint(db, sprint_id, with_tasks=with_tasks)
    if not sprint:
        raise NotFoundError(f"Sprint not found: {sprint_id}")
    return sprint


def list_sprints(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    with_tasks: bool = False,
) -> list[Sprint]:
    """List a project's sprints in board order."""
    query = "SELECT * FROM sprints WHERE project_id = ?"
    params: list = [project_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY position ASC"
    sprints = [_row_to_sprint(r) for r in db.execute(query, params).fetchall()]
    if with_tasks:
        for sprint in sprints:
            sprint.tasks = tasks_mod.list_tasks(db, project_id, sprint_id=sprint.id)
    return sprints


def sprint_tasks(db: sqlite3.Connection, sprint_id: str) -> list[Task]:
    """Tasks of a sprint in board order."""
    sprint = require_sprint(db, sprint_id)
    return tasks_mod.list_tasks(db, sprint.project_id, sprint_id=sprint.id)


def update_sprint(
    db: sqlite3.Connection,
    sprint_id: str,
    name: str | None = None,
    start_date=tasks_mod.UNSET,
    end_date=tasks_mod.UNSET,
    status: str | None = None,
    user: User | None = None,
) -> Sprint:
    """Rename a sprint, change its dates and optionally its status.

    A status change follows the same rules as ``set_sprint_status`` and is
    written in the same transaction as the other fields.
    """
    if status is not None:
        _check_status(status)
        if user is None:
            raise ValueError("Changing a sprint status needs an acting user")

    updates: dict = {}
    if name is not None and name.strip():
        updates["name"] = name.strip()
    if start_date is not tasks_mod.UNSET:
        updates["start_date"] = start_date
    if end_date is not tasks_mod.UNSET:
        updates["end_date"] = end_date

    changed_from = None
    with transaction(db):
        sprint = require_sprint(db, sprint_id)
        if updates:
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            db.execute(
                f"UPDATE sprints SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
                list(updates.values()) + [sprint_id],
            )
        if status is not None and status != sprint.status:
            _transition(db, sprint, status, user)
            changed_from = sprint.status

    if changed_from is not None:
        _announce_status(db, sprint_id, changed_from, user)
    return get_sprint(db, sprint_id)


def set_sprint_status(
    db: sqlite3.Connection,
    sprint_id: str,
    status: str,
    user: User,
) -> Sprint:
    """Advance a sprint along PLANNED -> ACTIVE -> UAT -> COMPLETED.

    Moving a UAT or COMPLETED sprint back to ACTIVE is reserved for admins.
    Only one sprint per project may be ACTIVE.
    """
    _check_status(status)

    with transaction(db):
        sprint = require_sprint(db, sprint_id)
        if sprint.status == status:
            return sprint
        _transition(db, sprint, status, user)

    _announce_status(db, sprint_id, sprint.status, user)
    return get_sprint(db, sprint_id)


def _check_status(status: str):
    if status not in SPRINT_STATUSES:
        raise ValueError(f"Invalid sprint status: {status}")


def _transition(db: sqlite3.Connection, sprint: Sprint, status: str, user: User):
    if (sprint.status, status) in REACTIVATIONS:
        require_admin(user)
    elif status not in TRANSITIONS[sprint.status]:
        raise PreconditionFailedError(
            f"Cannot move sprint from {sprint.status} to {status}"
        )

    if status == "ACTIVE":
        _ensure_no_active(db, sprint.project_id, exclude=sprint.id)

    set_status(db, sprint.id, status)


def _announce_status(db: sqlite3.Connection, sprint_id: str, previous: str, user: User):
    sprint = get_sprint(db, sprint_id)
    logger.info("Sprint %s moved from %s to %s by %s", sprint.name, previous, sprint.status, user.id)
    notifications_mod.announce(
        projects_mod.get_project(db, sprint.project_id),
        f"{sprint.name} is now {sprint.status}",
        slack_mod.format_sprint_status(sprint.name, sprint_summary(db, sprint.id)["counts"]),
    )


def set_status(db: sqlite3.Connection, sprint_id: str, status: str):
    """Write a sprint status without lifecycle checks. Runs in the caller's transaction."""
    db.execute(
        "UPDATE sprints SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status, sprint_id),
    )


def active_sprint(db: sqlite3.Connection, project_id: str) -> Sprint | None:
    row = db.execute(
        "SELECT * FROM sprints WHERE project_id = ? AND status = 'ACTIVE' ORDER BY position LIMIT 1",
        (project_id,),
    ).fetchone()
    return _row_to_sprint(row) if row else None


def next_planned_sprint(
    db: sqlite3.Connection,
    project_id: str,
    exclude: str | None = None,
) -> Sprint | None:
    """The lowest-ordered PLANNED sprint of the project."""
    row = db.execute(
        """SELECT * FROM sprints
           WHERE project_id = ? AND status = 'PLANNED' AND id IS NOT ?
           ORDER BY position ASC LIMIT 1""",
        (project_id, exclude),
    ).fetchone()
    return _row_to_sprint(row) if row else None


def delete_sprint(db: sqlite3.Connection, sprint_id: str, user: User) -> bool:
    """Delete a sprint, returning its tasks to the end of the backlog in order."""
    require_admin(user)
    with transaction(db):
        sprint = require_sprint(db, sprint_id, with_tasks=True)
        for task in sprint.tasks:
            ordering_mod.append_to_container(db, task.id, None)
            tasks_mod.log_activity(
                db, task.id, user.id, "MOVED_TO_SPRINT", {"from": sprint.name, "to": "Backlog"}
            )
        db.execute("DELETE FROM sprints WHERE id = ?", (sprint.id,))

    logger.info("Deleted sprint %s, %d tasks returned to backlog", sprint.name, len(sprint.tasks))
    return True


def sprint_summary(db: sqlite3.Connection, sprint_id: str) -> dict:
    """Task counts per status and completion percentage."""
    sprint = require_sprint(db, sprint_id)
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE sprint_id = ? GROUP BY status",
        (sprint_id,),
    ).fetchall()
    counts = {s: 0 for s in TASK_STATUSES}
    for r in rows:
        counts[r["status"]] = r["n"]
    total = sum(counts.values())
    finished = counts["DONE"] + counts["LIVE"]
    progress = (finished / total * 100) if total > 0 else 0
    return {
        "sprint_id": sprint.id,
        "name": sprint.name,
        "status": sprint.status,
        "counts": counts,
        "total": total,
        "progress_pct": round(progress, 1),
    }


def _ensure_no_active(db: sqlite3.Connection, project_id: str, exclude: str | None = None):
    current = active_sprint(db, project_id)
    if current and current.id != exclude:
        raise PreconditionFailedError(
            f"Sprint '{current.name}' is already active. Complete it or move it to UAT first."
        )


def _row_to_sprint(row: sqlite3.Row) -> Sprint:
    return Sprint(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        status=row["status"],
        position=row["position"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
