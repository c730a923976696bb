"""Epics: ranked groups of tasks inside a project."""

import logging
import sqlite3

from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.db.engine import transaction
from sprintboard.db.models import Epic, User, parse_dt
from sprintboard.errors import NotFoundError

logger = logging.getLogger(__name__)

_SELECT = """SELECT e.*, (SELECT COUNT(*) FROM tasks t WHERE t.epic_id = e.id) AS task_count
             FROM epics e"""


def create_epic(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    user: User,
    description: str | None = None,
    color: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
) -> Epic:
    """Create an epic after the project's last one."""
    name = name.strip()
    if not name:
        raise ValueError("Name is required")

    epic_id = tasks_mod.new_id()
    with transaction(db):
        projects_mod.require_project(db, project_id)
        db.execute(
            """INSERT INTO epics (id, project_id, name, description, color, position,
                                  start_date, end_date, created_by_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                epic_id, project_id, name, description, color or "#6366f1",
                ordering_mod.next_rank(db, "epics", project_id),
                start_date, end_date, user.id,
            ),
        )
    logger.info("Epic %s created in project %s by %s", name, project_id, user.id)
    return get_epic(db, epic_id)


def get_epic(db: sqlite3.Connection, epic_id: str, with_tasks: bool = False) -> Epic | None:
    row = db.execute(f"{_SELECT} WHERE e.id = ?", (epic_id,)).fetchone()
    if not row:
        return None
    epic = _row_to_epic(row)
    if with_tasks:
        epic.tasks = tasks_mod.list_tasks(db, epic.project_id, epic_id=epic.id)
    return epic


def require_epic(db: sqlite3.Connection, epic_id: str, with_tasks: bool = False) -> Epic:
    epic = get_epic(db, epic_id, with_tasks=with_tasks)
    if not epic:
        raise NotFoundError(f"Epic not found: {epic_id}")
    return epic


def list_epics(db: sqlite3.Connection, project_id: str) -> list[Epic]:
    """A project's epics in rank order, with their task counts."""
    rows = db.execute(
        f"{_SELECT} WHERE e.project_id = ? ORDER BY e.position", (project_id,)
    ).fetchall()
    return [_row_to_epic(r) for r in rows]


def update_epic(
    db: sqlite3.Connection,
    epic_id: str,
    name: str | None = None,
    description=tasks_mod.UNSET,
    color: str | None = None,
    start_date=tasks_mod.UNSET,
    end_date=tasks_mod.UNSET,
    order: int | None = None,
) -> Epic:
    """Edit an epic. ``order`` re-ranks it, shifting its neighbours."""
    updates: dict = {}
    if name is not None and name.strip():
        updates["name"] = name.strip()
    if color:
        updates["color"] = color
    for column, value in (
        ("description", description),
        ("start_date", start_date),
        ("end_date", end_date),
    ):
        if value is not tasks_mod.UNSET:
            updates[column] = value

    with transaction(db):
        require_epic(db, epic_id)
        if updates:
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            db.execute(
                f"UPDATE epics SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
                list(updates.values()) + [epic_id],
            )
        if order is not None:
            ordering_mod.move_rank(db, "epics", epic_id, order)
    return get_epic(db, epic_id)


def reorder_epics(db: sqlite3.Connection, project_id: str, epic_ids: list[str]) -> list[Epic]:
    """Rank every epic of a project in the given order."""
    projects_mod.require_project(db, project_id)
    ordering_mod.set_ranks(db, "epics", project_id, epic_ids)
    return list_epics(db, project_id)


def delete_epic(db: sqlite3.Connection, epic_id: str, user: User) -> int:
    """Delete an epic. Its tasks are kept and unlinked; returns how many."""
    with transaction(db):
        epic = require_epic(db, epic_id)
        db.execute("DELETE FROM epics WHERE id = ?", (epic.id,))
        ordering_mod.close_rank_gap(db, "epics", epic.project_id, epic.position)

    logger.info("Epic %s deleted by %s, %d tasks unlinked", epic.name, user.id, epic.task_count)
    return epic.task_count


def _row_to_epic(row: sqlite3.Row) -> Epic:
    return Epic(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        created_by_id=row["created_by_id"],
        description=row["description"],
        color=row["color"],
        position=row["position"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        task_count=row["task_count"],
    )
