"""Position bookkeeping for tasks inside a sprint or a project backlog.

A container is a ``(project_id, sprint_id)`` pair, where ``sprint_id`` is
``None`` for the backlog. Positions inside a container always form the dense
sequence ``0..n-1``. Every function here that shifts positions expects to run
inside ``transaction()``; ``reorder_task`` and ``append_to_container`` open one
themselves.

Epics and teams are ranked the same way inside their project; the
``*_rank`` helpers below handle those flat lists.
"""

import sqlite3

from sprintboard.db.engine import transaction
from sprintboard.errors import NotFoundError, PreconditionFailedError

_CONTAINER = "project_id = ? AND sprint_id IS ?"


def next_order(db: sqlite3.Connection, project_id: str, sprint_id: str | None) -> int:
    """Position one past the current end of the container (0 when empty)."""
    row = db.execute(
        f"SELECT MAX(position) AS max_pos FROM tasks WHERE {_CONTAINER}",
        (project_id, sprint_id),
    ).fetchone()
    return 0 if row["max_pos"] is None else row["max_pos"] + 1


def container_size(db: sqlite3.Connection, project_id: str, sprint_id: str | None) -> int:
    row = db.execute(
        f"SELECT COUNT(*) AS n FROM tasks WHERE {_CONTAINER}",
        (project_id, sprint_id),
    ).fetchone()
    return row["n"]


def container_orders(db: sqlite3.Connection, project_id: str, sprint_id: str | None) -> list[int]:
    rows = db.execute(
        f"SELECT position FROM tasks WHERE {_CONTAINER} ORDER BY position",
        (project_id, sprint_id),
    ).fetchall()
    return [r["position"] for r in rows]


def close_gap(db: sqlite3.Connection, project_id: str, sprint_id: str | None, position: int):
    """Pull every task after ``position`` one slot forward."""
    db.execute(
        f"""UPDATE tasks SET position = position - 1
            WHERE {_CONTAINER} AND position > ?""",
        (project_id, sprint_id, position),
    )


def open_slot(db: sqlite3.Connection, project_id: str, sprint_id: str | None, position: int):
    """Push every task at or after ``position`` one slot back."""
    db.execute(
        f"""UPDATE tasks SET position = position + 1
            WHERE {_CONTAINER} AND position >= ?""",
        (project_id, sprint_id, position),
    )


def reorder_task(
    db: sqlite3.Connection,
    task_id: str,
    target_sprint_id: str | None,
    new_order: int,
) -> tuple[str | None, int]:
    """Move a task to ``new_order`` in the target container.

    Returns the ``(sprint_id, position)`` the task was moved away from.
    """
    with transaction(db):
        row = db.execute(
            "SELECT project_id, sprint_id, position FROM tasks WHERE id = ?",
            (task_id,),
        ).fetchone()
        if not row:
            raise NotFoundError(f"Task not found: {task_id}")

        project_id = row["project_id"]
        source_sprint_id = row["sprint_id"]
        old_order = row["position"]
        same_container = source_sprint_id == target_sprint_id

        if target_sprint_id is not None and not same_container:
            check_sprint(db, target_sprint_id, project_id)

        size = container_size(db, project_id, target_sprint_id)
        upper = size - 1 if same_container else size
        if not 0 <= new_order <= upper:
            raise ValueError(f"Order {new_order} out of range 0..{upper}")

        if same_container:
            if new_order > old_order:
                db.execute(
                    f"""UPDATE tasks SET position = position - 1
                        WHERE {_CONTAINER} AND position > ? AND position <= ?""",
                    (project_id, source_sprint_id, old_order, new_order),
                )
            elif new_order < old_order:
                db.execute(
                    f"""UPDATE tasks SET position = position + 1
                        WHERE {_CONTAINER} AND position >= ? AND position < ?""",
                    (project_id, source_sprint_id, new_order, old_order),
                )
            else:
                return source_sprint_id, old_order
        else:
            close_gap(db, project_id, source_sprint_id, old_order)
            open_slot(db, project_id, target_sprint_id, new_order)

        db.execute(
            """UPDATE tasks SET sprint_id = ?, position = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (target_sprint_id, new_order, task_id),
        )
    return source_sprint_id, old_order


def append_to_container(
    db: sqlite3.Connection,
    task_id: str,
    target_sprint_id: str | None,
) -> int:
    """Move a task to the end of another container. Returns its new position."""
    with transaction(db):
        row = db.execute("SELECT project_id, sprint_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Task not found: {task_id}")
        if row["sprint_id"] == target_sprint_id:
            end = container_size(db, row["project_id"], target_sprint_id) - 1
        else:
            end = container_size(db, row["project_id"], target_sprint_id)
        reorder_task(db, task_id, target_sprint_id, end)
    return end


def check_sprint(db: sqlite3.Connection, sprint_id: str, project_id: str) -> sqlite3.Row:
    """Return the sprint row, or raise if it is missing or in another project."""
    sprint = db.execute("SELECT * FROM sprints WHERE id = ?", (sprint_id,)).fetchone()
    if not sprint:
        raise NotFoundError(f"Sprint not found: {sprint_id}")
    if sprint["project_id"] != project_id:
        raise PreconditionFailedError(
            f"Sprint {sprint_id} belongs to another project"
        )
    return sprint


# ── Project-level ranks (epics, teams) ────────────────────────────────────────

_RANKED = {"epics": "Epic", "teams": "Team"}


def _ranked(table: str) -> str:
    if table not in _RANKED:
        raise ValueError(f"Not a ranked table: {table}")
    return table


def next_rank(db: sqlite3.Connection, table: str, project_id: str) -> int:
    row = db.execute(
        f"SELECT MAX(position) AS max_pos FROM {_ranked(table)} WHERE project_id = ?",
        (project_id,),
    ).fetchone()
    return 0 if row["max_pos"] is None else row["max_pos"] + 1


def close_rank_gap(db: sqlite3.Connection, table: str, project_id: str, position: int):
    db.execute(
        f"UPDATE {_ranked(table)} SET position = position - 1 WHERE project_id = ? AND position > ?",
        (project_id, position),
    )


def move_rank(db: sqlite3.Connection, table: str, row_id: str, new_order: int) -> int:
    """Move one epic or team to ``new_order`` in its project. Returns the old position."""
    with transaction(db):
        row = db.execute(
            f"SELECT project_id, position FROM {_ranked(table)} WHERE id = ?", (row_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(f"{_RANKED[table]} not found: {row_id}")

        project_id, old_order = row["project_id"], row["position"]
        size = db.execute(
            f"SELECT COUNT(*) AS n FROM {table} WHERE project_id = ?", (project_id,)
        ).fetchone()["n"]
        if not 0 <= new_order <= size - 1:
            raise ValueError(f"Order {new_order} out of range 0..{size - 1}")

        if new_order > old_order:
            db.execute(
                f"""UPDATE {table} SET position = position - 1
                    WHERE project_id = ? AND position > ? AND position <= ?""",
                (project_id, old_order, new_order),
            )
        elif new_order < old_order:
            db.execute(
                f"""UPDATE {table} SET position = position + 1
                    WHERE project_id = ? AND position >= ? AND position < ?""",
                (project_id, new_order, old_order),
            )
        db.execute(f"UPDATE {table} SET position = ? WHERE id = ?", (new_order, row_id))
    return old_order


def set_ranks(db: sqlite3.Connection, table: str, project_id: str, ids: list[str]):
    """Rank a project's epics or teams in the order of ``ids``.

    ``ids`` must name every row of the project exactly once.
    """
    with transaction(db):
        existing = {
            r["id"]
            for r in db.execute(
                f"SELECT id FROM {_ranked(table)} WHERE project_id = ?", (project_id,)
            ).fetchall()
        }
        if len(ids) != len(set(ids)) or set(ids) != existing:
            raise ValueError(f"Expected every {table[:-1]} of project {project_id} exactly once")
        db.executemany(
            f"UPDATE {table} SET position = ? WHERE id = ?",
            [(position, row_id) for position, row_id in enumerate(ids)],
        )
