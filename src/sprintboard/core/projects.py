"""Project management operations and the per-project task counter."""

import re
import sqlite3

from sprintboard.db.engine import transaction
from sprintboard.db.models import Project, parse_dt
from sprintboard.errors import NotFoundError


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    key: str,
    slack_channel: str | None = None,
) -> Project:
    """Create a new project. ``key`` prefixes every task key, e.g. ``WEB-001``."""
    key = key.strip().upper()
    if not re.fullmatch(r"[A-Z][A-Z0-9]{0,9}", key):
        raise ValueError(f"Invalid project key: {key!r}")

    with transaction(db):
        db.execute(
            """INSERT INTO projects (id, key, name, slack_channel)
               VALUES (?, ?, ?, ?)""",
            (project_id, key, name, slack_channel),
        )
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def require_project(db: sqlite3.Connection, project_id: str) -> Project:
    project = get_project(db, project_id)
    if not project:
        raise NotFoundError(f"Project not found: {project_id}")
    return project


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC, rowid DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {"name", "slack_channel"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    with transaction(db):
        db.execute(
            f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            values,
        )
    return get_project(db, project_id)


def allocate_task_key(db: sqlite3.Connection, project_id: str) -> tuple[str, int]:
    """Bump the project's task counter and return ``(task_key, task_number)``.

    The increment and the read happen in one statement, so concurrent callers
    never see the same number. Callers run this inside the transaction that
    creates the task; a rollback returns the number to the pool.
    """
    row = db.execute(
        """UPDATE projects SET task_counter = task_counter + 1
           WHERE id = ?
           RETURNING key, task_counter""",
        (project_id,),
    ).fetchone()
    if not row:
        raise NotFoundError(f"Project not found: {project_id}")
    number = row["task_counter"]
    return format_task_key(row["key"], number), number


def format_task_key(project_key: str, number: int) -> str:
    return f"{project_key}-{number:03d}"


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        key=row["key"],
        name=row["name"],
        task_counter=row["task_counter"],
        slack_channel=row["slack_channel"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
