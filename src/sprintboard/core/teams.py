"""Per-project team definitions that tasks are labelled with."""

import logging
import re
import sqlite3
import uuid

from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core.users import require_admin
from sprintboard.db.engine import transaction
from sprintboard.db.models import Team, User, parse_dt
from sprintboard.errors import NotFoundError, PreconditionFailedError

logger = logging.getLogger(__name__)


def team_key(value: str) -> str:
    """Normalize a team key: upper case, whitespace runs become underscores."""
    return re.sub(r"\s+", "_", value.strip()).upper()


def create_team(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    key: str,
    user: User,
    color: str | None = None,
) -> Team:
    """Define a team at the end of the project's team list. Admin only."""
    require_admin(user)
    name = name.strip()
    key = team_key(key or "")
    if not name or not key:
        raise ValueError("Name and key are required")

    team_id = uuid.uuid4().hex
    with transaction(db):
        projects_mod.require_project(db, project_id)
        if get_team_by_key(db, project_id, key):
            raise PreconditionFailedError(f"Team {key} already exists in project {project_id}")
        db.execute(
            """INSERT INTO teams (id, project_id, name, key, color, position)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                team_id, project_id, name, key, color or "#64748b",
                ordering_mod.next_rank(db, "teams", project_id),
            ),
        )
    logger.info("Team %s defined in project %s by %s", key, project_id, user.id)
    return get_team(db, team_id)


def get_team(db: sqlite3.Connection, team_id: str) -> Team | None:
    row = db.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
    return _row_to_team(row) if row else None


def get_team_by_key(db: sqlite3.Connection, project_id: str, key: str) -> Team | None:
    row = db.execute(
        "SELECT * FROM teams WHERE project_id = ? AND key = ?", (project_id, key)
    ).fetchone()
    return _row_to_team(row) if row else None


def list_teams(db: sqlite3.Connection, project_id: str) -> list[Team]:
    rows = db.execute(
        "SELECT * FROM teams WHERE project_id = ? ORDER BY position", (project_id,)
    ).fetchall()
    return [_row_to_team(r) for r in rows]


def resolve_team(db: sqlite3.Connection, project_id: str, team: str | None) -> str | None:
    """Map a team label given by a caller to the key of a defined team.

    Empty labels clear the team.
    """
    if team is None or not team.strip():
        return None
    key = team_key(team)
    if not get_team_by_key(db, project_id, key):
        raise NotFoundError(f"Team not found in project {project_id}: {key}")
    return key


def reorder_teams(db: sqlite3.Connection, project_id: str, team_ids: list[str], user: User) -> list[Team]:
    """Rank every team of a project in the given order. Admin only."""
    require_admin(user)
    projects_mod.require_project(db, project_id)
    ordering_mod.set_ranks(db, "teams", project_id, team_ids)
    return list_teams(db, project_id)


def delete_team(db: sqlite3.Connection, team_id: str, user: User) -> int:
    """Delete a team and clear it from the project's tasks. Admin only.

    Returns how many tasks lost their team.
    """
    require_admin(user)
    with transaction(db):
        team = get_team(db, team_id)
        if not team:
            raise NotFoundError(f"Team not found: {team_id}")
        cleared = db.execute(
            """UPDATE tasks SET team = NULL, updated_at = datetime('now')
               WHERE project_id = ? AND team = ?""",
            (team.project_id, team.key),
        ).rowcount
        db.execute("DELETE FROM teams WHERE id = ?", (team.id,))
        ordering_mod.close_rank_gap(db, "teams", team.project_id, team.position)

    logger.info("Deleted team %s, cleared from %d tasks", team.key, cleared)
    return cleared


def _row_to_team(row: sqlite3.Row) -> Team:
    return Team(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        key=row["key"],
        color=row["color"],
        position=row["position"],
        created_at=parse_dt(row["created_at"]),
    )
