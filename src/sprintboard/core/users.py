"""User records and the acting-user checks used by every mutation."""

import sqlite3

from sprintboard.core.projects import slugify
from sprintboard.db.engine import transaction
from sprintboard.db.models import ROLES, User, parse_dt
from sprintboard.errors import ForbiddenError, UnauthorizedError


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique user ID from a slug, appending a number if needed."""
    base_slug = base_slug or "user"
    existing = db.execute("SELECT id FROM users WHERE id = ?", (base_slug,)).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute("SELECT id FROM users WHERE id = ?", (candidate,)).fetchone()
        if not existing:
            return candidate
        i += 1


def create_user(
    db: sqlite3.Connection,
    name: str,
    email: str,
    role: str = "MEMBER",
) -> User:
    """Create a new user."""
    role = role.upper()
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}")

    with transaction(db):
        user_id = _unique_id(db, slugify(name))
        db.execute(
            "INSERT INTO users (id, name, email, role) VALUES (?, ?, ?, ?)",
            (user_id, name, email.strip().lower(), role),
        )
    return get_user(db, user_id)


def get_user(db: sqlite3.Connection, user_id: str) -> User | None:
    row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def list_users(db: sqlite3.Connection) -> list[User]:
    rows = db.execute("SELECT * FROM users ORDER BY name").fetchall()
    return [_row_to_user(r) for r in rows]


def current_user(db: sqlite3.Connection, user_id: str | None) -> User:
    """Resolve the acting user for a request."""
    if not user_id:
        raise UnauthorizedError("Unauthorized")
    user = get_user(db, user_id)
    if not user:
        raise UnauthorizedError("Unauthorized")
    return user


def require_admin(user: User) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin role required")
    return user


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        created_at=parse_dt(row["created_at"]),
    )
