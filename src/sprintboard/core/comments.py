"""Task comments, @mentions and comment copying for splits."""

import sqlite3

from sprintboard.core import notifications as notifications_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.db.engine import transaction
from sprintboard.db.models import Comment, User, parse_dt
from sprintboard.errors import ForbiddenError, NotFoundError
from sprintboard.integrations import slack as slack_mod


def add_comment(
    db: sqlite3.Connection,
    task_id: str,
    user: User,
    content: str,
    mention_ids: list[str] | None = None,
) -> Comment:
    """Comment on a task and notify everyone mentioned except the author."""
    content = content.strip()
    if not content:
        raise ValueError("Content is required")
    mention_ids = list(dict.fromkeys(mention_ids or []))

    with transaction(db):
        task = tasks_mod.require_task(db, task_id)
        for uid in mention_ids:
            if not db.execute("SELECT 1 FROM users WHERE id = ?", (uid,)).fetchone():
                raise NotFoundError(f"User not found: {uid}")

        comment_id = _insert_comment(db, task.id, user.id, content, task.status, mention_ids)
        tasks_mod.log_activity(db, task.id, user.id, "COMMENT_ADDED", {"commentId": comment_id})

        notified = [uid for uid in mention_ids if uid != user.id]
        for uid in notified:
            notifications_mod.create_notification(
                db, "MENTION", uid, task_id=task.id, comment_id=comment_id
            )

    if notified:
        names = [
            r["name"]
            for r in db.execute(
                f"SELECT name FROM users WHERE id IN ({', '.join('?' for _ in notified)})",
                notified,
            ).fetchall()
        ]
        notifications_mod.announce(
            projects_mod.get_project(db, task.project_id),
            f"{user.name} mentioned {', '.join(names)} on {task.task_key}",
            slack_mod.format_mention(task.task_key, task.title, user.name, names, content),
        )
    return get_comment(db, comment_id)


def get_comment(db: sqlite3.Connection, comment_id: int) -> Comment | None:
    row = db.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
    if not row:
        return None
    comment = _row_to_comment(row)
    comment.mention_ids = _mentions(db, comment.id)
    return comment


def list_comments(db: sqlite3.Connection, task_id: str) -> list[Comment]:
    """Comments on a task, oldest first."""
    rows = db.execute(
        "SELECT * FROM comments WHERE task_id = ? ORDER BY created_at ASC, id ASC",
        (task_id,),
    ).fetchall()
    comments = []
    for row in rows:
        comment = _row_to_comment(row)
        comment.mention_ids = _mentions(db, comment.id)
        comments.append(comment)
    return comments


def delete_comment(db: sqlite3.Connection, comment_id: int, user: User) -> bool:
    """Delete a comment. Only its author or an admin may do so."""
    with transaction(db):
        comment = get_comment(db, comment_id)
        if not comment:
            raise NotFoundError(f"Comment not found: {comment_id}")
        if comment.author_id != user.id and not user.is_admin:
            raise ForbiddenError("You can only delete your own comments")
        db.execute("DELETE FROM comments WHERE id = ?", (comment.id,))
    return True


def count_comments(db: sqlite3.Connection, task_id: str) -> int:
    return db.execute(
        "SELECT COUNT(*) AS n FROM comments WHERE task_id = ?", (task_id,)
    ).fetchone()["n"]


def copy_comments(db: sqlite3.Connection, source_task_id: str, target_task_id: str) -> int:
    """Copy every comment of one task onto another, keeping author and mentions.

    Runs in the caller's transaction. No notifications are sent for copies.
    """
    copied = 0
    for comment in list_comments(db, source_task_id):
        _insert_comment(
            db,
            target_task_id,
            comment.author_id,
            comment.content,
            comment.task_status_at_creation,
            comment.mention_ids,
        )
        copied += 1
    return copied


def _insert_comment(
    db: sqlite3.Connection,
    task_id: str,
    author_id: str,
    content: str,
    task_status: str | None,
    mention_ids: list[str],
) -> int:
    cur = db.execute(
        """INSERT INTO comments (task_id, author_id, content, task_status_at_creation)
           VALUES (?, ?, ?, ?)""",
        (task_id, author_id, content, task_status),
    )
    comment_id = cur.lastrowid
    db.executemany(
        "INSERT INTO comment_mentions (comment_id, user_id) VALUES (?, ?)",
        [(comment_id, uid) for uid in mention_ids],
    )
    return comment_id


def _mentions(db: sqlite3.Connection, comment_id: int) -> list[str]:
    rows = db.execute(
        "SELECT user_id FROM comment_mentions WHERE comment_id = ? ORDER BY rowid",
        (comment_id,),
    ).fetchall()
    return [r["user_id"] for r in rows]


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        task_id=row["task_id"],
        author_id=row["author_id"],
        content=row["content"],
        task_status_at_creation=row["task_status_at_creation"],
        created_at=parse_dt(row["created_at"]),
    )
