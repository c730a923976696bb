"""In-app notifications and best-effort Slack announcements."""

import logging
import sqlite3

from sprintboard.config import get_config
from sprintboard.db.engine import transaction
from sprintboard.db.models import NOTIFICATION_TYPES, Notification, Project, parse_dt
from sprintboard.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


def create_notification(
    db: sqlite3.Connection,
    notification_type: str,
    user_id: str,
    task_id: str | None = None,
    comment_id: int | None = None,
) -> int:
    """Insert a notification row. Runs in the caller's transaction."""
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Invalid notification type: {notification_type}")
    cur = db.execute(
        """INSERT INTO notifications (type, user_id, task_id, comment_id)
           VALUES (?, ?, ?, ?)""",
        (notification_type, user_id, task_id, comment_id),
    )
    return cur.lastrowid


def list_notifications(
    db: sqlite3.Connection,
    user_id: str,
    unread_only: bool = False,
) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND read = 0"
    query += " ORDER BY created_at DESC, id DESC"
    rows = db.execute(query, (user_id,)).fetchall()
    return [
        Notification(
            id=r["id"],
            type=r["type"],
            user_id=r["user_id"],
            task_id=r["task_id"],
            comment_id=r["comment_id"],
            read=bool(r["read"]),
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def mark_read(
    db: sqlite3.Connection,
    user_id: str,
    notification_ids: list[int] | None = None,
) -> int:
    """Mark notifications read. All of the user's unread ones when no ids are given."""
    with transaction(db):
        if notification_ids:
            placeholders = ", ".join("?" for _ in notification_ids)
            cur = db.execute(
                f"""UPDATE notifications SET read = 1
                    WHERE user_id = ? AND read = 0 AND id IN ({placeholders})""",
                [user_id, *notification_ids],
            )
        else:
            cur = db.execute(
                "UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0",
                (user_id,),
            )
    return cur.rowcount


def task_url(task_id: str) -> str:
    return f"{get_config().base_url}/?task={task_id}"


def announce(project: Project | None, text: str, blocks: list[dict] | None = None) -> bool:
    """Post to the project's Slack channel. Failures are logged, never raised."""
    config = get_config()
    if not project or not project.slack_channel or not config.slack_bot_token:
        logger.debug("Slack announcement skipped: %s", text)
        return False
    try:
        slack_mod.send_message(config.slack_bot_token, project.slack_channel, text, blocks)
    except Exception:
        logger.exception("Failed to send Slack notification to %s", project.slack_channel)
        return False
    return True
