"""Data models for sprintboard."""

from dataclasses import dataclass, field
from datetime import datetime

ROLES = ("ADMIN", "MEMBER")

SPRINT_STATUSES = ("PLANNED", "ACTIVE", "UAT", "COMPLETED")

TASK_STATUSES = ("TODO", "IN_PROGRESS", "READY_TO_TEST", "BLOCKED", "DONE", "LIVE")
OPEN_STATUSES = ("TODO", "IN_PROGRESS", "BLOCKED")

PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")

ACTIVITY_TYPES = (
    "CREATED",
    "STATUS_CHANGED",
    "PRIORITY_CHANGED",
    "ASSIGNED",
    "MOVED_TO_SPRINT",
    "SPLIT",
    "DESCRIPTION_UPDATED",
    "COMMENT_ADDED",
)

NOTIFICATION_TYPES = ("MENTION", "ASSIGNMENT")


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str = "MEMBER"
    created_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


@dataclass
class Project:
    id: str
    key: str
    name: str
    task_counter: int = 0
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Team:
    id: str
    project_id: str
    name: str
    key: str
    color: str = "#64748b"
    position: int = 0
    created_at: datetime | None = None


@dataclass
class Epic:
    id: str
    project_id: str
    name: str
    created_by_id: str
    description: str | None = None
    color: str = "#6366f1"
    position: int = 0
    start_date: str | None = None
    end_date: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    task_count: int = 0
    tasks: list["Task"] = field(default_factory=list)


@dataclass
class Sprint:
    id: str
    project_id: str
    name: str
    status: str = "PLANNED"
    position: int = 0
    start_date: str | None = None
    end_date: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    tasks: list["Task"] = field(default_factory=list)


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    created_by_id: str
    task_key: str | None = None
    task_number: int | None = None
    description: str | None = None
    status: str = "TODO"
    priority: str = "MEDIUM"
    position: int = 0
    team: str | None = None
    sprint_id: str | None = None
    epic_id: str | None = None
    split_from_id: str | None = None
    assignee_id: str | None = None
    assigned_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    split_task_ids: list[str] = field(default_factory=list)


@dataclass
class Comment:
    id: int | None = None
    task_id: str = ""
    author_id: str = ""
    content: str = ""
    task_status_at_creation: str | None = None
    created_at: datetime | None = None
    mention_ids: list[str] = field(default_factory=list)


@dataclass
class Activity:
    id: int | None = None
    task_id: str = ""
    user_id: str = ""
    type: str = ""
    metadata: dict | None = None
    created_at: datetime | None = None


@dataclass
class Notification:
    id: int | None = None
    type: str = ""
    user_id: str = ""
    task_id: str | None = None
    comment_id: int | None = None
    read: bool = False
    created_at: datetime | None = None


@dataclass
class ChainEntry:
    id: str
    title: str
    status: str
    priority: str
    sprint: dict | None
    assignee: dict | None
    comment_count: int
    created_at: datetime | None
    depth: int
    is_root: bool
    is_current: bool


@dataclass
class TaskChain:
    root_task_id: str
    current_task_id: str
    entries: list[ChainEntry] = field(default_factory=list)
    sprint_count: int = 0

    @property
    def total_tasks(self) -> int:
        return len(self.entries)


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
