"""Task splitting and the sprint-to-UAT bulk transition.

A split closes nothing by itself: it creates a successor task ("<title> #N")
in a destination sprint, linked to its source through ``split_from_id``.
Moving a sprint to UAT deals with every task still open in it, by closing,
moving or splitting all of them, and then marks the sprint UAT.
Each operation is one transaction: either every task, activity and counter
change lands, or none does.
"""

import logging
import sqlite3
from dataclasses import dataclass, field

from sprintboard.core import chains as chains_mod
from sprintboard.core import comments as comments_mod
from sprintboard.core import notifications as notifications_mod
from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core.users import require_admin
from sprintboard.db.engine import transaction
from sprintboard.db.models import OPEN_STATUSES, Sprint, Task, User
from sprintboard.errors import PreconditionFailedError
from sprintboard.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

UAT_ACTIONS = ("close_all", "move_all", "split_all")

UAT_REASON = "Sprint moved to UAT"


@dataclass
class SplitResult:
    source: Task
    task: Task
    sequence_number: int
    comments_copied: int


@dataclass
class UatResult:
    sprint: Sprint
    action: str
    target_sprint: Sprint | None = None
    closed: list[Task] = field(default_factory=list)
    moved: list[Task] = field(default_factory=list)
    split: list[Task] = field(default_factory=list)


def split_task(
    db: sqlite3.Connection,
    task_id: str,
    user: User,
    target_sprint_id=tasks_mod.UNSET,
    transfer_comments: bool = True,
    transfer_description: bool = True,
) -> SplitResult:
    """Create the next task in ``task_id``'s chain.

    ``target_sprint_id`` defaults to the source task's sprint; pass ``None``
    to split into the backlog. The source task is left untouched.
    """
    with transaction(db):
        source = tasks_mod.require_task(db, task_id)
        dest_sprint_id = source.sprint_id if target_sprint_id is tasks_mod.UNSET else target_sprint_id
        if dest_sprint_id is not None:
            ordering_mod.check_sprint(db, dest_sprint_id, source.project_id)

        new_id, number, copied = _split_into(
            db,
            source,
            dest_sprint_id,
            user,
            transfer_comments=transfer_comments,
            transfer_description=transfer_description,
        )

    result = SplitResult(
        source=tasks_mod.get_task(db, source.id),
        task=tasks_mod.get_task(db, new_id),
        sequence_number=number,
        comments_copied=copied,
    )
    logger.info(
        "Split %s into %s (#%d, %d comments copied)",
        source.task_key, result.task.task_key, number, copied,
    )
    _announce_split(db, result)
    return result


def transition_to_uat(
    db: sqlite3.Connection,
    sprint_id: str,
    user: User,
    action: str,
    target_sprint_id: str | None = None,
) -> UatResult:
    """Move a sprint to UAT, dealing with its TODO, IN_PROGRESS and BLOCKED tasks.

    close_all marks them DONE; move_all moves them to the end of the target
    sprint; split_all marks them DONE and splits each into the target sprint
    with comments and description. The target is ``target_sprint_id`` or the
    project's next PLANNED sprint. Tasks already READY_TO_TEST, DONE or LIVE
    stay where they are.
    """
    if action not in UAT_ACTIONS:
        raise ValueError(f"Invalid action: {action}. Expected one of {', '.join(UAT_ACTIONS)}")
    require_admin(user)

    with transaction(db):
        sprint = sprints_mod.require_sprint(db, sprint_id, with_tasks=True)
        open_tasks = [t for t in sprint.tasks if t.status in OPEN_STATUSES]

        target = None
        if action in ("move_all", "split_all"):
            target = _resolve_target(db, sprint, target_sprint_id)

        result = UatResult(sprint=sprint, action=action, target_sprint=target)
        split_ids: list[str] = []

        if action == "close_all":
            for task in open_tasks:
                _close(db, task, user, UAT_REASON)
                result.closed.append(task)

        elif action == "move_all":
            for task in open_tasks:
                ordering_mod.append_to_container(db, task.id, target.id)
                tasks_mod.log_activity(
                    db,
                    task.id,
                    user.id,
                    "MOVED_TO_SPRINT",
                    {"from": sprint.name, "to": target.name, "reason": UAT_REASON},
                )
                result.moved.append(task)

        else:
            for task in open_tasks:
                _close(db, task, user, f"{UAT_REASON} - task split")
                new_id, _, _ = _split_into(
                    db,
                    task,
                    target.id,
                    user,
                    transfer_comments=True,
                    transfer_description=True,
                    reason=UAT_REASON,
                )
                split_ids.append(new_id)

        sprints_mod.set_status(db, sprint.id, "UAT")

    result.closed = [tasks_mod.get_task(db, t.id) for t in result.closed]
    result.moved = [tasks_mod.get_task(db, t.id) for t in result.moved]
    result.split = [tasks_mod.get_task(db, new_id) for new_id in split_ids]
    result.sprint = sprints_mod.get_sprint(db, sprint.id, with_tasks=True)
    if target:
        result.target_sprint = sprints_mod.get_sprint(db, target.id)

    logger.info(
        "Sprint %s moved to UAT by %s (%s): %d closed, %d moved, %d split",
        sprint.name, user.id, action, len(result.closed), len(result.moved), len(result.split),
    )
    notifications_mod.announce(
        projects_mod.get_project(db, sprint.project_id),
        f"{sprint.name} moved to UAT",
        slack_mod.format_uat_summary(
            sprint.name,
            action,
            len(result.closed),
            len(result.moved),
            len(result.split),
            target.name if target else None,
        ),
    )
    return result


def _resolve_target(db: sqlite3.Connection, sprint: Sprint, target_sprint_id: str | None) -> Sprint:
    if target_sprint_id:
        target = sprints_mod.require_sprint(db, target_sprint_id)
        if target.project_id != sprint.project_id:
            raise PreconditionFailedError(f"Sprint {target.id} belongs to another project")
        if target.id == sprint.id:
            raise PreconditionFailedError("Target sprint must differ from the sprint moving to UAT")
        return target

    target = sprints_mod.next_planned_sprint(db, sprint.project_id, exclude=sprint.id)
    if not target:
        raise PreconditionFailedError(
            "No target sprint available. Please create a new sprint first."
        )
    return target


def _close(db: sqlite3.Connection, task: Task, user: User, reason: str):
    db.execute(
        """UPDATE tasks SET status = 'DONE', completed_at = datetime('now'),
                            updated_at = datetime('now')
           WHERE id = ?""",
        (task.id,),
    )
    tasks_mod.log_activity(
        db, task.id, user.id, "STATUS_CHANGED", {"from": task.status, "to": "DONE", "reason": reason}
    )


def _split_into(
    db: sqlite3.Connection,
    source: Task,
    dest_sprint_id: str | None,
    user: User,
    transfer_comments: bool,
    transfer_description: bool,
    reason: str | None = None,
) -> tuple[str, int, int]:
    """Create the successor of ``source`` at the end of ``dest_sprint_id``.

    Returns ``(new_task_id, sequence_number, comments_copied)``. Runs in the
    caller's transaction.
    """
    number = chains_mod.next_sequence_number(db, source.id)
    title = f"{chains_mod.base_title(source.title)} #{number}"

    new_id = tasks_mod.insert_task(
        db,
        source.project_id,
        title,
        user.id,
        description=source.description if transfer_description else None,
        sprint_id=dest_sprint_id,
        assignee_id=source.assignee_id,
        team=source.team,
        status="TODO",
        priority=source.priority,
        split_from_id=source.id,
        epic_id=source.epic_id,
    )

    copied = comments_mod.copy_comments(db, source.id, new_id) if transfer_comments else 0

    split_meta = {
        "newTaskId": new_id,
        "newTaskTitle": title,
        "splitNumber": number,
        "targetSprint": tasks_mod.sprint_name(db, dest_sprint_id),
        "commentsCopied": copied,
        "descriptionCopied": transfer_description,
    }
    if reason:
        split_meta["reason"] = reason
    tasks_mod.log_activity(db, source.id, user.id, "SPLIT", split_meta)
    tasks_mod.log_activity(
        db,
        new_id,
        user.id,
        "CREATED",
        {
            "splitFrom": source.title,
            "splitFromId": source.id,
            "splitNumber": number,
            "fromSprint": tasks_mod.sprint_name(db, source.sprint_id),
        },
    )
    return new_id, number, copied


def _announce_split(db: sqlite3.Connection, result: SplitResult):
    task = result.task
    notifications_mod.announce(
        projects_mod.get_project(db, task.project_id),
        f"{result.source.task_key} split into {task.task_key}",
        slack_mod.format_split_notification(
            result.source.task_key,
            task.task_key,
            task.title,
            tasks_mod.sprint_name(db, task.sprint_id),
        ),
    )
