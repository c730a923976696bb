"""Split lineage: finding chain roots, numbering splits and listing a whole chain.

Each task points at the task it was split from (``split_from_id``), so the
lineages of a project form a forest. Chains are small; every call recomputes
from the store instead of caching sizes.
"""

import re
import sqlite3
from collections import defaultdict
from collections.abc import Iterator

from sprintboard.db.models import ChainEntry, TaskChain, parse_dt
from sprintboard.errors import ChainCycleError, NotFoundError

_SUFFIX = re.compile(r"\s+#\d+$")

_FOREST_QUERY = """
SELECT t.id, t.title, t.status, t.priority, t.split_from_id, t.sprint_id, t.created_at,
       s.name AS sprint_name, s.status AS sprint_status,
       t.assignee_id, u.name AS assignee_name,
       (SELECT COUNT(*) FROM comments c WHERE c.task_id = t.id) AS comment_count
FROM tasks t
LEFT JOIN sprints s ON s.id = t.sprint_id
LEFT JOIN users u ON u.id = t.assignee_id
WHERE t.project_id = ?
ORDER BY t.created_at ASC, t.rowid ASC
"""


def base_title(title: str) -> str:
    """Strip a trailing ``" #N"`` split suffix: ``"Fix login #3"`` -> ``"Fix login"``."""
    return _SUFFIX.sub("", title).strip()


def find_root(db: sqlite3.Connection, task_id: str) -> str:
    """Follow split_from pointers up to the task that started the chain."""
    seen: set[str] = set()
    current = task_id
    while True:
        row = db.execute("SELECT split_from_id FROM tasks WHERE id = ?", (current,)).fetchone()
        if not row:
            raise NotFoundError(f"Task not found: {current}")
        seen.add(current)
        parent = row["split_from_id"]
        if parent is None:
            return current
        if parent in seen:
            raise ChainCycleError(f"Split chain of {task_id} loops back to {parent}")
        current = parent


def next_sequence_number(db: sqlite3.Connection, task_id: str) -> int:
    """The ``#N`` suffix for the next split: tasks in the chain, root included, plus one."""
    root_id = find_root(db, task_id)
    forest = _Forest.load(db, _project_of(db, root_id))
    return sum(1 for _ in forest.walk(root_id)) + 1


def materialize_chain(db: sqlite3.Connection, task_id: str) -> TaskChain:
    """List the whole chain containing ``task_id``, root first, pre-order."""
    root_id = find_root(db, task_id)
    forest = _Forest.load(db, _project_of(db, root_id))

    chain = TaskChain(root_task_id=root_id, current_task_id=task_id)
    sprints: set[str] = set()
    for row, depth in forest.walk(root_id):
        sprints.add(row["sprint_id"] or "backlog")
        chain.entries.append(
            ChainEntry(
                id=row["id"],
                title=row["title"],
                status=row["status"],
                priority=row["priority"],
                sprint=(
                    {"id": row["sprint_id"], "name": row["sprint_name"], "status": row["sprint_status"]}
                    if row["sprint_id"]
                    else None
                ),
                assignee=(
                    {"id": row["assignee_id"], "name": row["assignee_name"]}
                    if row["assignee_id"]
                    else None
                ),
                comment_count=row["comment_count"],
                created_at=parse_dt(row["created_at"]),
                depth=depth,
                is_root=depth == 0,
                is_current=row["id"] == task_id,
            )
        )
    chain.sprint_count = len(sprints)
    return chain


class _Forest:
    """Flat id -> row arena with a parent -> children index."""

    def __init__(self, rows: list[sqlite3.Row]):
        self.nodes = {r["id"]: r for r in rows}
        self.children: dict[str, list[str]] = defaultdict(list)
        for r in rows:
            if r["split_from_id"] is not None:
                self.children[r["split_from_id"]].append(r["id"])

    @classmethod
    def load(cls, db: sqlite3.Connection, project_id: str) -> "_Forest":
        return cls(db.execute(_FOREST_QUERY, (project_id,)).fetchall())

    def walk(self, root_id: str) -> Iterator[tuple[sqlite3.Row, int]]:
        """Pre-order depth-first walk; children in creation order."""
        seen: set[str] = set()
        stack = [(root_id, 0)]
        while stack:
            node_id, depth = stack.pop()
            if node_id in seen:
                raise ChainCycleError(f"Task {node_id} appears twice in its split chain")
            seen.add(node_id)
            yield self.nodes[node_id], depth
            for child_id in reversed(self.children.get(node_id, [])):
                stack.append((child_id, depth + 1))


def _project_of(db: sqlite3.Connection, task_id: str) -> str:
    return db.execute("SELECT project_id FROM tasks WHERE id = ?", (task_id,)).fetchone()["project_id"]
