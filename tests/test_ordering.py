"""Tests for task positions inside sprints and backlogs."""

import random
import tempfile
from pathlib import Path

import pytest

from sprintboard.core import ordering as ordering_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core import users as users_mod
from sprintboard.db.engine import init_db
from sprintboard.errors import NotFoundError, PreconditionFailedError


@pytest.fixture
def db():
    """Create a temporary SQLite database with one project and one user."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "web", "Web", "WEB")
        users_mod.create_user(conn, "Alice", "alice@example.com", "ADMIN")
        yield conn
        conn.close()


@pytest.fixture
def user(db):
    return users_mod.get_user(db, "alice")


def _titles(db, sprint_id):
    return [t.title for t in tasks_mod.list_tasks(db, "web", sprint_id=sprint_id, backlog=sprint_id is None)]


def _fill(db, user, sprint_id, n, prefix="T"):
    return [
        tasks_mod.create_task(db, "web", f"{prefix}{i}", user, sprint_id=sprint_id).id
        for i in range(n)
    ]


class TestNextOrder:
    def test_empty_container(self, db):
        assert ordering_mod.next_order(db, "web", None) == 0

    def test_after_tasks(self, db, user):
        _fill(db, user, None, 3)
        assert ordering_mod.next_order(db, "web", None) == 3

    def test_new_tasks_append(self, db, user):
        sprint = sprints_mod.create_sprint(db, "web", "Sprint 1")
        _fill(db, user, sprint.id, 3)
        assert ordering_mod.container_orders(db, "web", sprint.id) == [0, 1, 2]
        assert _titles(db, sprint.id) == ["T0", "T1", "T2"]


class TestSameContainer:
    def test_move_later(self, db, user):
        ids = _fill(db, user, None, 5)
        ordering_mod.reorder_task(db, ids[1], None, 3)
        assert _titles(db, None) == ["T0", "T2", "T3", "T1", "T4"]
        assert ordering_mod.container_orders(db, "web", None) == [0, 1, 2, 3, 4]

    def test_move_earlier(self, db, user):
        ids = _fill(db, user, None, 5)
        ordering_mod.reorder_task(db, ids[4], None, 0)
        assert _titles(db, None) == ["T4", "T0", "T1", "T2", "T3"]
        assert ordering_mod.container_orders(db, "web", None) == [0, 1, 2, 3, 4]

    def test_same_position_is_noop(self, db, user):
        ids = _fill(db, user, None, 3)
        assert ordering_mod.reorder_task(db, ids[1], None, 1) == (None, 1)
        assert _titles(db, None) == ["T0", "T1", "T2"]

    def test_out_of_range(self, db, user):
        ids = _fill(db, user, None, 3)
        with pytest.raises(ValueError):
            ordering_mod.reorder_task(db, ids[0], None, 3)
        with pytest.raises(ValueError):
            ordering_mod.reorder_task(db, ids[0], None, -1)
        assert ordering_mod.container_orders(db, "web", None) == [0, 1, 2]


class TestCrossContainer:
    def test_backlog_to_sprint(self, db, user):
        sprint = sprints_mod.create_sprint(db, "web", "Sprint 1")
        backlog = _fill(db, user, None, 3, prefix="B")
        _fill(db, user, sprint.id, 2, prefix="S")

        source = ordering_mod.reorder_task(db, backlog[1], sprint.id, 1)

        assert source == (None, 1)
        assert _titles(db, None) == ["B0", "B2"]
        assert _titles(db, sprint.id) == ["S0", "B1", "S1"]
        assert ordering_mod.container_orders(db, "web", None) == [0, 1]
        assert ordering_mod.container_orders(db, "web", sprint.id) == [0, 1, 2]

    def test_insert_at_end(self, db, user):
        sprint = sprints_mod.create_sprint(db, "web", "Sprint 1")
        backlog = _fill(db, user, None, 1, prefix="B")
        _fill(db, user, sprint.id, 2, prefix="S")

        ordering_mod.reorder_task(db, backlog[0], sprint.id, 2)
        assert _titles(db, sprint.id) == ["S0", "S1", "B0"]

    def test_into_empty_container(self, db, user):
        sprint = sprints_mod.create_sprint(db, "web", "Sprint 1")
        ids = _fill(db, user, sprint.id, 2)
        ordering_mod.reorder_task(db, ids[0], None, 0)
        assert _titles(db, None) == ["T0"]
        assert ordering_mod.container_orders(db, "web", sprint.id) == [0]

    def test_out_of_range_leaves_state(self, db, user):
        sprint = sprints_mod.create_sprint(db, "web", "Sprint 1")
        ids = _fill(db, user, None, 2)
        with pytest.raises(ValueError):
            ordering_mod.reorder_task(db, ids[0], sprint.id, 1)
        assert _titles(db, None) == ["T0", "T1"]
        assert tasks_mod.get_task(db, ids[0]).sprint_id is None

    def test_unknown_task(self, db):
        with pytest.raises(NotFoundError):
            ordering_mod.reorder_task(db, "missing", None, 0)

    def test_unknown_sprint(self, db, user):
        ids = _fill(db, user, None, 1)
        with pytest.raises(NotFoundError):
            ordering_mod.reorder_task(db, ids[0], "missing", 0)

    def test_sprint_of_other_project(self, db, user):
        projects_mod.create_project(db, "api", "API", "API")
        other = sprints_mod.create_sprint(db, "api", "API Sprint")
        ids = _fill(db, user, None, 1)
        with pytest.raises(PreconditionFailedError):
            ordering_mod.reorder_task(db, ids[0], other.id, 0)

    def test_backlogs_are_per_project(self, db, user):
        projects_mod.create_project(db, "api", "API", "API")
        tasks_mod.create_task(db, "api", "Other", user)
        _fill(db, user, None, 2)
        assert ordering_mod.container_orders(db, "web", None) == [0, 1]
        assert ordering_mod.container_orders(db, "api", None) == [0]


class TestAppend:
    def test_append_to_other_container(self, db, user):
        sprint = sprints_mod.create_sprint(db, "web", "Sprint 1")
        ids = _fill(db, user, None, 3)
        _fill(db, user, sprint.id, 2, prefix="S")

        assert ordering_mod.append_to_container(db, ids[0], sprint.id) == 2
        assert _titles(db, sprint.id) == ["S0", "S1", "T0"]
        assert ordering_mod.container_orders(db, "web", None) == [0, 1]

    def test_append_within_container(self, db, user):
        ids = _fill(db, user, None, 3)
        assert ordering_mod.append_to_container(db, ids[0], None) == 2
        assert _titles(db, None) == ["T1", "T2", "T0"]


class TestDenseOrderProperty:
    def test_random_reorders_keep_orders_dense(self, db, user):
        sprints = [sprints_mod.create_sprint(db, "web", f"Sprint {i}").id for i in range(2)]
        containers = [None, *sprints]
        ids = []
        for c in containers:
            ids += _fill(db, user, c, 4)

        rng = random.Random(7)
        for _ in range(60):
            task = tasks_mod.get_task(db, rng.choice(ids))
            target = rng.choice(containers)
            size = ordering_mod.container_size(db, "web", target)
            upper = size - 1 if target == task.sprint_id else size
            ordering_mod.reorder_task(db, task.id, target, rng.randint(0, upper))

            for c in containers:
                n = ordering_mod.container_size(db, "web", c)
                assert ordering_mod.container_orders(db, "web", c) == list(range(n))

        assert sum(ordering_mod.container_size(db, "web", c) for c in containers) == 12
