"""JSON API for sprintboard."""

import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from sprintboard.config import get_config
from sprintboard.core import chains as chains_mod
from sprintboard.core import comments as comments_mod
from sprintboard.core import epics as epics_mod
from sprintboard.core import notifications as notifications_mod
from sprintboard.core import projects as projects_mod
from sprintboard.core import sprints as sprints_mod
from sprintboard.core import tasks as tasks_mod
from sprintboard.core import teams as teams_mod
from sprintboard.core import users as users_mod
from sprintboard.core import workflow as workflow_mod
from sprintboard.db.engine import init_db
from sprintboard.errors import SprintboardError

logger = logging.getLogger(__name__)

_TASK_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "assignee_id",
    "team",
    "epic_id",
    "sprint_id",
)


def _get_db():
    config = get_config()
    return init_db(config.db_path, config.db_timeout)


def _user(db, request: Request):
    return users_mod.current_user(db, request.headers.get("X-User-Id"))


async def _json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def _flag(body: dict, name: str, default: bool) -> bool:
    value = body.get(name, default)
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be true or false")
    return value


# ── Projects ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        _user(db, request)
        return JSONResponse([_project_dict(p) for p in projects_mod.list_projects(db)])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        _user(db, request)
        return JSONResponse(_project_dict(projects_mod.require_project(db, project_id)))
    finally:
        db.close()


async def api_project_sprints(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        projects_mod.require_project(db, project_id)
        if request.method == "POST":
            body = await _json(request)
            sprint = sprints_mod.create_sprint(
                db,
                project_id,
                body.get("name", ""),
                start_date=body.get("start_date"),
                end_date=body.get("end_date"),
                status=body.get("status", "PLANNED"),
            )
            logger.info("Sprint %s created by %s", sprint.id, user.id)
            return JSONResponse(_sprint_dict(sprint), status_code=201)

        sprints = sprints_mod.list_sprints(
            db, project_id, status=request.query_params.get("status"), with_tasks=True
        )
        return JSONResponse([_sprint_dict(s) for s in sprints])
    finally:
        db.close()


async def api_project_backlog(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        _user(db, request)
        projects_mod.require_project(db, project_id)
        tasks = tasks_mod.list_tasks(db, project_id, backlog=True)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        projects_mod.require_project(db, project_id)
        if request.method == "POST":
            body = await _json(request)
            task = tasks_mod.create_task(
                db,
                project_id,
                body.get("title", ""),
                user,
                description=body.get("description"),
                sprint_id=body.get("sprint_id"),
                assignee_id=body.get("assignee_id"),
                team=body.get("team"),
                status=body.get("status", "TODO"),
                priority=body.get("priority", "MEDIUM"),
                epic_id=body.get("epic_id"),
            )
            return JSONResponse(_task_dict(task), status_code=201)

        tasks = tasks_mod.list_tasks(
            db,
            project_id,
            status=request.query_params.get("status"),
            sprint_id=request.query_params.get("sprint_id"),
        )
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        task = tasks_mod.require_task(db, task_id)

        if request.method == "DELETE":
            tasks_mod.delete_task(db, task.id, user)
            return JSONResponse({"deleted": task.id})

        if request.method == "PATCH":
            body = await _json(request)
            fields = {k: body[k] for k in _TASK_FIELDS if k in body}
            order = body.get("order")
            if order is not None and (not isinstance(order, int) or isinstance(order, bool)):
                raise ValueError("order must be an integer")
            task = tasks_mod.update_task(db, task.id, user, order=order, **fields)

        td = _task_dict(task)
        td["comment_count"] = comments_mod.count_comments(db, task.id)
        return JSONResponse(td)
    finally:
        db.close()


async def api_task_chain(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        _user(db, request)
        task = tasks_mod.require_task(db, task_id)
        return JSONResponse(_chain_dict(chains_mod.materialize_chain(db, task.id)))
    finally:
        db.close()


async def api_task_activities(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        _user(db, request)
        task = tasks_mod.require_task(db, task_id)
        return JSONResponse([_activity_dict(a) for a in tasks_mod.get_task_activities(db, task.id)])
    finally:
        db.close()


async def api_task_comments(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        task = tasks_mod.require_task(db, task_id)
        if request.method == "POST":
            body = await _json(request)
            comment = comments_mod.add_comment(
                db, task.id, user, body.get("content", ""), body.get("mention_ids")
            )
            return JSONResponse(_comment_dict(comment), status_code=201)
        return JSONResponse([_comment_dict(c) for c in comments_mod.list_comments(db, task.id)])
    finally:
        db.close()


async def api_split_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        body = await _json(request)
        result = workflow_mod.split_task(
            db,
            task_id,
            user,
            target_sprint_id=body["target_sprint_id"] if "target_sprint_id" in body else tasks_mod.UNSET,
            transfer_comments=_flag(body, "transfer_comments", True),
            transfer_description=_flag(body, "transfer_description", True),
        )
        return JSONResponse(
            {
                "task": _task_dict(result.task),
                "source": _task_dict(result.source),
                "sequence_number": result.sequence_number,
                "comments_copied": result.comments_copied,
            },
            status_code=201,
        )
    finally:
        db.close()


async def api_reorder(request: Request):
    db = _get_db()
    try:
        user = _user(db, request)
        body = await _json(request)
        if "task_id" not in body or "target_sprint_id" not in body or "new_order" not in body:
            raise ValueError("task_id, target_sprint_id, and new_order are required")
        new_order = body["new_order"]
        if not isinstance(new_order, int) or isinstance(new_order, bool):
            raise ValueError("new_order must be an integer")
        task = tasks_mod.move_task(db, body["task_id"], user, body["target_sprint_id"], new_order)
        return JSONResponse({"success": True, "task": _task_dict(task)})
    finally:
        db.close()


# ── Sprints ───────────────────────────────────────────────────────────────────


async def api_sprint(request: Request):
    sprint_id = request.path_params["sprint_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        sprints_mod.require_sprint(db, sprint_id)

        if request.method == "DELETE":
            sprints_mod.delete_sprint(db, sprint_id, user)
            return JSONResponse({"deleted": sprint_id})

        if request.method == "PATCH":
            body = await _json(request)
            dates = {k: body[k] for k in ("start_date", "end_date") if k in body}
            sprints_mod.update_sprint(
                db, sprint_id, name=body.get("name"), status=body.get("status"), user=user, **dates
            )

        return JSONResponse(_sprint_dict(sprints_mod.get_sprint(db, sprint_id, with_tasks=True)))
    finally:
        db.close()


async def api_sprint_summary(request: Request):
    sprint_id = request.path_params["sprint_id"]
    db = _get_db()
    try:
        _user(db, request)
        return JSONResponse(sprints_mod.sprint_summary(db, sprint_id))
    finally:
        db.close()


async def api_sprint_status(request: Request):
    sprint_id = request.path_params["sprint_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        body = await _json(request)
        sprint = sprints_mod.set_sprint_status(db, sprint_id, body.get("status", ""), user)
        return JSONResponse(_sprint_dict(sprint))
    finally:
        db.close()


async def api_sprint_uat(request: Request):
    sprint_id = request.path_params["sprint_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        body = await _json(request)
        result = workflow_mod.transition_to_uat(
            db, sprint_id, user, body.get("action", ""), body.get("target_sprint_id")
        )
        return JSONResponse(_uat_dict(result))
    finally:
        db.close()


# ── Epics ─────────────────────────────────────────────────────────────────────


async def api_project_epics(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        projects_mod.require_project(db, project_id)
        if request.method == "POST":
            body = await _json(request)
            epic = epics_mod.create_epic(
                db,
                project_id,
                body.get("name", ""),
                user,
                description=body.get("description"),
                color=body.get("color"),
                start_date=body.get("start_date"),
                end_date=body.get("end_date"),
            )
            return JSONResponse(_epic_dict(epic), status_code=201)
        return JSONResponse([_epic_dict(e) for e in epics_mod.list_epics(db, project_id)])
    finally:
        db.close()


async def api_epic(request: Request):
    epic_id = request.path_params["epic_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        epics_mod.require_epic(db, epic_id)

        if request.method == "DELETE":
            unlinked = epics_mod.delete_epic(db, epic_id, user)
            return JSONResponse({"deleted": epic_id, "tasks_unlinked": unlinked})

        if request.method == "PATCH":
            body = await _json(request)
            fields = {
                k: body[k] for k in ("description", "start_date", "end_date") if k in body
            }
            order = body.get("order")
            if order is not None and (not isinstance(order, int) or isinstance(order, bool)):
                raise ValueError("order must be an integer")
            epics_mod.update_epic(
                db, epic_id, name=body.get("name"), color=body.get("color"), order=order, **fields
            )

        return JSONResponse(_epic_dict(epics_mod.get_epic(db, epic_id, with_tasks=True)))
    finally:
        db.close()


async def api_epics_reorder(request: Request):
    db = _get_db()
    try:
        _user(db, request)
        body = await _json(request)
        epic_ids = body.get("epic_ids")
        if not body.get("project_id") or not isinstance(epic_ids, list):
            raise ValueError("project_id and an epic_ids list are required")
        epics = epics_mod.reorder_epics(db, body["project_id"], epic_ids)
        return JSONResponse({"success": True, "epics": [_epic_dict(e) for e in epics]})
    finally:
        db.close()


# ── Teams ─────────────────────────────────────────────────────────────────────


async def api_project_teams(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        projects_mod.require_project(db, project_id)
        if request.method == "POST":
            body = await _json(request)
            team = teams_mod.create_team(
                db, project_id, body.get("name", ""), body.get("key", ""), user, body.get("color")
            )
            return JSONResponse(_team_dict(team), status_code=201)
        return JSONResponse([_team_dict(t) for t in teams_mod.list_teams(db, project_id)])
    finally:
        db.close()


async def api_project_teams_reorder(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        body = await _json(request)
        team_ids = body.get("team_ids")
        if not isinstance(team_ids, list):
            raise ValueError("A team_ids list is required")
        teams = teams_mod.reorder_teams(db, project_id, team_ids, user)
        return JSONResponse([_team_dict(t) for t in teams])
    finally:
        db.close()


async def api_team(request: Request):
    team_id = request.path_params["team_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        cleared = teams_mod.delete_team(db, team_id, user)
        return JSONResponse({"deleted": team_id, "tasks_cleared": cleared})
    finally:
        db.close()


# ── Comments ──────────────────────────────────────────────────────────────────


async def api_comment(request: Request):
    comment_id = request.path_params["comment_id"]
    db = _get_db()
    try:
        user = _user(db, request)
        comments_mod.delete_comment(db, comment_id, user)
        return JSONResponse({"deleted": comment_id})
    finally:
        db.close()


# ── Notifications ─────────────────────────────────────────────────────────────


async def api_notifications(request: Request):
    db = _get_db()
    try:
        user = _user(db, request)
        unread_only = request.query_params.get("unread") in ("1", "true")
        items = notifications_mod.list_notifications(db, user.id, unread_only=unread_only)
        return JSONResponse([_notification_dict(n) for n in items])
    finally:
        db.close()


async def api_notifications_read(request: Request):
    db = _get_db()
    try:
        user = _user(db, request)
        body = await _json(request)
        count = notifications_mod.mark_read(db, user.id, body.get("ids"))
        return JSONResponse({"marked": count})
    finally:
        db.close()


# ── Errors ────────────────────────────────────────────────────────────────────


async def handle_sprintboard_error(request: Request, exc: SprintboardError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


async def handle_value_error(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=400)


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "key": p.key,
        "name": p.name,
        "task_counter": p.task_counter,
        "slack_channel": p.slack_channel,
        "created_at": _iso(p.created_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "task_key": t.task_key,
        "task_number": t.task_number,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "order": t.position,
        "team": t.team,
        "project_id": t.project_id,
        "sprint_id": t.sprint_id,
        "epic_id": t.epic_id,
        "split_from_id": t.split_from_id,
        "split_task_ids": t.split_task_ids,
        "assignee_id": t.assignee_id,
        "created_by_id": t.created_by_id,
        "assigned_at": _iso(t.assigned_at),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
    }


def _sprint_dict(s) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "name": s.name,
        "status": s.status,
        "order": s.position,
        "start_date": s.start_date,
        "end_date": s.end_date,
        "created_at": _iso(s.created_at),
        "tasks": [_task_dict(t) for t in s.tasks],
    }


def _epic_dict(e) -> dict:
    return {
        "id": e.id,
        "project_id": e.project_id,
        "name": e.name,
        "description": e.description,
        "color": e.color,
        "order": e.position,
        "start_date": e.start_date,
        "end_date": e.end_date,
        "created_by_id": e.created_by_id,
        "task_count": e.task_count,
        "tasks": [_task_dict(t) for t in e.tasks],
    }


def _team_dict(t) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "name": t.name,
        "key": t.key,
        "color": t.color,
        "order": t.position,
    }


def _activity_dict(a) -> dict:
    return {
        "id": a.id,
        "type": a.type,
        "metadata": a.metadata,
        "task_id": a.task_id,
        "user_id": a.user_id,
        "created_at": _iso(a.created_at),
    }


def _comment_dict(c) -> dict:
    return {
        "id": c.id,
        "task_id": c.task_id,
        "author_id": c.author_id,
        "content": c.content,
        "task_status_at_creation": c.task_status_at_creation,
        "mention_ids": c.mention_ids,
        "created_at": _iso(c.created_at),
    }


def _notification_dict(n) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "task_id": n.task_id,
        "comment_id": n.comment_id,
        "read": n.read,
        "created_at": _iso(n.created_at),
    }


def _chain_dict(chain) -> dict:
    return {
        "chain": [
            {
                "id": e.id,
                "title": e.title,
                "status": e.status,
                "priority": e.priority,
                "sprint": e.sprint,
                "assignee": e.assignee,
                "comment_count": e.comment_count,
                "created_at": _iso(e.created_at),
                "depth": e.depth,
                "is_root": e.is_root,
                "is_current": e.is_current,
            }
            for e in chain.entries
        ],
        "sprint_count": chain.sprint_count,
        "total_tasks": chain.total_tasks,
        "root_task_id": chain.root_task_id,
        "current_task_id": chain.current_task_id,
    }


def _uat_dict(result) -> dict:
    return {
        "sprint": _sprint_dict(result.sprint),
        "action": result.action,
        "target_sprint": _sprint_dict(result.target_sprint) if result.target_sprint else None,
        "results": {
            "closed_tasks": [_task_dict(t) for t in result.closed],
            "moved_tasks": [_task_dict(t) for t in result.moved],
            "split_tasks": [_task_dict(t) for t in result.split],
        },
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/sprints", api_project_sprints, methods=["GET", "POST"]),
        Route("/api/projects/{project_id}/backlog", api_project_backlog),
        Route("/api/projects/{project_id}/tasks", api_project_tasks, methods=["GET", "POST"]),
        Route("/api/tasks/reorder", api_reorder, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_task, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/tasks/{task_id}/chain", api_task_chain),
        Route("/api/tasks/{task_id}/activities", api_task_activities),
        Route("/api/tasks/{task_id}/comments", api_task_comments, methods=["GET", "POST"]),
        Route("/api/tasks/{task_id}/split", api_split_task, methods=["POST"]),
        Route("/api/sprints/{sprint_id}", api_sprint, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/sprints/{sprint_id}/summary", api_sprint_summary),
        Route("/api/sprints/{sprint_id}/status", api_sprint_status, methods=["POST"]),
        Route("/api/sprints/{sprint_id}/uat", api_sprint_uat, methods=["POST"]),
        Route("/api/projects/{project_id}/epics", api_project_epics, methods=["GET", "POST"]),
        Route("/api/epics/reorder", api_epics_reorder, methods=["POST"]),
        Route("/api/epics/{epic_id}", api_epic, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/projects/{project_id}/teams", api_project_teams, methods=["GET", "POST"]),
        Route(
            "/api/projects/{project_id}/teams/reorder", api_project_teams_reorder, methods=["POST"]
        ),
        Route("/api/teams/{team_id}", api_team, methods=["DELETE"]),
        Route("/api/comments/{comment_id:int}", api_comment, methods=["DELETE"]),
        Route("/api/notifications", api_notifications),
        Route("/api/notifications/read", api_notifications_read, methods=["POST"]),
    ]
    return Starlette(
        routes=routes,
        exception_handlers={
            SprintboardError: handle_sprintboard_error,
            ValueError: handle_value_error,
        },
    )


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
