"""Web dashboard API for the work dispatcher."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from work_dispatcher.config import get_config
from work_dispatcher.core import tasks as tasks_mod
from work_dispatcher.core.drain import DrainSignal
from work_dispatcher.core.events import read_events
from work_dispatcher.core.records import FileStateStore, MalformedRecord
from work_dispatcher.db.engine import init_db
from work_dispatcher.db.models import branch_display, format_duration
from work_dispatcher.web.dashboard import get_dashboard_html


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _get_store() -> FileStateStore:
    return FileStateStore(get_config().workers_dir)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_workers(request: Request):
    store = _get_store()
    if request.query_params.get("status", "active") == "all":
        records = store.list_all()
    else:
        records = store.list_active()
    return JSONResponse([_worker_dict(r) for r in records])


async def api_get_worker(request: Request):
    owner = request.path_params["owner"]
    name = request.path_params["name"]
    issue = request.path_params["issue"]
    try:
        record = _get_store().load(f"{owner}--{name}", issue)
    except MalformedRecord as e:
        return JSONResponse({"error": f"Unreadable worker record: {e}"}, status_code=422)
    if not record:
        return JSONResponse({"error": "Worker not found"}, status_code=404)
    return JSONResponse(_worker_dict(record))


async def api_events(request: Request):
    try:
        limit = int(request.query_params.get("limit", "50"))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    return JSONResponse(read_events(get_config().event_log_path, limit))


async def api_drain(request: Request):
    return JSONResponse({"draining": DrainSignal(get_config().drain_path).is_set()})


async def api_list_tasks(request: Request):
    status_filter = request.query_params.get("status")
    db = _get_db()
    try:
        try:
            tasks = tasks_mod.list_tasks(db, status=status_filter)
        except ValueError:
            return JSONResponse({"error": f"Unknown status: {status_filter}"}, status_code=400)
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _worker_dict(r) -> dict:
    data = r.to_dict()
    data["duration"] = format_duration(r.duration_s)
    data["display"] = branch_display(r)
    return data


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status.value,
        "description": t.description,
        "repo": t.repo,
        "priority": t.priority,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "started_at": t.started_at.isoformat() if t.started_at else None,
        "ended_at": t.ended_at.isoformat() if t.ended_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/workers", api_list_workers),
        Route("/api/workers/{owner}/{name}/{issue:int}", api_get_worker),
        Route("/api/events", api_events),
        Route("/api/drain", api_drain),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
