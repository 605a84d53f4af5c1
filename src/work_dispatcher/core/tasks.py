"""Task lifecycle state machine and task queue operations.

A task moves ``queued -> running -> done | failed``, and a failed task can be
put back on the queue with ``retry``. Each transition is a function that
checks the current status first and raises :class:`InvalidTransition`
without touching the task when the move is not allowed.

Tasks are never deleted; finished tasks stay in the database with their
event history.
"""

import re
import sqlite3
from datetime import datetime, timezone

from work_dispatcher.db.models import Task, TaskEvent, TaskStatus


class InvalidTransition(Exception):
    """Raised when a task operation is not allowed from its current status."""

    def __init__(self, task_id: str, required: TaskStatus, actual: TaskStatus):
        self.task_id = task_id
        self.required = required
        self.actual = actual
        super().__init__(
            f"Task {task_id} must be {required.value} (currently {actual.value})"
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── State machine ──────────────────────────────────────────────────


def _require(task: Task, status: TaskStatus):
    if task.status != status:
        raise InvalidTransition(task.id, status, task.status)


def start(task: Task, now: datetime | None = None) -> Task:
    _require(task, TaskStatus.QUEUED)
    task.status = TaskStatus.RUNNING
    task.started_at = now or utc_now()
    return task


def complete(task: Task, now: datetime | None = None) -> Task:
    _require(task, TaskStatus.RUNNING)
    task.status = TaskStatus.DONE
    task.ended_at = now or utc_now()
    return task


def fail(task: Task, now: datetime | None = None) -> Task:
    _require(task, TaskStatus.RUNNING)
    task.status = TaskStatus.FAILED
    task.ended_at = now or utc_now()
    return task


def retry(task: Task, now: datetime | None = None) -> Task:
    _require(task, TaskStatus.FAILED)
    task.status = TaskStatus.QUEUED
    task.started_at = None
    task.ended_at = None
    return task


TRANSITIONS = {
    "start": start,
    "complete": complete,
    "fail": fail,
    "retry": retry,
}


# ── Persistence ────────────────────────────────────────────────────


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM tasks WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    repo: str | None = None,
    priority: int = 3,
) -> Task:
    """Create a new queued task."""
    task_id = _unique_id(db, slugify(title))
    priority = max(0, min(6, priority))

    db.execute(
        "INSERT INTO tasks (id, title, description, repo, priority) VALUES (?, ?, ?, ?, ?)",
        (task_id, title, description, repo, priority),
    )
    _log_event(db, task_id, "created", None, TaskStatus.QUEUED.value)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def list_tasks(
    db: sqlite3.Connection,
    status: TaskStatus | str | None = None,
    repo: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, highest priority first."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(TaskStatus(status).value)

    if repo:
        query += " AND repo = ?"
        params.append(repo)

    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def next_queued_task(db: sqlite3.Connection, repo: str | None = None) -> Task | None:
    tasks = list_tasks(db, status=TaskStatus.QUEUED, repo=repo)
    return tasks[0] if tasks else None


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    action: str,
    now: datetime | None = None,
) -> Task | None:
    """Apply a lifecycle operation to a stored task and record the change.

    Returns None when the task does not exist. Raises InvalidTransition when
    the operation is not allowed; the stored task is left as it was.
    """
    task = get_task(db, task_id)
    if not task:
        return None

    old_status = task.status
    TRANSITIONS[action](task, now)

    db.execute(
        "UPDATE tasks SET status = ?, started_at = ?, ended_at = ? WHERE id = ?",
        (
            task.status.value,
            _format_dt(task.started_at),
            _format_dt(task.ended_at),
            task_id,
        ),
    )
    _log_event(db, task_id, "status_changed", old_status.value, task.status.value)
    db.commit()
    return get_task(db, task_id)


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        repo=row["repo"],
        priority=row["priority"] if row["priority"] is not None else 3,
        status=TaskStatus(row["status"]),
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        ended_at=_parse_dt(row["ended_at"]),
    )


def _format_dt(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
