"""Data models for work dispatcher."""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    repo: str | None = None
    priority: int = 3
    status: TaskStatus = TaskStatus.QUEUED
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


class WorkerStatus(str, Enum):
    """Lifecycle of a dispatched worker container.

    ``recovering`` is only ever read from older records; the dispatcher
    never writes it.
    """

    RUNNING = "running"
    RECOVERING = "recovering"
    DONE = "done"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str | None) -> "WorkerStatus":
        """Decode a stored status. Unknown values decode to FAILED."""
        try:
            return cls(value)
        except ValueError:
            return cls.FAILED

    def is_terminal(self) -> bool:
        return self in (WorkerStatus.DONE, WorkerStatus.FAILED)

    def is_active(self) -> bool:
        return self in (WorkerStatus.RUNNING, WorkerStatus.RECOVERING)


@dataclass
class WorkerRecord:
    repo: str
    issue_num: int
    issue_title: str = ""
    branch: str = ""
    container_name: str = ""
    pr_num: int | None = None
    pr_url: str | None = None
    status: WorkerStatus = WorkerStatus.RUNNING
    started_at: str | None = None
    ended_at: str | None = None
    duration_s: int | None = None
    exit_code: int | None = None
    log_path: str | None = None

    @property
    def repo_slug(self) -> str:
        return repo_slug(self.repo)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def repo_slug(repo: str) -> str:
    """``owner/name`` -> ``owner--name``, safe for use in file names."""
    return repo.replace("/", "--")


def format_duration(seconds: int | None) -> str:
    """Format seconds as ``4m23s``, ``1h02m`` or ``-`` when unknown."""
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def branch_display(record: WorkerRecord) -> str:
    if record.status == WorkerStatus.DONE and record.pr_num is not None:
        return f"PR #{record.pr_num}"
    return record.branch or "-"
