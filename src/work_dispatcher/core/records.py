"""Worker records stored as one JSON file per (repo, issue)."""

import json
import logging
import os
from pathlib import Path

from work_dispatcher.core.ports import PrInfo, StateStore
from work_dispatcher.db.models import WorkerRecord, WorkerStatus, repo_slug

logger = logging.getLogger(__name__)


class MalformedRecord(Exception):
    """Raised when a worker record cannot be decoded."""


def parse_record(data: dict) -> WorkerRecord:
    """Decode a record dict. ``repo`` and ``issue_num`` are required."""
    repo = data.get("repo")
    if not isinstance(repo, str) or not repo:
        raise MalformedRecord("missing or empty 'repo'")
    issue_num = data.get("issue_num")
    if not isinstance(issue_num, int) or isinstance(issue_num, bool):
        raise MalformedRecord("missing or non-integer 'issue_num'")

    return WorkerRecord(
        repo=repo,
        issue_num=issue_num,
        issue_title=data.get("issue_title") or "",
        branch=data.get("branch") or "",
        container_name=data.get("container_name") or "",
        pr_num=data.get("pr_num"),
        pr_url=data.get("pr_url"),
        status=WorkerStatus.parse(data.get("status")),
        started_at=data.get("started_at"),
        ended_at=data.get("ended_at"),
        duration_s=data.get("duration_s"),
        exit_code=data.get("exit_code"),
        log_path=data.get("log_path"),
    )


class FileStateStore:
    """Reads and writes worker records under ``workers/``.

    File name is ``{owner}--{name}--{issue}.json``. Writes go to a temporary
    file in the same directory which is then renamed over the target, so a
    reader never sees a half-written record.
    """

    def __init__(self, workers_dir: Path):
        self.workers_dir = workers_dir

    def path_for(self, slug: str, issue: int) -> Path:
        return self.workers_dir / f"{slug}--{issue}.json"

    def load(self, slug: str, issue: int) -> WorkerRecord | None:
        path = self.path_for(slug, issue)
        if not path.exists():
            return None
        return self._read(path)

    def save(self, record: WorkerRecord) -> None:
        self.workers_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(repo_slug(record.repo), record.issue_num)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2))
        os.replace(tmp, path)

    def list_all(self) -> list[WorkerRecord]:
        """All readable records, ordered by repo then issue number."""
        if not self.workers_dir.is_dir():
            return []
        records = []
        for path in self.workers_dir.glob("*.json"):
            try:
                records.append(self._read(path))
            except MalformedRecord as e:
                logger.warning("Skipping worker record %s: %s", path.name, e)
        records.sort(key=lambda r: (r.repo, r.issue_num))
        return records

    def list_active(self) -> list[WorkerRecord]:
        return [r for r in self.list_all() if r.status.is_active()]

    def _read(self, path: Path) -> WorkerRecord:
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise MalformedRecord(f"{path.name}: {e}") from e
        if not isinstance(data, dict):
            raise MalformedRecord(f"{path.name}: expected a JSON object")
        return parse_record(data)


def mark_done(
    store: StateStore,
    repo: str,
    issue: int,
    ended_at: str,
    pr: PrInfo | None = None,
) -> WorkerRecord:
    """Record an issue as finished, creating a minimal record if it has none.

    An existing ``ended_at`` is kept, and the PR fields are only overwritten
    when ``pr`` is given.
    """
    record = store.load(repo_slug(repo), issue)
    if record is None:
        record = WorkerRecord(repo=repo, issue_num=issue, ended_at=ended_at)
    record.status = WorkerStatus.DONE
    record.ended_at = record.ended_at or ended_at
    if pr is not None:
        record.pr_num = pr.number
        record.pr_url = pr.url or record.pr_url
    store.save(record)
    return record
