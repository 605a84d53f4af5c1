"""Append-only JSONL event log (``logs/worker.log``).

Every line is one JSON object with an ``event`` name and a ``ts`` field.
Writing is best-effort: a full disk or unwritable log never interrupts a
dispatch cycle.
"""

import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


class EventLog:
    def __init__(self, path: Path, clock=None):
        self.path = path
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def emit(self, event: str, **fields) -> dict:
        """Append one event. Returns the record that was (or would have been) written."""
        record = {"ts": format_ts(self._clock()), "event": event, **fields}
        try:
            line = json.dumps(record)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.debug("Could not write event %s: %s", event, e)
        return record

    # ── Typed helpers ──────────────────────────────────────────────

    def cycle_start(self, repo: str, label: str) -> dict:
        return self.emit("cycle_start", repo=repo, label=label)

    def cycle_end(self, repo: str, dispatched: int, skipped: int, finalized: int) -> dict:
        return self.emit(
            "cycle_end",
            repo=repo,
            dispatched=dispatched,
            skipped=skipped,
            finalized=finalized,
        )

    def issue_dispatch(
        self,
        repo: str,
        issues: list[int],
        container: str,
        grouped: bool = False,
    ) -> dict:
        return self.emit(
            "issue_dispatch",
            repo=repo,
            issues=list(issues),
            container=container,
            grouped=grouped,
        )

    def worker_result(
        self,
        repo: str,
        issues: list[int],
        success: bool,
        duration_s: int | None,
        pr_num: int | None = None,
        pr_url: str | None = None,
    ) -> dict:
        fields = {
            "repo": repo,
            "issues": list(issues),
            "success": success,
            "duration_s": duration_s,
        }
        if pr_num is not None:
            fields["pr_num"] = pr_num
        if pr_url is not None:
            fields["pr_url"] = pr_url
        return self.emit("worker_result", **fields)

    def issue_skipped(
        self,
        repo: str,
        issue: int,
        reason: str,
        pr_num: int | None = None,
    ) -> dict:
        fields = {"repo": repo, "issue": issue, "reason": reason}
        if pr_num is not None:
            fields["pr_num"] = pr_num
        return self.emit("issue_skipped", **fields)

    def back_pressure(
        self,
        repo: str,
        reason: str,
        open_prs: int,
        threshold: int,
        workers: int | None = None,
        max_workers: int | None = None,
    ) -> dict:
        """``open_prs`` and ``threshold`` are always the open PR count and cap."""
        fields = {"repo": repo, "reason": reason, "open_prs": open_prs, "threshold": threshold}
        if workers is not None:
            fields["workers"] = workers
            fields["max_workers"] = max_workers
        return self.emit("back_pressure", **fields)

    def error(self, repo: str, message: str) -> dict:
        return self.emit("error", repo=repo, message=message)


def read_events(path: Path, limit: int = 50) -> list[dict]:
    """Return the last ``limit`` events, oldest first. Bad lines are skipped."""
    if not path.exists():
        return []
    tail: deque[dict] = deque(maxlen=max(limit, 0))
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError:
                continue
            if isinstance(event, dict):
                tail.append(event)
    return list(tail)
