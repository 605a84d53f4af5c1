"""Shared fixtures: in-memory stand-ins for containers, GitHub and record storage."""

import copy
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from work_dispatcher.config import Config
from work_dispatcher.core.drain import DrainSignal
from work_dispatcher.core.events import EventLog
from work_dispatcher.core.hooks import HookRunner
from work_dispatcher.core.orchestrator import OrchestrationLoop
from work_dispatcher.core.ports import ContainerResult, IssueInfo, MergeCandidate, PrInfo, PullRequest
from work_dispatcher.db.models import WorkerRecord, repo_slug

REPO = "acme/widgets"


class FakeContainerRuntime:
    def __init__(self):
        self.running: set[str] = set()
        self.launched = []
        self.exit_codes: dict[str, int] = {}
        self.launch_error: Exception | None = None
        # Containers that exit before the launch check returns
        self.exit_on_launch: dict[str, int] = {}

    def is_running(self, name: str) -> bool:
        return name in self.running

    def run_container(self, config) -> ContainerResult:
        if self.launch_error:
            raise self.launch_error
        self.launched.append(config)
        if config.name in self.exit_on_launch:
            self.exit_codes[config.name] = self.exit_on_launch[config.name]
            return ContainerResult(exit_code=self.exit_on_launch[config.name], duration_s=0)
        self.running.add(config.name)
        return ContainerResult(exit_code=None, duration_s=0)

    def exit_code(self, name: str) -> int | None:
        return self.exit_codes.get(name)

    def stop(self, name: str, exit_code: int = 0):
        self.running.discard(name)
        self.exit_codes[name] = exit_code


class FakeTracker:
    def __init__(self):
        self.issues: dict[tuple[str, int], IssueInfo] = {}
        self.labels: dict[tuple[str, int], set[str]] = {}
        self.prs: dict[tuple[str, str], PrInfo] = {}
        self.open_prs = 0
        self.label_calls = []
        self.broken_issues: set[int] = set()
        # Reconciliation
        self.merged_for_issue: dict[tuple[str, int], PrInfo] = {}
        self.closed: list[tuple[int, str]] = []
        self.branches: dict[str, list[str]] = {}
        self.merged_branches: dict[tuple[str, str], PrInfo] = {}
        self.ahead: dict[tuple[str, str], int] = {}
        self.created_prs: list[tuple[str, str, str]] = []
        self.deleted_branches: list[str] = []
        # PR follow-ups
        self.pulls: dict[tuple[str, int], PullRequest] = {}
        self.needing_iteration: dict[str, list[int]] = {}
        self.conflicted: dict[str, list[int]] = {}
        self.feedback: dict[int, str] = {}
        self.merge_candidates: dict[str, list[MergeCandidate]] = {}
        self.merged: list[int] = []
        self.merge_error: Exception | None = None

    def add_issue(self, repo: str, number: int, title: str, body: str = "", labels=("ready",)):
        self.issues[(repo, number)] = IssueInfo(title=title, body=body)
        self.labels[(repo, number)] = set(labels)

    def add_pr(self, repo: str, branch: str, number: int):
        self.prs[(repo, branch)] = PrInfo(
            number=number, url=f"https://github.com/{repo}/pull/{number}", branch=branch
        )

    def add_pull(self, repo: str, number: int, branch: str, body: str = "", base: str = "main"):
        self.pulls[(repo, number)] = PullRequest(
            number=number, title=f"PR {number}", branch=branch, base=base, body=body,
            url=f"https://github.com/{repo}/pull/{number}",
        )

    def list_issues(self, repo: str, label: str) -> list[int]:
        return sorted(n for (r, n), labels in self.labels.items() if r == repo and label in labels)

    def get_issue(self, repo: str, issue: int) -> IssueInfo:
        if issue in self.broken_issues:
            raise RuntimeError(f"issue {issue} unavailable")
        return self.issues[(repo, issue)]

    def transition_label(self, repo, issue, remove=None, add=None):
        self.label_calls.append((issue, remove, add))
        if (repo, issue) not in self.issues:
            return
        labels = self.labels.setdefault((repo, issue), set())
        if remove:
            labels.discard(remove)
        if add:
            labels.add(add)

    def find_merged_pr_for_issue(self, repo: str, issue: int) -> PrInfo | None:
        return self.merged_for_issue.get((repo, issue))

    def close_issue(self, repo: str, issue: int, comment: str) -> None:
        self.closed.append((issue, comment))
        self.labels.pop((repo, issue), None)

    def find_pr_for_branch(self, repo: str, branch: str) -> PrInfo | None:
        return self.prs.get((repo, branch))

    def list_prs_for_branch(self, repo: str, branch: str, state: str) -> list[PrInfo]:
        if state == "open":
            pr = self.prs.get((repo, branch))
        else:
            pr = self.merged_branches.get((repo, branch))
        return [pr] if pr else []

    def count_open_prs(self, repo: str) -> int:
        return self.open_prs

    def get_pr(self, repo: str, number: int) -> PullRequest:
        return self.pulls[(repo, number)]

    def get_pr_feedback(self, repo: str, number: int) -> str:
        return self.feedback.get(number, "")

    def find_prs_needing_iteration(self, repo: str) -> list[int]:
        return list(self.needing_iteration.get(repo, []))

    def find_conflicted_prs(self, repo: str) -> list[int]:
        return list(self.conflicted.get(repo, []))

    def list_merge_candidates(self, repo: str) -> list[MergeCandidate]:
        return list(self.merge_candidates.get(repo, []))

    def merge_pr(self, repo: str, number: int, title: str) -> None:
        if self.merge_error:
            raise self.merge_error
        self.merged.append(number)

    def create_pr(self, repo: str, branch: str, title: str, body: str) -> None:
        self.created_prs.append((branch, title, body))

    def list_branches(self, repo: str, prefix: str) -> list[str]:
        return [b for b in self.branches.get(repo, []) if b.startswith(prefix)]

    def branch_ahead_by(self, repo: str, branch: str) -> int:
        return self.ahead.get((repo, branch), 0)

    def delete_branch(self, repo: str, branch: str) -> None:
        self.deleted_branches.append(branch)
        if branch in self.branches.get(repo, []):
            self.branches[repo].remove(branch)


class InMemoryStateStore:
    def __init__(self):
        self.records: dict[tuple[str, int], WorkerRecord] = {}

    def load(self, slug: str, issue: int) -> WorkerRecord | None:
        record = self.records.get((slug, issue))
        return copy.deepcopy(record) if record else None

    def save(self, record: WorkerRecord) -> None:
        self.records[(repo_slug(record.repo), record.issue_num)] = copy.deepcopy(record)

    def list_active(self) -> list[WorkerRecord]:
        active = [copy.deepcopy(r) for r in self.records.values() if r.status.is_active()]
        return sorted(active, key=lambda r: (r.repo, r.issue_num))


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def config(tmp_dir):
    return Config(base_dir=tmp_dir, repos=(REPO,), max_open_prs=10, batch_size=2)


@pytest.fixture
def containers():
    return FakeContainerRuntime()


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 10, 30, 0, tzinfo=timezone.utc))


@pytest.fixture
def hooks():
    return MagicMock(spec=HookRunner)


@pytest.fixture
def make_loop(config, store, containers, tracker, hooks, clock):
    """Build a loop over the fakes; keyword arguments override config fields."""

    def _make(**overrides) -> OrchestrationLoop:
        cfg = config.replace(**overrides) if overrides else config
        return OrchestrationLoop(
            config=cfg,
            store=store,
            containers=containers,
            tracker=tracker,
            events=EventLog(cfg.event_log_path, clock=clock),
            hooks=hooks,
            drain=DrainSignal(cfg.drain_path),
            gh_token="gh-test-token",
            clock=clock,
        )

    return _make
