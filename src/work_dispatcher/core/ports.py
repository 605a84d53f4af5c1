"""Interfaces the orchestration loop depends on.

Concrete adapters live in ``integrations`` (docker, gh) and
``core.records`` (worker record files). Tests substitute in-memory fakes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from work_dispatcher.db.models import WorkerRecord


class WorkerKind(str, Enum):
    ISSUE = "issue"
    ITERATION = "iteration"
    CONFLICT_FIX = "conflict_fix"


@dataclass
class ContainerConfig:
    name: str
    image: str
    repo: str
    branch: str
    env: dict[str, str] = field(default_factory=dict)
    timeout_s: int = 1800
    log_path: str | None = None
    kind: WorkerKind = WorkerKind.ISSUE


@dataclass
class ContainerResult:
    """Outcome of a launch. ``exit_code`` is None while the container runs."""

    exit_code: int | None
    duration_s: int = 0


@dataclass
class IssueInfo:
    title: str
    body: str = ""


@dataclass
class PrInfo:
    number: int
    url: str
    branch: str = ""


@dataclass
class PullRequest:
    number: int
    title: str
    branch: str
    base: str = "main"
    body: str = ""
    url: str = ""


@dataclass
class MergeCandidate:
    number: int
    title: str
    branch: str
    mergeable: str = "UNKNOWN"
    merge_state: str = "UNKNOWN"
    is_draft: bool = False
    review_decision: str | None = None


class ContainerRuntime(Protocol):
    def is_running(self, name: str) -> bool: ...

    def run_container(self, config: ContainerConfig) -> ContainerResult: ...

    def exit_code(self, name: str) -> int | None: ...


class IssueTrackerGateway(Protocol):
    # Issues
    def list_issues(self, repo: str, label: str) -> list[int]: ...

    def get_issue(self, repo: str, issue: int) -> IssueInfo: ...

    def transition_label(
        self,
        repo: str,
        issue: int,
        remove: str | None = None,
        add: str | None = None,
    ) -> None: ...

    def find_merged_pr_for_issue(self, repo: str, issue: int) -> PrInfo | None: ...

    def close_issue(self, repo: str, issue: int, comment: str) -> None: ...

    # Pull requests
    def find_pr_for_branch(self, repo: str, branch: str) -> PrInfo | None: ...

    def list_prs_for_branch(self, repo: str, branch: str, state: str) -> list[PrInfo]: ...

    def count_open_prs(self, repo: str) -> int: ...

    def get_pr(self, repo: str, number: int) -> PullRequest: ...

    def get_pr_feedback(self, repo: str, number: int) -> str: ...

    def find_prs_needing_iteration(self, repo: str) -> list[int]: ...

    def find_conflicted_prs(self, repo: str) -> list[int]: ...

    def list_merge_candidates(self, repo: str) -> list[MergeCandidate]: ...

    def merge_pr(self, repo: str, number: int, title: str) -> None: ...

    def create_pr(self, repo: str, branch: str, title: str, body: str) -> None: ...

    # Branches
    def list_branches(self, repo: str, prefix: str) -> list[str]: ...

    def branch_ahead_by(self, repo: str, branch: str) -> int: ...

    def delete_branch(self, repo: str, branch: str) -> None: ...


class StateStore(Protocol):
    def load(self, repo_slug: str, issue: int) -> WorkerRecord | None: ...

    def save(self, record: WorkerRecord) -> None: ...

    def list_active(self) -> list[WorkerRecord]: ...
