"""Pure dispatch and finalization decisions.

Nothing here does I/O. The orchestration loop gathers the facts (stored
worker status, container liveness, PR existence) and these functions map
them to an action: what to do with a labeled issue, how to finalize a
worker, which open PRs get follow-up workers, which PRs may be merged, and
what to do with a leftover worker branch.
"""

from dataclasses import dataclass, field
from enum import Enum

from work_dispatcher.core.ports import MergeCandidate
from work_dispatcher.db.models import WorkerStatus


class SkipReason(str, Enum):
    ALREADY_COMPLETED = "already_completed"
    IN_FLIGHT = "in_flight"
    EXISTING_PR = "existing_pr"


class ActionKind(str, Enum):
    SKIP = "skip"
    DISPATCH = "dispatch"


@dataclass(frozen=True)
class IssueAction:
    kind: ActionKind
    reason: SkipReason | None = None

    @classmethod
    def skip(cls, reason: SkipReason) -> "IssueAction":
        return cls(ActionKind.SKIP, reason)

    @classmethod
    def dispatch(cls) -> "IssueAction":
        return cls(ActionKind.DISPATCH)

    @property
    def is_dispatch(self) -> bool:
        return self.kind == ActionKind.DISPATCH


class FinalizationResult(str, Enum):
    STILL_RUNNING = "still_running"
    DONE = "done"
    FAILED = "failed"


def decide_issue_action(
    worker_status: WorkerStatus | None,
    has_existing_pr: bool,
) -> IssueAction:
    """Decide whether a labeled issue should get a new worker.

    The stored record wins over PR existence: a finished issue is never
    redispatched, an in-flight one is left alone, and a failed one is retried
    even if its PR is still open. Without a record, an existing PR means
    someone else is already on it.
    """
    if worker_status == WorkerStatus.DONE:
        return IssueAction.skip(SkipReason.ALREADY_COMPLETED)
    if worker_status in (WorkerStatus.RUNNING, WorkerStatus.RECOVERING):
        return IssueAction.skip(SkipReason.IN_FLIGHT)
    if worker_status == WorkerStatus.FAILED:
        return IssueAction.dispatch()
    if has_existing_pr:
        return IssueAction.skip(SkipReason.EXISTING_PR)
    return IssueAction.dispatch()


def decide_finalization(container_alive: bool, pr_exists: bool) -> FinalizationResult:
    """Decide the outcome of an active worker from liveness and PR state."""
    if container_alive:
        return FinalizationResult.STILL_RUNNING
    if pr_exists:
        return FinalizationResult.DONE
    return FinalizationResult.FAILED


@dataclass
class PrWorkPlan:
    conflict_fixes: list[int] = field(default_factory=list)
    iterations: list[int] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.conflict_fixes or self.iterations)


def plan_pr_work(
    needing_iteration: list[int],
    conflicted: list[int],
    running: set[int],
) -> PrWorkPlan:
    """Pick the open PRs that get a follow-up worker this cycle.

    Conflict fixes come first. A PR that already has a follow-up worker
    running is left alone, and a PR that is both conflicted and has new
    feedback only gets the conflict fix.
    """
    conflict_fixes = [pr for pr in conflicted if pr not in running]
    iterations = [
        pr for pr in needing_iteration
        if pr not in running and pr not in conflict_fixes
    ]
    return PrWorkPlan(conflict_fixes=conflict_fixes, iterations=iterations)


def is_auto_mergeable(candidate: MergeCandidate, branch_prefix: str) -> bool:
    """A worker PR with no conflicts, green checks, not a draft, no change requests."""
    return (
        candidate.branch.startswith(branch_prefix)
        and candidate.mergeable == "MERGEABLE"
        and candidate.merge_state == "CLEAN"
        and not candidate.is_draft
        and candidate.review_decision != "CHANGES_REQUESTED"
    )


class BranchAction(str, Enum):
    KEEP = "keep"
    DELETE = "delete"
    NOTHING_AHEAD = "nothing_ahead"
    RECOVER_PR = "recover_pr"


def decide_branch_cleanup(has_open_pr: bool, has_merged_pr: bool, ahead_by: int) -> BranchAction:
    """Decide what to do with a worker branch found on the remote.

    An open PR means the branch is in use. A merged PR means it is stale.
    A branch with commits but no PR lost its PR (the worker died before
    opening one) and gets a recovery PR.
    """
    if has_open_pr:
        return BranchAction.KEEP
    if has_merged_pr:
        return BranchAction.DELETE
    if ahead_by <= 0:
        return BranchAction.NOTHING_AHEAD
    return BranchAction.RECOVER_PR
