"""The polling loop that finalizes finished workers and dispatches new ones.

Each cycle, per repository, under that repository's lock:

1. recovery pass: every active worker record is checked against container
   liveness and PR existence and finalized when its container is gone;
2. reconciliation: issues still marked in progress whose PR has merged are
   closed, and leftover worker branches are deleted or given a PR;
3. auto-merge (when enabled): clean worker PRs are merged;
4. dispatch pass: conflicted PRs and PRs with new review feedback get a
   follow-up worker first, then open issues carrying the work label are
   matched against their records and PRs, and new containers are launched
   up to the configured ceilings.

A failure while handling one record, branch, PR or issue is logged, written
to the event log as an ``error`` event, and the cycle moves on to the next
item.
"""

import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from work_dispatcher.config import Config
from work_dispatcher.core.decision import (
    BranchAction,
    FinalizationResult,
    SkipReason,
    decide_branch_cleanup,
    decide_finalization,
    decide_issue_action,
    is_auto_mergeable,
    plan_pr_work,
)
from work_dispatcher.core.drain import DrainSignal
from work_dispatcher.core.events import EventLog, format_ts, parse_ts
from work_dispatcher.core.hooks import (
    PR_ITERATION_DONE,
    PR_ITERATION_STARTED,
    PR_MERGED,
    WORKER_COMPLETED,
    WORKER_FAILED,
    WORKER_STARTED,
    HookRunner,
    hook_env,
)
from work_dispatcher.core.lock import LockHeld, RepoLock
from work_dispatcher.core.ports import (
    ContainerConfig,
    ContainerRuntime,
    IssueTrackerGateway,
    StateStore,
    WorkerKind,
)
from work_dispatcher.core.prompt import (
    ISSUE_BRANCH_PREFIX,
    build_conflict_fix_prompt,
    build_issue_prompt,
    build_iteration_prompt,
    container_name,
    issue_branch,
    issue_from_branch,
    linked_issue,
    load_template,
    pr_container_name,
    recovery_pr_body,
)
from work_dispatcher.core.records import mark_done
from work_dispatcher.db.models import (
    WorkerRecord,
    WorkerStatus,
    format_duration,
    repo_slug,
)
from work_dispatcher.integrations.slack import SlackNotifier, format_back_pressure, format_worker_result

logger = logging.getLogger(__name__)

IN_PROGRESS_LABEL = "in-progress"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_ts(value)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class CycleStats:
    repo: str
    dispatched: int = 0
    skipped: int = 0
    finalized: int = 0
    closed: int = 0
    merged: int = 0
    pr_workers: int = 0
    locked_out: bool = False


@dataclass
class PrWorker:
    """A follow-up worker on an existing PR. Tracked in memory only."""

    repo: str
    pr_num: int
    kind: WorkerKind
    container: str
    branch: str
    started_at: datetime
    log_path: str


@dataclass
class _Capacity:
    active: int
    open_prs: int | None = None


class OrchestrationLoop:
    def __init__(
        self,
        config: Config,
        store: StateStore,
        containers: ContainerRuntime,
        tracker: IssueTrackerGateway,
        events: EventLog,
        hooks: HookRunner,
        drain: DrainSignal,
        notifier: SlackNotifier | None = None,
        gh_token: str | None = None,
        clock=utc_now,
    ):
        self.config = config
        self.store = store
        self.containers = containers
        self.tracker = tracker
        self.events = events
        self.hooks = hooks
        self.drain = drain
        self.notifier = notifier or SlackNotifier(None, None)
        self.gh_token = gh_token
        self.clock = clock
        self.pr_workers: dict[str, PrWorker] = {}
        self._forced: set[str] = set()
        self._template = load_template(config.prompt_template)
        self._stop_event = threading.Event()

    # ── Loop control ───────────────────────────────────────────────

    def request_shutdown(self, *_args):
        """Stop after the current cycle. Safe to use as a signal handler."""
        if not self._stop_event.is_set():
            logger.info("Shutdown requested; finishing current cycle")
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def install_signal_handlers(self):
        signal.signal(signal.SIGTERM, self.request_shutdown)
        signal.signal(signal.SIGINT, self.request_shutdown)

    def run(self) -> int:
        """Run cycles until single-cycle mode ends or shutdown is requested.

        Returns the number of cycles run.
        """
        logger.info(
            "work-dispatcher starting: repos=%s label=%s batch=%d max_open_prs=%d "
            "auto_merge=%s poll=%ds dir=%s",
            ",".join(self.config.repos) or "-",
            self.config.work_label,
            self.config.batch_size,
            self.config.max_open_prs,
            self.config.auto_merge,
            self.config.poll_interval_s,
            self.config.base_dir,
        )
        cycles = 0
        while True:
            self.run_cycle()
            cycles += 1
            if self.config.once or self.stopping:
                break
            if self._stop_event.wait(self.config.poll_interval_s):
                break
        logger.info("work-dispatcher stopped after %d cycle(s)", cycles)
        return cycles

    def run_cycle(self) -> list[CycleStats]:
        return [self.run_repo_cycle(repo) for repo in self.config.repos]

    def run_repo_cycle(self, repo: str) -> CycleStats:
        stats = CycleStats(repo=repo)
        self.events.cycle_start(repo, self.config.work_label)
        try:
            # --force takes over a live holder once per repository
            force = self.config.force and repo not in self._forced
            try:
                lock = RepoLock.acquire(self.config.locks_dir, repo, force=force)
            except LockHeld as e:
                logger.warning("[%s] skipping cycle: locked by pid %d", repo, e.pid)
                stats.locked_out = True
                return stats
            if force:
                self._forced.add(repo)

            with lock:
                self._step(repo, "recovery", self._recovery_pass, stats)
                self._step(repo, "reconcile", self._reconcile_pass, stats)
                if self.config.auto_merge:
                    self._step(repo, "auto-merge", self._auto_merge_pass, stats)
                self._step(repo, "dispatch", self._dispatch_pass, stats)
            return stats
        finally:
            self.events.cycle_end(repo, stats.dispatched, stats.skipped, stats.finalized)

    def _step(self, repo: str, name: str, step, stats: CycleStats):
        try:
            step(repo, stats)
        except Exception as e:
            logger.exception("[%s] %s failed", repo, name)
            self.events.error(repo, f"{name}: {e}")

    # ── Recovery ───────────────────────────────────────────────────

    def _recovery_pass(self, repo: str, stats: CycleStats):
        for record in self.store.list_active():
            if record.repo != repo:
                continue
            try:
                if self._recover(record):
                    stats.finalized += 1
            except Exception as e:
                logger.exception("[%s] failed to finalize #%d", repo, record.issue_num)
                self.events.error(repo, f"finalize #{record.issue_num}: {e}")

    def _recover(self, record: WorkerRecord) -> bool:
        """Finalize one active record if its container is gone. True if finalized."""
        alive = self.containers.is_running(record.container_name)
        if alive:
            if record.status == WorkerStatus.RECOVERING:
                record.status = WorkerStatus.RUNNING
                self.store.save(record)
                logger.info("[%s] #%d container alive, back to running", record.repo, record.issue_num)
            return False

        pr = self.tracker.find_pr_for_branch(record.repo, record.branch) if record.branch else None
        result = decide_finalization(alive, pr is not None)
        if result == FinalizationResult.STILL_RUNNING:
            return False

        now = self.clock()
        started = _parse_time(record.started_at)
        record.ended_at = format_ts(now)
        record.duration_s = int((now - started).total_seconds()) if started else None
        exit_code = self.containers.exit_code(record.container_name)
        if exit_code is not None:
            record.exit_code = exit_code

        success = result == FinalizationResult.DONE
        if success:
            record.status = WorkerStatus.DONE
            record.pr_num = pr.number
            record.pr_url = pr.url
        else:
            record.status = WorkerStatus.FAILED
        self.store.save(record)

        logger.info(
            "[%s] #%d %s after %s%s",
            record.repo,
            record.issue_num,
            "done" if success else "failed",
            format_duration(record.duration_s),
            f" (PR #{record.pr_num})" if success else "",
        )
        self.events.worker_result(
            record.repo,
            [record.issue_num],
            success,
            record.duration_s,
            pr_num=record.pr_num if success else None,
            pr_url=record.pr_url if success else None,
        )

        env = self._hook_env(record, "worker_completed" if success else "worker_failed")
        self.hooks.run(WORKER_COMPLETED, env)
        if not success:
            self.hooks.run(WORKER_FAILED, env)

        if success:
            self.tracker.transition_label(record.repo, record.issue_num, remove=IN_PROGRESS_LABEL)
        else:
            self.tracker.transition_label(
                record.repo, record.issue_num, remove=IN_PROGRESS_LABEL, add=self.config.work_label
            )

        self.notifier.notify(
            f"{record.repo}#{record.issue_num} {'done' if success else 'failed'}",
            format_worker_result(
                record.repo,
                record.issue_num,
                record.issue_title,
                success,
                format_duration(record.duration_s),
                record.pr_url,
            ),
        )
        return True

    # ── Reconciliation ─────────────────────────────────────────────

    def _reconcile_pass(self, repo: str, stats: CycleStats):
        for branch in self.tracker.list_branches(repo, ISSUE_BRANCH_PREFIX):
            try:
                self._clean_branch(repo, branch)
            except Exception as e:
                logger.exception("[%s] failed to check branch %s", repo, branch)
                self.events.error(repo, f"branch {branch}: {e}")

        for issue in self.tracker.list_issues(repo, IN_PROGRESS_LABEL):
            try:
                if self._close_if_merged(repo, issue):
                    stats.closed += 1
            except Exception as e:
                logger.exception("[%s] failed to reconcile #%d", repo, issue)
                self.events.error(repo, f"reconcile #{issue}: {e}")

    def _close_if_merged(self, repo: str, issue: int) -> bool:
        """Close an in-progress issue whose PR has merged. True if closed."""
        pr = self.tracker.find_merged_pr_for_issue(repo, issue)
        if pr is None:
            return False
        self.tracker.close_issue(repo, issue, f"Closed by merged PR #{pr.number}")
        mark_done(self.store, repo, issue, format_ts(self.clock()), pr=pr)
        if pr.branch:
            self.tracker.delete_branch(repo, pr.branch)
        logger.info("[%s] #%d closed by merged PR #%d", repo, issue, pr.number)
        return True

    def _clean_branch(self, repo: str, branch: str) -> BranchAction:
        has_open = bool(self.tracker.list_prs_for_branch(repo, branch, "open"))
        merged = [] if has_open else self.tracker.list_prs_for_branch(repo, branch, "merged")
        ahead = 0 if has_open or merged else self.tracker.branch_ahead_by(repo, branch)
        action = decide_branch_cleanup(has_open, bool(merged), ahead)

        if action == BranchAction.DELETE:
            logger.info("[%s] %s already merged via PR #%d, deleting", repo, branch, merged[0].number)
            self.tracker.delete_branch(repo, branch)
        elif action == BranchAction.RECOVER_PR:
            issue = issue_from_branch(branch)
            if issue is None:
                return BranchAction.KEEP
            record = self.store.load(repo_slug(repo), issue)
            if record and record.status.is_active():
                # The worker opens its own PR
                return BranchAction.KEEP
            info = self.tracker.get_issue(repo, issue)
            self.tracker.create_pr(repo, branch, info.title or branch, recovery_pr_body(issue, info.body))
            logger.info("[%s] opened recovery PR for %s (#%d)", repo, branch, issue)
        return action

    # ── Auto-merge ─────────────────────────────────────────────────

    def _auto_merge_pass(self, repo: str, stats: CycleStats):
        for candidate in self.tracker.list_merge_candidates(repo):
            if not is_auto_mergeable(candidate, ISSUE_BRANCH_PREFIX):
                continue
            try:
                self.tracker.merge_pr(repo, candidate.number, candidate.title)
            except Exception as e:
                logger.exception("[%s] failed to merge PR #%d", repo, candidate.number)
                self.events.error(repo, f"merge PR #{candidate.number}: {e}")
                continue
            stats.merged += 1
            logger.info("[%s] merged PR #%d: %s", repo, candidate.number, candidate.title)
            self.hooks.run(PR_MERGED, hook_env(
                event="pr_merged",
                repo=repo,
                pr_num=candidate.number,
                pr_title=candidate.title,
                branch=candidate.branch,
            ))
            self.notifier.notify(f"Merged {repo}#{candidate.number}: {candidate.title}")

    # ── Dispatch ───────────────────────────────────────────────────

    def _dispatch_pass(self, repo: str, stats: CycleStats):
        self._reap_pr_workers(repo)
        active = sum(1 for r in self.store.list_active() if r.repo == repo)
        active += sum(1 for w in self.pr_workers.values() if w.repo == repo)
        capacity = _Capacity(active=active)

        if self.drain.is_set():
            logger.info("[%s] drain set, no PR follow-up workers", repo)
        elif not self._pr_work_pass(repo, stats, capacity):
            return

        issues = self.tracker.list_issues(repo, self.config.work_label)
        logger.info("[%s] %d issue(s) labeled %s", repo, len(issues), self.config.work_label)

        for issue in issues:
            try:
                action, info = self._decide(repo, issue, stats)
                if not action.is_dispatch:
                    continue

                if self.drain.is_set():
                    logger.info("[%s] drain set, not dispatching #%d", repo, issue)
                    self.events.back_pressure(
                        repo, "drain", self._open_prs(repo, capacity), self.config.max_open_prs
                    )
                    stats.skipped += 1
                    continue

                if not self._has_capacity(repo, capacity, opens_pr=True):
                    break

                self._launch(repo, issue, info.title, info.body)
                stats.dispatched += 1
                capacity.active += 1
                if capacity.open_prs is not None:
                    capacity.open_prs += 1  # the worker opens a draft PR
            except Exception as e:
                logger.exception("[%s] failed to handle #%d", repo, issue)
                self.events.error(repo, f"issue #{issue}: {e}")

    def _open_prs(self, repo: str, capacity: _Capacity) -> int:
        if capacity.open_prs is None:
            capacity.open_prs = self.tracker.count_open_prs(repo)
        return capacity.open_prs

    def _has_capacity(self, repo: str, capacity: _Capacity, opens_pr: bool) -> bool:
        """False, after emitting back-pressure, when a ceiling is reached."""
        cap = self.config.max_open_prs
        if capacity.active >= self.config.batch_size:
            logger.info("[%s] %d worker(s) running, limit %d", repo, capacity.active, self.config.batch_size)
            self.events.back_pressure(
                repo,
                "max_workers",
                self._open_prs(repo, capacity),
                cap,
                workers=capacity.active,
                max_workers=self.config.batch_size,
            )
            return False

        if opens_pr and cap > 0:
            open_prs = self._open_prs(repo, capacity)
            if open_prs >= cap:
                logger.info("[%s] %d open PR(s), limit %d", repo, open_prs, cap)
                self.events.back_pressure(repo, "max_open_prs", open_prs, cap)
                self.notifier.notify(
                    f"Dispatch paused for {repo}",
                    format_back_pressure(repo, open_prs, cap),
                )
                return False
        return True

    def _decide(self, repo: str, issue: int, stats: CycleStats):
        record = self.store.load(repo_slug(repo), issue)
        info = self.tracker.get_issue(repo, issue)
        pr = self.tracker.find_pr_for_branch(repo, issue_branch(issue, info.title))
        action = decide_issue_action(record.status if record else None, pr is not None)

        if not action.is_dispatch:
            logger.debug("[%s] skipping #%d: %s", repo, issue, action.reason.value)
            self.events.issue_skipped(
                repo, issue, action.reason.value, pr_num=pr.number if pr else None
            )
            stats.skipped += 1
            if action.reason == SkipReason.EXISTING_PR:
                # Later cycles see a finished record instead of querying again
                mark_done(self.store, repo, issue, format_ts(self.clock()), pr=pr)
        return action, info

    def _launch(self, repo: str, issue: int, title: str, body: str):
        label = self.config.work_label
        self.tracker.transition_label(repo, issue, remove=label, add=IN_PROGRESS_LABEL)

        built = build_issue_prompt(self._template, issue, title, body)
        name = container_name(repo, issue)
        log_path = self.config.logs_dir / f"{repo_slug(repo)}--{issue}.log"

        env = {
            "PROMPT": built.prompt,
            "BRANCH": built.branch,
            "ISSUE_TITLE": title,
            "PR_BODY": built.pr_body,
            "REPO": repo,
            **self._credentials_env(),
        }

        started = self.clock()
        try:
            result = self.containers.run_container(ContainerConfig(
                name=name,
                image=self.config.image,
                repo=repo,
                branch=built.branch,
                env=env,
                timeout_s=self.config.timeout_s,
                log_path=str(log_path),
            ))
        except Exception:
            self.tracker.transition_label(repo, issue, remove=IN_PROGRESS_LABEL, add=label)
            raise

        record = WorkerRecord(
            repo=repo,
            issue_num=issue,
            issue_title=title,
            branch=built.branch,
            container_name=name,
            status=WorkerStatus.RUNNING,
            started_at=format_ts(started),
            exit_code=result.exit_code,
            log_path=str(log_path),
        )
        self.store.save(record)
        if result.exit_code is not None:
            # Finalized by the next recovery pass
            logger.info("[%s] #%d container %s exited during launch check", repo, issue, name)
        logger.info("[%s] dispatched #%d as %s on %s", repo, issue, name, built.branch)
        self.events.issue_dispatch(repo, [issue], name, grouped=False)
        self.hooks.run(WORKER_STARTED, self._hook_env(record, "worker_started"))

    # ── PR follow-up workers ───────────────────────────────────────

    def _pr_work_pass(self, repo: str, stats: CycleStats, capacity: _Capacity) -> bool:
        """Dispatch conflict fixes, then iterations. False when a ceiling stopped dispatch."""
        running = {w.pr_num for w in self.pr_workers.values() if w.repo == repo}
        plan = plan_pr_work(
            self.tracker.find_prs_needing_iteration(repo),
            self.tracker.find_conflicted_prs(repo),
            running,
        )
        if plan:
            logger.info(
                "[%s] PR follow-ups: conflict fixes %s, iterations %s",
                repo, plan.conflict_fixes, plan.iterations,
            )

        for kind, prs in (
            (WorkerKind.CONFLICT_FIX, plan.conflict_fixes),
            (WorkerKind.ITERATION, plan.iterations),
        ):
            for pr in prs:
                if not self._has_capacity(repo, capacity, opens_pr=False):
                    return False
                try:
                    launched = self._launch_pr_worker(repo, pr, kind)
                except Exception as e:
                    logger.exception("[%s] failed to start %s worker for PR #%d", repo, kind.value, pr)
                    self.events.error(repo, f"PR #{pr} {kind.value}: {e}")
                    continue
                capacity.active += 1
                if launched:
                    stats.pr_workers += 1
        return True

    def _launch_pr_worker(self, repo: str, pr_num: int, kind: WorkerKind) -> bool:
        """Start a follow-up worker. False if one was already running and got adopted."""
        pr = self.tracker.get_pr(repo, pr_num)
        name = pr_container_name(repo, pr_num, kind)
        log_path = self.config.logs_dir / f"{repo_slug(repo)}--pr-{pr_num}-{kind.value}.log"
        worker = PrWorker(
            repo=repo,
            pr_num=pr_num,
            kind=kind,
            container=name,
            branch=pr.branch,
            started_at=self.clock(),
            log_path=str(log_path),
        )

        if self.containers.is_running(name):
            # Left over from an earlier run of the dispatcher
            logger.info("[%s] %s already running for PR #%d", repo, name, pr_num)
            self.pr_workers[name] = worker
            return False

        if kind == WorkerKind.CONFLICT_FIX:
            prompt = build_conflict_fix_prompt(repo, pr)
        else:
            issue = linked_issue(pr.body) or issue_from_branch(pr.branch)
            issue_body = self.tracker.get_issue(repo, issue).body if issue else ""
            feedback = self.tracker.get_pr_feedback(repo, pr_num)
            prompt = build_iteration_prompt(repo, pr, issue_body, feedback)

        result = self.containers.run_container(ContainerConfig(
            name=name,
            image=self.config.image,
            repo=repo,
            branch=pr.branch,
            env={
                "PROMPT": prompt,
                "BRANCH": pr.branch,
                "BASE_BRANCH": pr.base,
                "REPO": repo,
                **self._credentials_env(),
            },
            timeout_s=self.config.timeout_s,
            log_path=str(log_path),
            kind=kind,
        ))
        logger.info("[%s] started %s worker %s for PR #%d", repo, kind.value, name, pr_num)
        self.hooks.run(PR_ITERATION_STARTED, self._pr_hook_env(worker, "pr_iteration_started"))
        if result.exit_code is None:
            self.pr_workers[name] = worker
        else:
            self._pr_worker_done(worker, result.exit_code)
        return True

    def _reap_pr_workers(self, repo: str):
        for name, worker in list(self.pr_workers.items()):
            if worker.repo != repo or self.containers.is_running(name):
                continue
            del self.pr_workers[name]
            self._pr_worker_done(worker, self.containers.exit_code(name))

    def _pr_worker_done(self, worker: PrWorker, exit_code: int | None):
        duration = int((self.clock() - worker.started_at).total_seconds())
        logger.info(
            "[%s] %s worker for PR #%d finished after %s (exit %s)",
            worker.repo,
            worker.kind.value,
            worker.pr_num,
            format_duration(duration),
            "?" if exit_code is None else exit_code,
        )
        env = self._pr_hook_env(worker, "pr_iteration_done")
        env.update(hook_env(duration=duration, exit_code=exit_code))
        self.hooks.run(PR_ITERATION_DONE, env)

    # ── Helpers ────────────────────────────────────────────────────

    def _credentials_env(self) -> dict[str, str]:
        env = {}
        for key, value in (
            ("GH_TOKEN", self.gh_token),
            ("CLAUDE_CODE_OAUTH_TOKEN", self.config.oauth_token),
            ("ANTHROPIC_API_KEY", self.config.anthropic_api_key),
        ):
            if value:
                env[key] = value
        return env

    def _hook_env(self, record: WorkerRecord, event: str) -> dict[str, str]:
        return hook_env(
            event=event,
            repo=record.repo,
            issue=record.issue_num,
            title=record.issue_title,
            branch=record.branch,
            container=record.container_name,
            pr_num=record.pr_num,
            pr_url=record.pr_url,
            duration=record.duration_s,
            exit_code=record.exit_code,
            log_path=record.log_path,
        )

    def _pr_hook_env(self, worker: PrWorker, event: str) -> dict[str, str]:
        return hook_env(
            event=event,
            repo=worker.repo,
            pr_num=worker.pr_num,
            kind=worker.kind.value,
            branch=worker.branch,
            container=worker.container,
            log_path=worker.log_path,
        )
