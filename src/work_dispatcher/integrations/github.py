"""GitHub access through the ``gh`` CLI."""

import json
import logging
import subprocess

from work_dispatcher.core.ports import IssueInfo, MergeCandidate, PrInfo, PullRequest
from work_dispatcher.core.prompt import ISSUE_BRANCH_PREFIX

logger = logging.getLogger(__name__)


class TrackerQueryFailure(Exception):
    """Raised when a gh command fails or returns unreadable output."""


def run_gh(args: list[str]) -> str:
    """Run a gh command and return stdout. Raises TrackerQueryFailure on failure."""
    cmd = ["gh"] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except FileNotFoundError as e:
        raise TrackerQueryFailure("gh CLI not found on PATH") from e
    except subprocess.CalledProcessError as e:
        raise TrackerQueryFailure(f"gh {' '.join(args)} failed: {e.stderr.strip()}") from e


def _run_gh_json(args: list[str]):
    output = run_gh(args)
    try:
        return json.loads(output or "null")
    except ValueError as e:
        raise TrackerQueryFailure(f"gh {' '.join(args)} returned invalid JSON") from e


def auth_status() -> bool:
    """True when ``gh auth status`` succeeds."""
    try:
        run_gh(["auth", "status"])
        return True
    except TrackerQueryFailure:
        return False


def auth_token() -> str | None:
    try:
        return run_gh(["auth", "token"]) or None
    except TrackerQueryFailure:
        return None


class GhCliGateway:
    """IssueTrackerGateway backed by the gh CLI."""

    def list_issues(self, repo: str, label: str) -> list[int]:
        data = _run_gh_json([
            "issue", "list",
            "--repo", repo,
            "--label", label,
            "--state", "open",
            "--json", "number",
            "--limit", "100",
        ])
        return sorted(item["number"] for item in data or [])

    def get_issue(self, repo: str, issue: int) -> IssueInfo:
        data = _run_gh_json([
            "issue", "view", str(issue),
            "--repo", repo,
            "--json", "title,body",
        ])
        if not isinstance(data, dict):
            raise TrackerQueryFailure(f"Issue #{issue} in {repo} returned no data")
        return IssueInfo(title=data.get("title") or "", body=data.get("body") or "")

    def find_pr_for_branch(self, repo: str, branch: str) -> PrInfo | None:
        data = _run_gh_json([
            "pr", "list",
            "--repo", repo,
            "--head", branch,
            "--state", "all",
            "--json", "number,url,headRefName",
            "--limit", "1",
        ])
        if not data:
            return None
        return _pr_info(data[0])

    def count_open_prs(self, repo: str) -> int:
        output = run_gh([
            "pr", "list",
            "--repo", repo,
            "--state", "open",
            "--json", "number",
            "--jq", "length",
        ])
        try:
            return int(output or 0)
        except ValueError as e:
            raise TrackerQueryFailure(f"Unexpected open PR count for {repo}: {output!r}") from e

    def transition_label(
        self,
        repo: str,
        issue: int,
        remove: str | None = None,
        add: str | None = None,
    ) -> None:
        """Swap issue labels. Failures (closed or missing issue) are only logged."""
        args = ["issue", "edit", str(issue), "--repo", repo]
        if remove:
            args += ["--remove-label", remove]
        if add:
            args += ["--add-label", add]
        if len(args) == 5:
            return
        try:
            run_gh(args)
        except TrackerQueryFailure as e:
            logger.warning("Label transition on %s#%d failed: %s", repo, issue, e)

    def find_merged_pr_for_issue(self, repo: str, issue: int) -> PrInfo | None:
        """The first merged PR that cross-references the issue, if any."""
        events = _run_gh_json(["api", f"repos/{repo}/issues/{issue}/timeline"])
        number = merged_pr_from_timeline(events or [])
        if number is None:
            return None
        data = _run_gh_json([
            "pr", "view", str(number),
            "--repo", repo,
            "--json", "number,url,headRefName",
        ])
        return _pr_info(data)

    def close_issue(self, repo: str, issue: int, comment: str) -> None:
        run_gh(["issue", "close", str(issue), "--repo", repo, "--comment", comment])

    def list_prs_for_branch(self, repo: str, branch: str, state: str) -> list[PrInfo]:
        data = _run_gh_json([
            "pr", "list",
            "--repo", repo,
            "--head", branch,
            "--state", state,
            "--json", "number,url,headRefName",
        ])
        return [_pr_info(item) for item in data or []]

    def get_pr(self, repo: str, number: int) -> PullRequest:
        data = _run_gh_json([
            "pr", "view", str(number),
            "--repo", repo,
            "--json", "number,title,headRefName,baseRefName,body,url",
        ])
        if not isinstance(data, dict) or not data.get("headRefName"):
            raise TrackerQueryFailure(f"Could not determine branch for PR #{number} in {repo}")
        return PullRequest(
            number=data["number"],
            title=data.get("title") or "",
            branch=data["headRefName"],
            base=data.get("baseRefName") or "main",
            body=data.get("body") or "",
            url=data.get("url") or "",
        )

    def get_pr_feedback(self, repo: str, number: int) -> str:
        """Review summaries, conversation comments and inline comments as text."""
        data = _run_gh_json(["pr", "view", str(number), "--repo", repo, "--json", "reviews,comments"])
        inline = _run_gh_json(["api", f"repos/{repo}/pulls/{number}/comments"])
        return format_feedback(data or {}, inline or [])

    def find_prs_needing_iteration(self, repo: str) -> list[int]:
        data = _run_gh_json([
            "pr", "list",
            "--repo", repo,
            "--state", "open",
            "--json", "number,headRefName,reviews,commits,comments",
        ])
        return sorted(
            pr["number"] for pr in data or []
            if pr.get("headRefName", "").startswith(ISSUE_BRANCH_PREFIX) and needs_iteration(pr)
        )

    def find_conflicted_prs(self, repo: str) -> list[int]:
        data = _run_gh_json([
            "pr", "list",
            "--repo", repo,
            "--state", "open",
            "--json", "number,headRefName,mergeable",
        ])
        return sorted(
            pr["number"] for pr in data or []
            if pr.get("headRefName", "").startswith(ISSUE_BRANCH_PREFIX)
            and pr.get("mergeable") == "CONFLICTING"
        )

    def list_merge_candidates(self, repo: str) -> list[MergeCandidate]:
        data = _run_gh_json([
            "pr", "list",
            "--repo", repo,
            "--state", "open",
            "--json", "number,title,headRefName,mergeable,mergeStateStatus,isDraft,reviewDecision",
        ])
        return [
            MergeCandidate(
                number=pr["number"],
                title=pr.get("title") or "",
                branch=pr.get("headRefName") or "",
                mergeable=pr.get("mergeable") or "UNKNOWN",
                merge_state=pr.get("mergeStateStatus") or "UNKNOWN",
                is_draft=bool(pr.get("isDraft")),
                review_decision=pr.get("reviewDecision") or None,
            )
            for pr in data or []
        ]

    def merge_pr(self, repo: str, number: int, title: str) -> None:
        run_gh([
            "pr", "merge", str(number),
            "--repo", repo,
            "--squash",
            "--delete-branch",
            "--subject", f"{title} (#{number})",
        ])

    def create_pr(self, repo: str, branch: str, title: str, body: str) -> None:
        run_gh(["pr", "create", "--repo", repo, "--head", branch, "--title", title, "--body", body])

    def list_branches(self, repo: str, prefix: str) -> list[str]:
        output = run_gh(["api", "--paginate", f"repos/{repo}/branches", "--jq", ".[].name"])
        return [name for name in output.splitlines() if name.startswith(prefix)]

    def branch_ahead_by(self, repo: str, branch: str) -> int:
        """Commits on ``branch`` that the default branch does not have."""
        base = run_gh(["api", f"repos/{repo}", "--jq", ".default_branch"])
        output = run_gh(["api", f"repos/{repo}/compare/{base}...{branch}", "--jq", ".ahead_by"])
        try:
            return int(output or 0)
        except ValueError as e:
            raise TrackerQueryFailure(f"Unexpected compare result for {branch}: {output!r}") from e

    def delete_branch(self, repo: str, branch: str) -> None:
        """Delete a remote branch. Failures (already deleted) are only logged."""
        try:
            run_gh(["api", "-X", "DELETE", f"repos/{repo}/git/refs/heads/{branch}"])
        except TrackerQueryFailure as e:
            logger.warning("Deleting branch %s in %s failed: %s", branch, repo, e)


# ── Response parsing ──────────────────────────────────────────────────────────


def _pr_info(data: dict) -> PrInfo:
    return PrInfo(
        number=data["number"],
        url=data.get("url") or "",
        branch=data.get("headRefName") or "",
    )


def merged_pr_from_timeline(events: list[dict]) -> int | None:
    """Number of the first merged PR among the timeline's cross-references."""
    for event in events:
        if event.get("event") != "cross-referenced":
            continue
        source = (event.get("source") or {}).get("issue") or {}
        pull_request = source.get("pull_request") or {}
        if pull_request.get("merged_at") and source.get("number"):
            return source["number"]
    return None


def needs_iteration(pr: dict) -> bool:
    """True when changes were requested or someone commented after the last push."""
    commits = pr.get("commits") or []
    last_push = commits[-1].get("committedDate", "") if commits else ""
    for review in pr.get("reviews") or []:
        if review.get("state") == "CHANGES_REQUESTED" and review.get("submittedAt", "") > last_push:
            return True
    return any(c.get("createdAt", "") > last_push for c in pr.get("comments") or [])


def format_feedback(pr_view: dict, inline_comments: list[dict]) -> str:
    lines = []
    for review in pr_view.get("reviews") or []:
        body = (review.get("body") or "").strip()
        if body or review.get("state") == "CHANGES_REQUESTED":
            author = (review.get("author") or {}).get("login", "unknown")
            lines.append(f"[{author}] {review.get('state', '').lower()}: {body}")
    for comment in pr_view.get("comments") or []:
        author = (comment.get("author") or {}).get("login", "unknown")
        lines.append(f"[{author}] comment: {(comment.get('body') or '').strip()}")
    for comment in inline_comments:
        author = (comment.get("user") or {}).get("login", "unknown")
        location = f"{comment.get('path', '?')}:{comment.get('line') or comment.get('original_line') or '?'}"
        lines.append(f"[{author}] {location}: {(comment.get('body') or '').strip()}")
    return "\n".join(lines)
