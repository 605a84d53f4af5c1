"""Branch and container naming, and worker prompts for issues and PRs."""

import re
from dataclasses import dataclass
from pathlib import Path

from work_dispatcher.core.ports import PullRequest, WorkerKind
from work_dispatcher.db.models import repo_slug

BRANCH_PREFIX = "wd"
SLUG_MAX = 50
ISSUE_BRANCH_PREFIX = f"{BRANCH_PREFIX}/issue-"

DEFAULT_TEMPLATE = """\
You are working on the repository cloned into /work.

Your task is GitHub issue #{{ISSUE_NUM}}: {{TITLE}}

{{BODY}}

Instructions:
- You are on branch {{BRANCH}}; a draft pull request already exists for it
- Implement the change described in the issue
- Run the project's tests and fix any failures
- Commit with clear messages and push to origin {{BRANCH}} as you go
- Mark the pull request ready for review when the work is complete
"""


@dataclass
class IssuePrompt:
    prompt: str
    branch: str
    pr_body: str


def slugify(text: str) -> str:
    """Lowercase, collapse runs of non-alphanumerics to one hyphen, trim hyphens."""
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def issue_branch(issue: int, title: str) -> str:
    slug = slugify(title)[:SLUG_MAX].rstrip("-")
    if not slug:
        return f"{BRANCH_PREFIX}/issue-{issue}"
    return f"{BRANCH_PREFIX}/issue-{issue}-{slug}"


def container_name(repo: str, issue: int) -> str:
    return f"{BRANCH_PREFIX}-{repo_slug(repo)}-issue-{issue}"


def load_template(path: Path | None) -> str:
    if path is None:
        return DEFAULT_TEMPLATE
    return path.read_text()


def pr_body(issue: int, body: str) -> str:
    return (
        f"Closes #{issue}\n\n{body}\n\n---\n"
        "*This PR was opened by a work-dispatcher worker. "
        "Commits will appear as work progresses.*"
    )


def build_issue_prompt(template: str, issue: int, title: str, body: str) -> IssuePrompt:
    branch = issue_branch(issue, title)
    prompt = (
        template.replace("{{TITLE}}", title)
        .replace("{{BODY}}", body)
        .replace("{{BRANCH}}", branch)
        .replace("{{ISSUE_NUM}}", str(issue))
    )
    return IssuePrompt(prompt=prompt, branch=branch, pr_body=pr_body(issue, body))


# ── Pull request workers ───────────────────────────────────────────

ITERATION_TEMPLATE = """\
You are working on the repository cloned into /work, on branch {{BRANCH}}.

Pull request #{{PR_NUM}} in {{REPO}} ("{{TITLE}}") received review feedback
since its last push.

Original issue:
{{ISSUE_BODY}}

Feedback:
{{FEEDBACK}}

Instructions:
- Address every point of the feedback
- Run the project's tests and fix any failures
- Commit with clear messages and push to origin {{BRANCH}}
"""

CONFLICT_FIX_TEMPLATE = """\
You are working on the repository cloned into /work, on branch {{BRANCH}}.

Pull request #{{PR_NUM}} in {{REPO}} ("{{TITLE}}") conflicts with {{BASE}}.
A merge of origin/{{BASE}} is in progress with conflicts.

Instructions:
- Resolve every conflict, keeping the intent of both sides
- Run the project's tests and fix any failures
- Commit the merge and push to origin {{BRANCH}}
"""

_LINKED_ISSUE_RE = re.compile(r"\b(?:closes|fixes|resolves)\s+#(\d+)", re.IGNORECASE)


def pr_container_name(repo: str, pr: int, kind: WorkerKind) -> str:
    name = f"{BRANCH_PREFIX}-{repo_slug(repo)}-pr-{pr}"
    if kind == WorkerKind.CONFLICT_FIX:
        return f"{name}-conflict"
    return name


def issue_from_branch(branch: str) -> int | None:
    """``wd/issue-42-fix-login`` -> 42. None for branches we did not create."""
    match = re.match(rf"{re.escape(ISSUE_BRANCH_PREFIX)}(\d+)", branch)
    return int(match.group(1)) if match else None


def linked_issue(body: str) -> int | None:
    match = _LINKED_ISSUE_RE.search(body or "")
    return int(match.group(1)) if match else None


def build_iteration_prompt(repo: str, pr: PullRequest, issue_body: str, feedback: str) -> str:
    return (
        ITERATION_TEMPLATE.replace("{{BRANCH}}", pr.branch)
        .replace("{{PR_NUM}}", str(pr.number))
        .replace("{{REPO}}", repo)
        .replace("{{TITLE}}", pr.title)
        .replace("{{ISSUE_BODY}}", issue_body or "<not found>")
        .replace("{{FEEDBACK}}", feedback or "<none>")
    )


def build_conflict_fix_prompt(repo: str, pr: PullRequest) -> str:
    return (
        CONFLICT_FIX_TEMPLATE.replace("{{BRANCH}}", pr.branch)
        .replace("{{PR_NUM}}", str(pr.number))
        .replace("{{REPO}}", repo)
        .replace("{{TITLE}}", pr.title)
        .replace("{{BASE}}", pr.base)
    )


def recovery_pr_body(issue: int, body: str) -> str:
    return (
        f"Closes #{issue}\n\n{body}\n\n---\n"
        "*This PR was opened by work-dispatcher for a worker branch "
        "that had commits but no pull request.*"
    )
