"""Tests for branch naming and prompt construction."""

from work_dispatcher.core.ports import PullRequest, WorkerKind
from work_dispatcher.core.prompt import (
    DEFAULT_TEMPLATE,
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
    slugify,
)


class TestNaming:
    def test_slugify(self):
        assert slugify("Fix: Login fails on Safari!") == "fix-login-fails-on-safari"
        assert slugify("--Already--dashed--") == "already-dashed"
        assert slugify("Café ünïcode") == "caf-n-code"

    def test_issue_branch(self):
        assert issue_branch(42, "Fix login bug") == "wd/issue-42-fix-login-bug"

    def test_issue_branch_truncates_slug(self):
        branch = issue_branch(1, "word " * 30)
        slug = branch.removeprefix("wd/issue-1-")
        assert len(slug) <= 50
        assert not slug.endswith("-")

    def test_issue_branch_without_title(self):
        assert issue_branch(3, "???") == "wd/issue-3"

    def test_container_name(self):
        assert container_name("acme/widgets", 42) == "wd-acme--widgets-issue-42"

    def test_container_name_is_unique_across_repos(self):
        names = {container_name("acme/widgets", 42), container_name("acme/other", 42)}
        assert len(names) == 2

    def test_pr_container_name(self):
        assert pr_container_name("acme/widgets", 9, WorkerKind.ITERATION) == "wd-acme--widgets-pr-9"
        assert pr_container_name("acme/widgets", 9, WorkerKind.CONFLICT_FIX) == "wd-acme--widgets-pr-9-conflict"

    def test_issue_from_branch(self):
        assert issue_from_branch("wd/issue-42-fix-login-bug") == 42
        assert issue_from_branch("wd/issue-3") == 3
        assert issue_from_branch("feature/issue-42") is None

    def test_linked_issue(self):
        assert linked_issue("Some text\n\nCloses #17") == 17
        assert linked_issue("fixes #4 and more") == 4
        assert linked_issue("Refs #4") is None
        assert linked_issue("") is None


class TestPrompt:
    def test_placeholders_filled(self):
        built = build_issue_prompt(
            "{{ISSUE_NUM}}|{{TITLE}}|{{BRANCH}}|{{BODY}}", 42, "Fix login bug", "Steps to reproduce"
        )
        assert built.prompt == "42|Fix login bug|wd/issue-42-fix-login-bug|Steps to reproduce"
        assert built.branch == "wd/issue-42-fix-login-bug"

    def test_pr_body_closes_issue(self):
        built = build_issue_prompt(DEFAULT_TEMPLATE, 7, "Add cache", "Cache the thing")
        assert built.pr_body.startswith("Closes #7\n\nCache the thing")
        assert "work-dispatcher worker" in built.pr_body

    def test_default_template_has_no_leftovers(self):
        built = build_issue_prompt(DEFAULT_TEMPLATE, 7, "Add cache", "Body")
        assert "{{" not in built.prompt

    def test_load_template(self, tmp_dir):
        assert load_template(None) == DEFAULT_TEMPLATE
        path = tmp_dir / "prompt.md"
        path.write_text("custom {{TITLE}}")
        assert load_template(path) == "custom {{TITLE}}"


class TestPrPrompts:
    PR = PullRequest(number=9, title="Add cache", branch="wd/issue-7-add-cache", base="develop")

    def test_iteration_prompt(self):
        prompt = build_iteration_prompt("acme/widgets", self.PR, "Cache the thing", "alice: rename foo")
        assert "#9 in acme/widgets" in prompt
        assert "Cache the thing" in prompt
        assert "alice: rename foo" in prompt
        assert "{{" not in prompt

    def test_iteration_prompt_placeholders_for_missing_context(self):
        prompt = build_iteration_prompt("acme/widgets", self.PR, "", "")
        assert "<not found>" in prompt
        assert "<none>" in prompt

    def test_conflict_fix_prompt(self):
        prompt = build_conflict_fix_prompt("acme/widgets", self.PR)
        assert "conflicts with develop" in prompt
        assert "origin wd/issue-7-add-cache" in prompt
        assert "{{" not in prompt

    def test_recovery_pr_body(self):
        body = recovery_pr_body(7, "Cache the thing")
        assert body.startswith("Closes #7\n\nCache the thing")
        assert "no pull request" in body
