"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from work_dispatcher.cli import main
from work_dispatcher.config import ConfigurationError
from work_dispatcher.core.events import EventLog
from work_dispatcher.core.records import FileStateStore
from work_dispatcher.db.models import WorkerRecord, WorkerStatus

ENV_KEYS = ("WD_DIR", "WD_REPOS", "WD_WORK_LABEL", "CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY")


@pytest.fixture
def cli_env():
    """Set up a temp base directory for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        old_env = {k: os.environ.get(k) for k in ENV_KEYS}
        for k in ENV_KEYS:
            os.environ.pop(k, None)
        os.environ["WD_DIR"] = tmp

        yield CliRunner(), Path(tmp)

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestTaskCommands:
    def test_add_and_list(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Rotate keys", "--repo", "acme/widgets", "-p", "1"])
        assert result.exit_code == 0
        assert "Created task: rotate-keys" in result.output

        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "P1 rotate-keys: Rotate keys (queued) [acme/widgets]" in result.output

    def test_list_json(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Job"])
        result = runner.invoke(main, ["task", "list", "--json"])
        data = json.loads(result.output)
        assert data[0]["id"] == "job"
        assert data[0]["status"] == "queued"

    def test_lifecycle(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Job"])

        assert "now running" in runner.invoke(main, ["task", "start", "job"]).output
        assert "now failed" in runner.invoke(main, ["task", "fail", "job"]).output
        assert "now queued" in runner.invoke(main, ["task", "retry", "job"]).output
        runner.invoke(main, ["task", "start", "job"])
        assert "now done" in runner.invoke(main, ["task", "done", "job"]).output

        result = runner.invoke(main, ["task", "show", "job"])
        assert "Status: done" in result.output
        assert "status_changed: running -> done" in result.output

    def test_invalid_transition(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Job"])
        result = runner.invoke(main, ["task", "done", "job"])
        assert result.exit_code == 1
        assert "must be running" in result.output

    def test_unknown_task(self, cli_env):
        runner, _ = cli_env
        assert runner.invoke(main, ["task", "show", "nope"]).exit_code == 1
        assert runner.invoke(main, ["task", "start", "nope"]).exit_code == 1

    def test_next_picks_highest_priority(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Later", "-p", "5"])
        runner.invoke(main, ["task", "add", "Urgent", "-p", "0", "--repo", "acme/widgets"])

        result = runner.invoke(main, ["task", "next"])
        assert result.exit_code == 0
        assert "urgent: Urgent (P0, queued)" in result.output

        result = runner.invoke(main, ["task", "next", "--start"])
        assert "urgent: Urgent (P0, running)" in result.output
        assert "later: Later (P5, queued)" in runner.invoke(main, ["task", "next"]).output

    def test_next_with_empty_queue(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "next", "--repo", "acme/widgets"])
        assert result.exit_code == 0
        assert "No queued tasks." in result.output


class TestDrainCommands:
    def test_drain_and_resume(self, cli_env):
        runner, base = cli_env
        assert runner.invoke(main, ["drain"]).exit_code == 0
        assert (base / "drain").exists()
        assert runner.invoke(main, ["resume"]).exit_code == 0
        assert not (base / "drain").exists()


class TestStatusCommands:
    def _seed(self, base):
        store = FileStateStore(base / "workers")
        store.save(WorkerRecord(repo="acme/widgets", issue_num=4, issue_title="Fix it",
                                branch="wd/issue-4-fix-it", status=WorkerStatus.RUNNING))
        store.save(WorkerRecord(repo="acme/widgets", issue_num=5, issue_title="Done one",
                                status=WorkerStatus.DONE, pr_num=12, duration_s=263))

    def test_ps_active(self, cli_env):
        runner, base = cli_env
        self._seed(base)
        result = runner.invoke(main, ["ps"])
        assert "acme/widgets#4" in result.output
        assert "#5" not in result.output

    def test_ps_all(self, cli_env):
        runner, base = cli_env
        self._seed(base)
        result = runner.invoke(main, ["ps", "--all"])
        assert "PR #12" in result.output
        assert "4m23s" in result.output

    def test_ps_json(self, cli_env):
        runner, base = cli_env
        self._seed(base)
        data = json.loads(runner.invoke(main, ["ps", "--json"]).output)
        assert [d["issue_num"] for d in data] == [4]

    def test_ps_empty(self, cli_env):
        runner, _ = cli_env
        assert "No workers found." in runner.invoke(main, ["ps"]).output

    def test_events(self, cli_env):
        runner, base = cli_env
        log = EventLog(base / "logs" / "worker.log")
        log.issue_skipped("acme/widgets", 4, "in_flight")
        result = runner.invoke(main, ["events", "-n", "5"])
        assert "issue_skipped" in result.output
        assert "reason=in_flight" in result.output


class TestWorkCommand:
    def test_requires_repo(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["work"])
        assert result.exit_code == 1
        assert "No repositories" in result.output

    def test_rejects_bad_repo(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["work", "widgets"])
        assert result.exit_code == 1
        assert "owner/name" in result.output

    def test_preflight_failure(self, cli_env):
        runner, _ = cli_env
        with patch(
            "work_dispatcher.cli.preflight_mod.run_preflight",
            side_effect=ConfigurationError("Preflight failed (gh): To fix: gh auth login"),
        ):
            result = runner.invoke(main, ["work", "acme/widgets", "--once"])
        assert result.exit_code == 1
        assert "gh auth login" in result.output

    def test_runs_loop_with_cli_flags(self, cli_env):
        runner, _ = cli_env
        with (
            patch("work_dispatcher.cli.preflight_mod.run_preflight"),
            patch("work_dispatcher.cli._build_loop") as mock_build,
        ):
            result = runner.invoke(main, ["work", "acme/widgets", "--once", "--force"])

        assert result.exit_code == 0
        config = mock_build.call_args[0][0]
        assert config.repos == ("acme/widgets",)
        assert config.once is True
        assert config.force is True
        mock_build.return_value.install_signal_handlers.assert_called_once()
        mock_build.return_value.run.assert_called_once()


class TestDoctor:
    def test_reports_failures(self, cli_env):
        runner, _ = cli_env
        with patch("work_dispatcher.core.preflight.shutil.which", return_value=None):
            result = runner.invoke(main, ["doctor"])
        assert result.exit_code == 1
        assert "[FAIL] docker" in result.output
