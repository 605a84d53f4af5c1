"""Tests for the per-repository PID lock."""

import os
import signal
from unittest.mock import patch

import pytest

from work_dispatcher.core.lock import LockHeld, RepoLock, is_pid_alive

REPO = "acme/widgets"


def _lock_path(tmp_dir):
    return tmp_dir / "locks" / "acme--widgets.lock"


class TestIsPidAlive:
    def test_self_is_alive(self):
        assert is_pid_alive(os.getpid())

    def test_none_and_nonpositive(self):
        assert not is_pid_alive(None)
        assert not is_pid_alive(0)

    def test_missing_process(self):
        with patch("os.kill", side_effect=ProcessLookupError):
            assert not is_pid_alive(12345)

    def test_permission_error_counts_as_alive(self):
        with patch("os.kill", side_effect=PermissionError):
            assert is_pid_alive(12345)


class TestRepoLock:
    def test_acquire_writes_pid(self, tmp_dir):
        lock = RepoLock.acquire(tmp_dir / "locks", REPO)
        assert _lock_path(tmp_dir).read_text() == f"{os.getpid()}\n"
        lock.release()
        assert not _lock_path(tmp_dir).exists()

    def test_release_is_idempotent(self, tmp_dir):
        lock = RepoLock.acquire(tmp_dir / "locks", REPO)
        lock.release()
        lock.release()

    def test_context_manager_releases_on_exception(self, tmp_dir):
        with pytest.raises(RuntimeError):
            with RepoLock.acquire(tmp_dir / "locks", REPO):
                raise RuntimeError("boom")
        assert not _lock_path(tmp_dir).exists()

    def test_live_holder_raises(self, tmp_dir):
        path = _lock_path(tmp_dir)
        path.parent.mkdir(parents=True)
        holder = os.getppid()
        path.write_text(f"{holder}\n")

        with pytest.raises(LockHeld) as exc:
            RepoLock.acquire(tmp_dir / "locks", REPO)

        assert exc.value.pid == holder
        assert path.read_text() == f"{holder}\n"

    def test_stale_marker_is_overwritten(self, tmp_dir):
        path = _lock_path(tmp_dir)
        path.parent.mkdir(parents=True)
        path.write_text("4242\n")

        with patch("work_dispatcher.core.lock.is_pid_alive", return_value=False):
            with RepoLock.acquire(tmp_dir / "locks", REPO):
                assert path.read_text() == f"{os.getpid()}\n"

    def test_garbage_marker_is_stale(self, tmp_dir):
        path = _lock_path(tmp_dir)
        path.parent.mkdir(parents=True)
        path.write_text("not a pid")

        with RepoLock.acquire(tmp_dir / "locks", REPO):
            assert path.read_text() == f"{os.getpid()}\n"

    def test_force_terminates_live_holder(self, tmp_dir):
        path = _lock_path(tmp_dir)
        path.parent.mkdir(parents=True)
        path.write_text("4242\n")

        with (
            patch("work_dispatcher.core.lock.is_pid_alive", return_value=True),
            patch("work_dispatcher.core.lock.os.kill") as mock_kill,
            patch("work_dispatcher.core.lock.time.sleep") as mock_sleep,
        ):
            lock = RepoLock.acquire(tmp_dir / "locks", REPO, force=True)

        mock_kill.assert_called_once_with(4242, signal.SIGTERM)
        mock_sleep.assert_called_once_with(0.5)
        assert path.read_text() == f"{os.getpid()}\n"
        lock.release()
