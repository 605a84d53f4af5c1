"""Per-repository PID marker lock.

Only one dispatcher process should work on a repository at a time. The lock
is a file ``locks/{owner}--{name}.lock`` holding the owner's pid. A marker
whose pid is no longer alive is stale and gets taken over.

The check and the write are separate steps, so two processes starting in
the same instant can both believe they hold the lock. Good enough for a
single operator machine.
"""

import logging
import os
import signal
import time
from pathlib import Path

from work_dispatcher.db.models import repo_slug

logger = logging.getLogger(__name__)

FORCE_GRACE_S = 0.5


class LockHeld(Exception):
    """Raised when another live process holds the repository lock."""

    def __init__(self, pid: int, repo: str = ""):
        self.pid = pid
        self.repo = repo
        super().__init__(
            f"Repository {repo} is locked by running process {pid} "
            "(use --force to take over)"
        )


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def read_holder(path: Path) -> int | None:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


class RepoLock:
    """Held lock for one repository. Use as a context manager."""

    def __init__(self, path: Path, repo: str):
        self.path = path
        self.repo = repo
        self._released = False

    @classmethod
    def acquire(cls, locks_dir: Path, repo: str, force: bool = False) -> "RepoLock":
        """Take the lock for ``repo``.

        A live holder raises LockHeld unless ``force`` is set, in which case
        the holder is sent SIGTERM and given a short grace period before the
        marker is overwritten.
        """
        locks_dir.mkdir(parents=True, exist_ok=True)
        path = locks_dir / f"{repo_slug(repo)}.lock"

        holder = read_holder(path) if path.exists() else None
        if holder is not None and is_pid_alive(holder):
            if not force:
                raise LockHeld(holder, repo)
            logger.warning("Force-taking lock for %s from pid %d", repo, holder)
            try:
                os.kill(holder, signal.SIGTERM)
            except ProcessLookupError:
                pass
            time.sleep(FORCE_GRACE_S)
        elif path.exists():
            logger.info("Removing stale lock for %s (pid %s)", repo, holder)

        path.write_text(f"{os.getpid()}\n")
        return cls(path, repo)

    def release(self):
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "RepoLock":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
