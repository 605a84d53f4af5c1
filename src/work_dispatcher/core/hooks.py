"""User lifecycle hooks (``hooks/<name>`` executables).

Hooks are launched in their own session and never waited on. A missing or
non-executable hook is silently ignored, and a hook that cannot be started
is only logged.
"""

import logging
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

WORKER_STARTED = "on-worker-started"
WORKER_COMPLETED = "on-worker-completed"
WORKER_FAILED = "on-worker-failed"
PR_MERGED = "on-pr-merged"
PR_ITERATION_STARTED = "on-pr-iteration-started"
PR_ITERATION_DONE = "on-pr-iteration-done"

ENV_PREFIX = "WD_"


def hook_env(**values) -> dict[str, str]:
    """Build hook variables: ``hook_env(repo="a/b")`` -> ``{"WD_REPO": "a/b"}``.

    None values are dropped.
    """
    return {
        f"{ENV_PREFIX}{key.upper()}": str(value)
        for key, value in values.items()
        if value is not None
    }


class HookRunner:
    def __init__(self, hooks_dir: Path):
        self.hooks_dir = hooks_dir

    def find(self, hook_name: str) -> Path | None:
        path = self.hooks_dir / hook_name
        if not path.is_file():
            return None
        if not path.stat().st_mode & 0o111:
            logger.debug("Hook %s exists but is not executable", path)
            return None
        return path

    def run(self, hook_name: str, env: Mapping[str, str] | None = None) -> subprocess.Popen | None:
        """Launch a hook if present. Returns the process handle, or None."""
        path = self.find(hook_name)
        if path is None:
            return None

        child_env = {**os.environ, **(env or {})}
        try:
            proc = subprocess.Popen(
                [str(path)],
                env=child_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError:
            logger.exception("Failed to launch hook %s", hook_name)
            return None

        logger.debug("Launched hook %s (pid %d)", hook_name, proc.pid)
        return proc
