"""Configuration loading from environment variables and the config file."""

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_IMAGE = "ghcr.io/work-dispatcher/worker:latest"
MAX_BATCH_SIZE = 5


class ConfigurationError(Exception):
    """Raised when configuration is invalid or the environment is not ready."""


@dataclass(frozen=True)
class Config:
    base_dir: Path = field(default_factory=lambda: Path.home() / ".work_dispatcher")
    repos: tuple[str, ...] = ()
    work_label: str = "ready"
    image: str = DEFAULT_IMAGE
    timeout_s: int = 1800
    batch_size: int = 1
    max_open_prs: int = 10
    poll_interval_s: int = 120
    auto_merge: bool = False
    prompt_template: Path | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    anthropic_api_key: str | None = None
    oauth_token: str | None = None
    once: bool = False
    force: bool = False

    # ── Derived paths ──────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return self.base_dir / "wd.db"

    @property
    def locks_dir(self) -> Path:
        return self.base_dir / "locks"

    @property
    def hooks_dir(self) -> Path:
        return self.base_dir / "hooks"

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def workers_dir(self) -> Path:
        return self.base_dir / "workers"

    @property
    def drain_path(self) -> Path:
        return self.base_dir / "drain"

    @property
    def event_log_path(self) -> Path:
        return self.logs_dir / "worker.log"

    @property
    def token_path(self) -> Path:
        return self.base_dir / "token"

    def replace(self, **changes) -> "Config":
        return dataclasses.replace(self, **changes)

    # ── Loading ────────────────────────────────────────────────────

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Config":
        """Build a config from defaults, the config file, then WD_* variables.

        Environment variables win over the ``config`` file in the base
        directory, which wins over built-in defaults. The result is frozen;
        use :meth:`replace` for per-run overrides such as ``--once``.
        """
        env = os.environ if env is None else env
        values: dict = {}

        if base := env.get("WD_DIR"):
            values["base_dir"] = Path(base).expanduser()
        base_dir = values.get("base_dir") or cls().base_dir

        file_values = read_config_file(base_dir / "config")

        def pick(env_key: str, file_key: str) -> str | None:
            return env.get(env_key) or file_values.get(file_key)

        if repos := pick("WD_REPOS", "repos"):
            values["repos"] = tuple(r.strip() for r in repos.split(",") if r.strip())

        if label := pick("WD_WORK_LABEL", "work_label"):
            values["work_label"] = label

        if image := pick("WD_IMAGE", "image"):
            values["image"] = image

        if timeout := pick("WD_TIMEOUT", "timeout"):
            values["timeout_s"] = _parse_int("timeout", timeout)

        if batch := pick("WD_BATCH_SIZE", "batch_size"):
            values["batch_size"] = max(1, min(MAX_BATCH_SIZE, _parse_int("batch_size", batch)))

        if cap := pick("WD_MAX_OPEN_PRS", "max_open_prs"):
            values["max_open_prs"] = max(0, _parse_int("max_open_prs", cap))

        if interval := pick("WD_POLL_INTERVAL", "poll_interval"):
            values["poll_interval_s"] = _parse_int("poll_interval", interval)

        if (auto_merge := pick("WD_AUTO_MERGE", "auto_merge")) is not None:
            values["auto_merge"] = _parse_bool(auto_merge)

        if template := pick("WD_PROMPT_TEMPLATE", "prompt_template"):
            values["prompt_template"] = Path(template).expanduser()

        values["slack_bot_token"] = env.get("SLACK_BOT_TOKEN")
        values["slack_channel"] = pick("WD_SLACK_CHANNEL", "slack_channel")
        values["anthropic_api_key"] = env.get("ANTHROPIC_API_KEY")

        token_path = base_dir / "token"
        if oauth := env.get("CLAUDE_CODE_OAUTH_TOKEN"):
            values["oauth_token"] = oauth
        elif token_path.is_file():
            values["oauth_token"] = token_path.read_text().strip() or None

        return cls(**values)


def read_config_file(path: Path) -> dict[str, str]:
    """Parse a key=value file. Blank lines and # comments are ignored."""
    values: dict[str, str] = {}
    if not path.is_file():
        return values
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip()
    return values


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {key}: {value!r} (expected an integer)")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_config() -> Config:
    return Config.from_env()
