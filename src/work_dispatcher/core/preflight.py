"""Environment checks run before the dispatcher touches any state."""

import logging
import shutil
from dataclasses import dataclass

from work_dispatcher.config import Config, ConfigurationError
from work_dispatcher.integrations import github

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def check_environment(config: Config, which=None, gh_auth=None) -> list[CheckResult]:
    """Run every check and report each outcome."""
    which = which or shutil.which
    gh_auth = gh_auth or github.auth_status
    results = []

    docker = which("docker")
    results.append(CheckResult(
        "docker",
        docker is not None,
        docker or "docker not found on PATH. To fix: install Docker and make sure `docker` is on PATH",
    ))

    gh = which("gh")
    if gh is None:
        results.append(CheckResult("gh", False, "gh not found on PATH. To fix: install the GitHub CLI"))
    elif not gh_auth():
        results.append(CheckResult("gh", False, "gh is not authenticated. To fix: gh auth login"))
    else:
        results.append(CheckResult("gh", True, gh))

    if config.oauth_token:
        results.append(CheckResult("credentials", True, "OAuth token"))
    elif config.anthropic_api_key:
        results.append(CheckResult("credentials", True, "ANTHROPIC_API_KEY"))
    else:
        results.append(CheckResult(
            "credentials",
            False,
            f"No worker credentials. To fix: write a token to {config.token_path} "
            "or export ANTHROPIC_API_KEY",
        ))

    return results


def run_preflight(config: Config, which=None, gh_auth=None):
    """Raise ConfigurationError describing the first failed check."""
    for result in check_environment(config, which=which, gh_auth=gh_auth):
        if not result.ok:
            raise ConfigurationError(f"Preflight failed ({result.name}): {result.detail}")
        logger.debug("Preflight %s ok: %s", result.name, result.detail)
