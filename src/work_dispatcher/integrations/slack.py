"""Slack Web API integration."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_worker_result(
    repo: str,
    issue: int,
    title: str,
    success: bool,
    duration: str,
    pr_url: str | None = None,
) -> list[dict]:
    """Format a finished worker as Slack blocks."""
    emoji = ":white_check_mark:" if success else ":red_circle:"
    outcome = "Worker finished" if success else "Worker failed"
    pr_link = f"\n<{pr_url}|View Pull Request>" if pr_url else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{outcome}*\n*{title}* ({repo}#{issue})\nDuration: {duration}{pr_link}",
            },
        }
    ]


def format_back_pressure(repo: str, open_prs: int, threshold: int) -> list[dict]:
    """Format a dispatch pause as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":double_vertical_bar: *Dispatch paused: {repo}*\n"
                    f"{open_prs} open (limit {threshold})"
                ),
            },
        }
    ]


class SlackNotifier:
    """Best-effort notifications; failures are logged, never raised."""

    def __init__(self, token: str | None, channel: str | None):
        self.token = token
        self.channel = channel

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def notify(self, text: str, blocks: list[dict] | None = None) -> SlackMessage | None:
        if not self.enabled:
            return None
        try:
            return send_message(self.token, self.channel, text, blocks)
        except Exception:
            logger.exception("Failed to send Slack notification")
            return None
