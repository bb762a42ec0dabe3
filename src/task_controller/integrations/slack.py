"""Slack Web API integration."""

import logging
from dataclasses import dataclass

from task_controller.integrations.events import APPROVAL_REQUIRED, USAGE_WARNING, EventBus

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


def format_approval_request(request: dict) -> list[dict]:
    """Format a pending approval request as Slack blocks."""
    details = (request.get("details") or "")[:500]
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":raised_hand: *Approval required* ({request['action_type']})\n"
                    f"*{request['task_title']}* (`{request['task_id']}`)\n"
                    f"{request.get('description', '')}\n"
                    f"Request ID: `{request['id']}`"
                ),
            },
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": details or "(no output)"}],
        },
    ]


def format_usage_warning(status: str, percentage: float) -> list[dict]:
    """Format a usage level change as Slack blocks."""
    emoji = {
        "warning": ":large_yellow_circle:",
        "approaching_limit": ":large_orange_circle:",
        "at_limit": ":red_circle:",
    }.get(status, ":grey_question:")
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Token usage {status.replace('_', ' ')}*: {percentage:.0f}% of budget",
            },
        }
    ]


class SlackRelay:
    """Forwards approval requests and usage warnings to a Slack channel."""

    def __init__(self, token: str | None, channel: str):
        self.token = token
        self.channel = channel
        self._subscriptions: list[str] = []

    @classmethod
    def from_config(cls, config) -> "SlackRelay | None":
        """A relay for the configured channel, or None if Slack is not set up."""
        if not (config.slack_bot_token and config.slack_channel):
            return None
        return cls(config.slack_bot_token, config.slack_channel)

    def attach(self, bus: EventBus):
        self._subscriptions.append(bus.subscribe(APPROVAL_REQUIRED, self.on_approval_required))
        self._subscriptions.append(bus.subscribe(USAGE_WARNING, self.on_usage_warning))

    def detach(self, bus: EventBus):
        for sub_id in self._subscriptions:
            bus.unsubscribe(sub_id)
        self._subscriptions.clear()

    def on_approval_required(self, event_name: str, request: dict):
        self._send(
            f"Approval required for task: {request['task_title']}",
            format_approval_request(request),
        )

    def on_usage_warning(self, event_name: str, payload: dict):
        self._send(
            f"Token usage {payload['status']}: {payload['percentage']:.0f}%",
            format_usage_warning(payload["status"], payload["percentage"]),
        )

    def _send(self, text: str, blocks: list[dict]):
        try:
            send_message(self.token, self.channel, text, blocks)
        except Exception:
            logger.exception("Failed to send Slack notification to %s", self.channel)
