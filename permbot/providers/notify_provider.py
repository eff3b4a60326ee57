"""Outcome notifications (Slack incoming webhook)."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

import requests

logger = logging.getLogger(__name__)

SLACK_USERNAME = "Permbot"


@runtime_checkable
class Notifier(Protocol):
    def notify(self, success: bool) -> None: ...


def slack_message(success: bool, *, owner: str = "") -> str:
    where = f" ({owner})" if owner else ""
    if success:
        return f":white_check_mark: Permbot{where} applied updated access rules."
    return f":warning: Permbot{where} hit errors applying access rules. Check the agent logs."


class NullNotifier:
    def notify(self, success: bool) -> None:
        logger.debug("skipping notification because: webhook URL not defined (success=%s)", success)


class SlackNotifier:
    """
    Fire-and-forget Slack webhook.

    `notify` never raises: a failed post is logged and the reconcile cycle carries on.
    """

    def __init__(self, webhook_url: str, *, owner: str = "", timeout_seconds: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.owner = owner
        self.timeout_seconds = timeout_seconds

    def notify(self, success: bool) -> None:
        payload = {
            "username": SLACK_USERNAME,
            "text": slack_message(success, owner=self.owner),
        }
        try:
            resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout_seconds)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error("unable to post Slack webhook, continuing: %s", e)


def get_notifier(webhook_url: Optional[str], *, owner: str = "") -> Notifier:
    url = (webhook_url or "").strip()
    if not url:
        return NullNotifier()
    return SlackNotifier(url, owner=owner)
