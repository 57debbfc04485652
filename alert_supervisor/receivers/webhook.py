"""Generic chat/webhook receiver (Alertmanager-style JSON body)."""

from __future__ import annotations

from .. import view
from ..models.alerts import Notification
from .base import HttpReceiver


class WebhookReceiver(HttpReceiver):
    kind = "webhook"

    def payload(self, notification: Notification) -> dict:
        body = view.webhook_payload(notification)
        # Slack/Mattermost style incoming webhooks render "text".
        body["text"] = view.render_text(notification)
        return body
