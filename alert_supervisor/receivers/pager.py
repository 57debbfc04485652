"""Paging service receiver speaking an events-v2 style API."""

from __future__ import annotations

import httpx

from .. import view
from ..models.alerts import EventKind, Notification
from .base import HttpReceiver

_SEVERITIES = {"critical", "error", "warning", "info"}


class PagerReceiver(HttpReceiver):
    """Triggers and resolves incidents keyed by the alert fingerprint."""

    kind = "pager"

    def __init__(
        self,
        name: str,
        url: str,
        routing_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name, url, timeout=timeout, client=client)
        self.routing_key = routing_key

    def payload(self, notification: Notification) -> dict:
        alert = notification.alert
        action = "resolve" if notification.kind is EventKind.RESOLVED else "trigger"
        body: dict = {
            "routing_key": self.routing_key,
            "event_action": action,
            "dedup_key": alert.fingerprint,
        }
        if action == "trigger":
            severity = alert.labels.get("severity", "warning").lower()
            body["payload"] = {
                "summary": alert.annotations.get("summary") or view.render_subject(notification),
                "source": alert.labels.get("instance") or alert.rule_name,
                "severity": severity if severity in _SEVERITIES else "warning",
                "timestamp": view.iso(alert.fired_at or alert.active_since),
                "custom_details": {
                    "labels": dict(alert.labels),
                    "annotations": dict(alert.annotations),
                    "value": alert.value,
                },
            }
        return body
