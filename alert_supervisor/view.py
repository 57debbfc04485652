"""View layer for formatting notifications (HTML, plain text, JSON payloads)."""

from __future__ import annotations

import html
from datetime import datetime, timezone

from .alerting import format_value
from .models.alerts import EventKind, Notification


def bold(text: str) -> str:
    return f"<b>{html.escape(str(text))}</b>"


def code(text: str) -> str:
    return f"<code>{html.escape(str(text))}</code>"


def iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def chunk(msg: str, size: int = 4000) -> list[str]:
    """Split message into chunks ensuring no chunk exceeds size limit."""
    if len(msg) <= size:
        return [msg]

    lines = msg.splitlines()
    chunks: list[str] = []
    current = ""
    for line in lines:
        if len(line) > size:
            if current:
                chunks.append(current)
                current = ""
            start = 0
            while start < len(line):
                chunks.append(line[start : start + size])
                start += size
            continue
        added_length = len(line) + (1 if current else 0)
        if len(current) + added_length > size and current:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def _headline(n: Notification) -> str:
    status = "RESOLVED" if n.kind is EventKind.RESOLVED else "FIRING"
    severity = n.alert.labels.get("severity", "")
    prefix = f"[{status}]"
    if severity and n.kind is EventKind.FIRING:
        prefix = f"[{status}:{severity.upper()}]"
    return f"{prefix} {n.alert.rule_name}"


def _label_pairs(n: Notification) -> list[tuple[str, str]]:
    return sorted(
        (k, v) for k, v in n.alert.labels.items() if k not in {"alertname", "severity"}
    )


def render_html(n: Notification) -> str:
    alert = n.alert
    lines = [bold(_headline(n))]
    summary = alert.annotations.get("summary")
    if summary:
        lines.append(html.escape(summary))
    description = alert.annotations.get("description")
    if description:
        lines.append(f"<i>{html.escape(description)}</i>")
    lines.append(f"{bold('Value:')} {code(format_value(alert.value))}")
    labels = _label_pairs(n)
    if labels:
        rendered = " ".join(code(f"{k}={v}") for k, v in labels)
        lines.append(f"{bold('Labels:')} {rendered}")
    started = iso(alert.fired_at or alert.active_since)
    lines.append(f"{bold('Since:')} {html.escape(started or 'n/a')}")
    if alert.resolved_at is not None:
        lines.append(f"{bold('Resolved:')} {html.escape(iso(alert.resolved_at) or '')}")
    return "\n".join(lines)


def render_subject(n: Notification) -> str:
    return _headline(n)


def render_text(n: Notification) -> str:
    alert = n.alert
    lines = [_headline(n), ""]
    for key in sorted(alert.annotations):
        lines.append(f"{key}: {alert.annotations[key]}")
    lines.append(f"value: {format_value(alert.value)}")
    for key, value in _label_pairs(n):
        lines.append(f"label {key}: {value}")
    lines.append(f"since: {iso(alert.fired_at or alert.active_since)}")
    if alert.resolved_at is not None:
        lines.append(f"resolved: {iso(alert.resolved_at)}")
    lines.append(f"fingerprint: {alert.fingerprint}")
    return "\n".join(lines)


def webhook_payload(n: Notification) -> dict:
    alert = n.alert
    return {
        "version": "1",
        "receiver": n.receiver,
        "status": n.kind.value,
        "alerts": [
            {
                "status": n.kind.value,
                "labels": dict(alert.labels),
                "annotations": dict(alert.annotations),
                "startsAt": iso(alert.fired_at or alert.active_since),
                "endsAt": iso(alert.resolved_at),
                "fingerprint": alert.fingerprint,
                "value": alert.value,
            }
        ],
        "groupLabels": {"alertname": alert.rule_name},
        "commonLabels": dict(alert.labels),
        "commonAnnotations": dict(alert.annotations),
    }
