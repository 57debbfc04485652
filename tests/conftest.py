"""Shared test fixtures and dummy classes."""

from __future__ import annotations

from alert_supervisor.expression import parse_condition
from alert_supervisor.models.alerts import (
    AlertEvent,
    AlertRule,
    AlertSnapshot,
    AlertState,
    EventKind,
    Notification,
)
from alert_supervisor.models.samples import MetricSample
from alert_supervisor.receivers.base import DeliveryOutcome, Receiver


class DummyReceiver(Receiver):
    """Receiver returning scripted outcomes and recording every call."""

    kind = "dummy"

    def __init__(self, name: str = "dummy", outcomes: list | None = None) -> None:
        super().__init__(name)
        self.outcomes = list(outcomes or [])
        self.calls: list[Notification] = []
        self.forgotten: list[Notification] = []
        self.closed = False

    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        self.calls.append(notification)
        if not self.outcomes:
            return DeliveryOutcome.SUCCESS
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def forget(self, notification: Notification) -> None:
        self.forgotten.append(notification)

    async def close(self) -> None:
        self.closed = True


class DummySink:
    """Collects notifications handed over by the router."""

    def __init__(self) -> None:
        self.submitted: list[Notification] = []

    def submit(self, notification: Notification) -> bool:
        self.submitted.append(notification)
        return True


class DummySecrets:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self.values = values or {}

    def get(self, name: str) -> str | None:
        return self.values.get(name)


def make_rule(
    name: str = "HighErrorRate",
    expr: str = "errors > 10",
    for_s: float = 0.0,
    severity: str = "critical",
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> AlertRule:
    return AlertRule(
        name=name,
        expr=expr,
        condition=parse_condition(expr),
        for_s=for_s,
        severity=severity,
        labels=labels or {},
        annotations=annotations or {},
    )


def sample(name: str, value: float, ts: float, **labels: str) -> MetricSample:
    return MetricSample(name=name, labels=labels, value=value, timestamp=ts)


def make_snapshot(
    rule_name: str = "HighErrorRate",
    labels: dict[str, str] | None = None,
    state: AlertState = AlertState.FIRING,
    value: float = 42.0,
) -> AlertSnapshot:
    full = {"alertname": rule_name, "severity": "critical"}
    full.update(labels or {})
    return AlertSnapshot(
        rule_name=rule_name,
        fingerprint="abc123def4567890",
        labels=full,
        annotations={"summary": "Too many errors"},
        state=state,
        value=value,
        active_since=1_700_000_000.0,
        fired_at=1_700_000_300.0,
        resolved_at=1_700_000_600.0 if state is AlertState.RESOLVED else None,
    )


def make_event(kind: EventKind = EventKind.FIRING, **kwargs) -> AlertEvent:
    state = AlertState.RESOLVED if kind is EventKind.RESOLVED else AlertState.FIRING
    return AlertEvent(kind=kind, alert=make_snapshot(state=state, **kwargs), at=1_700_000_600.0)


def make_notification(receiver: str = "dummy", kind: EventKind = EventKind.FIRING, **kwargs) -> Notification:
    return Notification(kind=kind, alert=make_event(kind, **kwargs).alert, receiver=receiver, created_at=1.0)
