"""Alert rule, instance and notification dataclasses."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .samples import LabelSet

if TYPE_CHECKING:
    from ..expression import Condition


class AlertState(str, enum.Enum):
    PENDING = "pending"
    FIRING = "firing"
    RESOLVED = "resolved"


class EventKind(str, enum.Enum):
    FIRING = "firing"
    RESOLVED = "resolved"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class AlertRule:
    name: str
    expr: str
    condition: "Condition"
    for_s: float = 0.0
    severity: str = "warning"
    labels: dict[str, str] = field(default_factory=dict, hash=False)
    annotations: dict[str, str] = field(default_factory=dict, hash=False)


@dataclass
class AlertInstance:
    rule_name: str
    series: LabelSet
    state: AlertState
    active_since: float
    last_evaluated_at: float
    value: float
    fired_at: float | None = None
    last_notified_at: float | None = None


@dataclass(frozen=True)
class AlertSnapshot:
    """Immutable copy of an instance handed to routing and delivery."""

    rule_name: str
    fingerprint: str
    labels: dict[str, str] = field(hash=False)
    annotations: dict[str, str] = field(hash=False)
    state: AlertState
    value: float
    active_since: float
    fired_at: float | None = None
    resolved_at: float | None = None


@dataclass(frozen=True)
class AlertEvent:
    kind: EventKind
    alert: AlertSnapshot
    at: float
    repeat: bool = False


@dataclass(frozen=True)
class Notification:
    kind: EventKind
    alert: AlertSnapshot
    receiver: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: float = 0.0
