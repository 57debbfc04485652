"""Delivery and evaluation metrics dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class DeliveryMetrics:
    attempts: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    total_latency_s: float = 0.0
    max_latency_s: float = 0.0


@dataclass
class EvaluationMetrics:
    ticks: int = 0
    skipped_ticks: int = 0
    last_duration_s: float = 0.0
    max_duration_s: float = 0.0
    rule_errors: dict[str, int] = field(default_factory=dict)
