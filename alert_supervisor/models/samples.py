"""Metric sample dataclass and label-set helpers."""

from __future__ import annotations

from dataclasses import dataclass, field

# Sorted (name, value) pairs; hashable so it can key dicts.
LabelSet = tuple[tuple[str, str], ...]

METRIC_NAME_LABEL = "__name__"


def label_key(labels: dict[str, str] | None) -> LabelSet:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def without_name(labels: LabelSet) -> LabelSet:
    return tuple((k, v) for k, v in labels if k != METRIC_NAME_LABEL)


@dataclass(frozen=True)
class MetricSample:
    name: str
    labels: dict[str, str] = field(default_factory=dict, hash=False)
    value: float = 0.0
    timestamp: float = 0.0

    def series_key(self) -> LabelSet:
        """Label-set identifying the series, including the metric name."""
        return label_key({**self.labels, METRIC_NAME_LABEL: self.name})
