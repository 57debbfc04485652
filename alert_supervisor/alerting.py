"""Alert rule evaluation and the per-instance pending/firing state machine."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Callable, Iterable

from .errors import EvaluationError
from .expression import LOOKBACK_S, format_duration
from .models.alerts import (
    AlertEvent,
    AlertInstance,
    AlertRule,
    AlertSnapshot,
    AlertState,
    EventKind,
)
from .models.metrics import EvaluationMetrics
from .models.samples import METRIC_NAME_LABEL, LabelSet
from .store import SampleStore

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(
    r"\{\{\s*\$(?:labels\.(?P<label>[a-zA-Z_][a-zA-Z0-9_]*)|(?P<var>value|labels))\s*\}\}"
)

RepeatIntervalFn = Callable[[dict[str, str]], "float | None"]


def fingerprint(rule_name: str, series: LabelSet) -> str:
    raw = rule_name + "\x00" + "\x00".join(f"{k}={v}" for k, v in series)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def format_value(value: float) -> str:
    return f"{value:.4g}"


def render_template(template: str, labels: dict[str, str], value: float) -> str:
    def _sub(match: re.Match) -> str:
        label = match.group("label")
        if label:
            return labels.get(label, "")
        if match.group("var") == "value":
            return format_value(value)
        return ", ".join(f"{k}={v}" for k, v in sorted(labels.items()))

    return _TEMPLATE_RE.sub(_sub, template)


def alert_labels(rule: AlertRule, series: LabelSet, value: float) -> dict[str, str]:
    labels = {k: v for k, v in series if k != METRIC_NAME_LABEL}
    for key, template in rule.labels.items():
        labels[key] = render_template(template, labels, value)
    labels["alertname"] = rule.name
    labels.setdefault("severity", rule.severity)
    return labels


class AlertEvaluator:
    """Owns the alert instance table.

    Only :meth:`evaluate`, :meth:`replace_rules` and :meth:`restore` mutate
    it, and none of them await, so a tick is always applied as a whole.
    """

    def __init__(
        self,
        store: SampleStore,
        rules: Iterable[AlertRule] = (),
        repeat_interval_for: RepeatIntervalFn | None = None,
        metrics: EvaluationMetrics | None = None,
    ) -> None:
        self.store = store
        self.repeat_interval_for = repeat_interval_for
        self.metrics = metrics or EvaluationMetrics()
        self._rules: dict[str, AlertRule] = {}
        self._instances: dict[str, dict[LabelSet, AlertInstance]] = {}
        for rule in rules:
            self._rules[rule.name] = rule

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def instances(self, rule_name: str | None = None) -> list[AlertInstance]:
        if rule_name is not None:
            return list(self._instances.get(rule_name, {}).values())
        return [i for table in self._instances.values() for i in table.values()]

    def instance(self, rule_name: str, series: LabelSet) -> AlertInstance | None:
        return self._instances.get(rule_name, {}).get(series)

    @property
    def retention_s(self) -> float:
        return max((r.condition.window_s for r in self._rules.values()), default=float(LOOKBACK_S))

    def _snapshot(
        self,
        rule: AlertRule,
        inst: AlertInstance,
        state: AlertState,
        resolved_at: float | None = None,
    ) -> AlertSnapshot:
        labels = alert_labels(rule, inst.series, inst.value)
        annotations = {
            key: render_template(template, labels, inst.value)
            for key, template in rule.annotations.items()
        }
        return AlertSnapshot(
            rule_name=rule.name,
            fingerprint=fingerprint(rule.name, inst.series),
            labels=labels,
            annotations=annotations,
            state=state,
            value=inst.value,
            active_since=inst.active_since,
            fired_at=inst.fired_at,
            resolved_at=resolved_at,
        )

    def _fire(self, rule: AlertRule, inst: AlertInstance, now: float) -> AlertEvent:
        inst.state = AlertState.FIRING
        inst.fired_at = now
        inst.last_notified_at = now
        logger.info(
            "Alert %s firing for %s (value=%s, for=%s)",
            rule.name,
            dict(inst.series),
            format_value(inst.value),
            format_duration(rule.for_s),
        )
        return AlertEvent(
            kind=EventKind.FIRING, alert=self._snapshot(rule, inst, inst.state), at=now
        )

    def _resolve(self, rule: AlertRule, inst: AlertInstance, now: float) -> AlertEvent:
        logger.info("Alert %s resolved for %s", rule.name, dict(inst.series))
        return AlertEvent(
            kind=EventKind.RESOLVED,
            alert=self._snapshot(rule, inst, AlertState.RESOLVED, resolved_at=now),
            at=now,
        )

    def _repeat_due(self, rule: AlertRule, inst: AlertInstance, now: float) -> bool:
        if self.repeat_interval_for is None or inst.last_notified_at is None:
            return False
        interval = self.repeat_interval_for(alert_labels(rule, inst.series, inst.value))
        if not interval or interval <= 0:
            return False
        return now - inst.last_notified_at >= interval

    def _apply(
        self, rule: AlertRule, active: dict[LabelSet, float], now: float
    ) -> list[AlertEvent]:
        events: list[AlertEvent] = []
        table = self._instances.setdefault(rule.name, {})

        for series, value in active.items():
            inst = table.get(series)
            if inst is None:
                inst = AlertInstance(
                    rule_name=rule.name,
                    series=series,
                    state=AlertState.PENDING,
                    active_since=now,
                    last_evaluated_at=now,
                    value=value,
                )
                table[series] = inst
                if rule.for_s > 0:
                    logger.info("Alert %s pending for %s", rule.name, dict(series))
            inst.value = value
            inst.last_evaluated_at = now

            if inst.state is AlertState.PENDING:
                if now - inst.active_since >= rule.for_s:
                    events.append(self._fire(rule, inst, now))
            elif self._repeat_due(rule, inst, now):
                inst.last_notified_at = now
                events.append(
                    AlertEvent(
                        kind=EventKind.FIRING,
                        alert=self._snapshot(rule, inst, inst.state),
                        at=now,
                        repeat=True,
                    )
                )

        for series in [s for s in table if s not in active]:
            inst = table.pop(series)
            if inst.state is AlertState.FIRING:
                events.append(self._resolve(rule, inst, now))
            else:
                logger.info(
                    "Alert %s cleared before firing for %s", rule.name, dict(series)
                )
        if not table:
            self._instances.pop(rule.name, None)
        return events

    def evaluate(self, tick_time: float) -> list[AlertEvent]:
        """Run one evaluation pass over every rule at ``tick_time``.

        A rule whose expression cannot be evaluated is skipped for this tick
        and its instances are left as they are.
        """
        events: list[AlertEvent] = []
        for rule in list(self._rules.values()):
            try:
                active = rule.condition.evaluate(self.store, tick_time)
            except EvaluationError as exc:
                self._record_rule_error(rule.name)
                logger.warning("Skipping rule %s this tick: %s", rule.name, exc)
                continue
            except Exception:
                self._record_rule_error(rule.name)
                logger.exception("Rule %s failed to evaluate", rule.name)
                continue
            events.extend(self._apply(rule, active, tick_time))

        retention = self.retention_s
        if retention > 0:
            self.store.evict_before(tick_time - retention)
        self.metrics.ticks += 1
        return events

    def _record_rule_error(self, rule_name: str) -> None:
        self.metrics.rule_errors[rule_name] = self.metrics.rule_errors.get(rule_name, 0) + 1

    def replace_rules(self, rules: Iterable[AlertRule], now: float) -> list[AlertEvent]:
        """Swap in a new rule set.

        Instances of rules that keep their name carry over. Firing instances
        of removed rules are resolved; pending ones are dropped.
        """
        new_rules = {rule.name: rule for rule in rules}
        events: list[AlertEvent] = []
        for name in [n for n in self._instances if n not in new_rules]:
            old_rule = self._rules.get(name)
            table = self._instances.pop(name)
            for inst in table.values():
                if inst.state is AlertState.FIRING and old_rule is not None:
                    events.append(self._resolve(old_rule, inst, now))
            logger.info("Dropped %d instance(s) of removed rule %s", len(table), name)
        self._rules = new_rules
        return events

    def dump(self) -> list[dict[str, object]]:
        return [
            {
                "rule": inst.rule_name,
                "series": [list(pair) for pair in inst.series],
                "state": inst.state.value,
                "active_since": inst.active_since,
                "last_evaluated_at": inst.last_evaluated_at,
                "value": inst.value,
                "fired_at": inst.fired_at,
                "last_notified_at": inst.last_notified_at,
            }
            for inst in self.instances()
        ]

    def restore(self, entries: Iterable[dict]) -> int:
        restored = 0
        for entry in entries:
            try:
                rule_name = str(entry["rule"])
                if rule_name not in self._rules:
                    continue
                series = tuple(sorted((str(k), str(v)) for k, v in entry["series"]))
                state = AlertState(entry["state"])
                if state is AlertState.RESOLVED:
                    continue
                inst = AlertInstance(
                    rule_name=rule_name,
                    series=series,
                    state=state,
                    active_since=float(entry["active_since"]),
                    last_evaluated_at=float(entry["last_evaluated_at"]),
                    value=float(entry["value"]),
                    fired_at=entry.get("fired_at"),
                    last_notified_at=entry.get("last_notified_at"),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed saved alert instance: %r", entry)
                continue
            self._instances.setdefault(rule_name, {})[series] = inst
            restored += 1
        return restored
