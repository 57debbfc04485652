"""The supervisor's own metrics, fed back into the store as samples.

This is how delivery failures become visible: a rule such as
``increase(alert_supervisor_notifications_failed_total[10m]) > 0`` fires when
notifications are being lost.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Iterable, Mapping

import psutil

from .models.alerts import AlertInstance, AlertState
from .models.metrics import DeliveryMetrics, EvaluationMetrics
from .models.samples import MetricSample

logger = logging.getLogger(__name__)

PREFIX = "alert_supervisor_"

# Module import time stands in for process start.
STARTED_AT = time.time()

_process: psutil.Process | None = None


def _get_process() -> psutil.Process:
    global _process
    if _process is None:
        _process = psutil.Process(os.getpid())
    return _process


def delivery_samples(metrics: Mapping[str, DeliveryMetrics], now: float) -> list[MetricSample]:
    out: list[MetricSample] = []
    for receiver, m in metrics.items():
        labels = {"receiver": receiver}
        for suffix, value in (
            ("notification_attempts_total", m.attempts),
            ("notifications_delivered_total", m.delivered),
            ("notification_retries_total", m.retried),
            ("notifications_failed_total", m.failed),
            ("notification_delivery_seconds_sum", m.total_latency_s),
            ("notification_delivery_seconds_max", m.max_latency_s),
        ):
            out.append(MetricSample(PREFIX + suffix, dict(labels), float(value), now))
    return out


def evaluation_samples(
    metrics: EvaluationMetrics, instances: Iterable[AlertInstance], now: float
) -> list[MetricSample]:
    out = [
        MetricSample(PREFIX + "evaluation_ticks_total", {}, float(metrics.ticks), now),
        MetricSample(PREFIX + "evaluation_skipped_ticks_total", {}, float(metrics.skipped_ticks), now),
        MetricSample(PREFIX + "evaluation_duration_seconds", {}, metrics.last_duration_s, now),
        MetricSample(PREFIX + "evaluation_duration_seconds_max", {}, metrics.max_duration_s, now),
    ]
    for rule, count in metrics.rule_errors.items():
        out.append(
            MetricSample(PREFIX + "rule_evaluation_failures_total", {"rule": rule}, float(count), now)
        )
    counts = {AlertState.PENDING: 0, AlertState.FIRING: 0}
    for inst in instances:
        if inst.state in counts:
            counts[inst.state] += 1
    for state, count in counts.items():
        out.append(MetricSample(PREFIX + "alerts", {"state": state.value}, float(count), now))
    return out


def process_samples(now: float) -> list[MetricSample]:
    try:
        proc = _get_process()
        with proc.oneshot():
            rss = float(proc.memory_info().rss)
            cpu = proc.cpu_times()
            threads = float(proc.num_threads())
    except (psutil.Error, OSError):
        logger.debug("Process metrics unavailable", exc_info=True)
        return []
    return [
        MetricSample("process_resident_memory_bytes", {}, rss, now),
        MetricSample("process_cpu_seconds_total", {}, float(cpu.user + cpu.system), now),
        MetricSample("process_threads", {}, threads, now),
        MetricSample("process_start_time_seconds", {}, STARTED_AT, now),
    ]
