"""In-memory sample history with sliding-window eviction."""

from __future__ import annotations

import bisect
import logging
from collections import defaultdict
from typing import Iterable

from .models.samples import METRIC_NAME_LABEL, LabelSet, MetricSample

logger = logging.getLogger(__name__)


class SampleStore:
    """Per-series history of (timestamp, value) points.

    Series are keyed by their full label-set (metric name included). The
    store is written by the scrape loop and read by the evaluator; both run
    on the event loop thread so no locking is needed.
    """

    def __init__(self) -> None:
        self._series: dict[LabelSet, list[tuple[float, float]]] = {}
        self._by_name: dict[str, set[LabelSet]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._series)

    def append(self, sample: MetricSample) -> None:
        key = sample.series_key()
        points = self._series.get(key)
        if points is None:
            points = []
            self._series[key] = points
            self._by_name[sample.name].add(key)
        point = (float(sample.timestamp), float(sample.value))
        if not points or point[0] > points[-1][0]:
            points.append(point)
            return
        # Out-of-order or duplicate timestamp: last write wins.
        idx = bisect.bisect_left(points, (point[0], float("-inf")))
        if idx < len(points) and points[idx][0] == point[0]:
            points[idx] = point
        else:
            points.insert(idx, point)

    def extend(self, samples: Iterable[MetricSample]) -> int:
        count = 0
        for sample in samples:
            self.append(sample)
            count += 1
        return count

    def has_metric(self, name: str) -> bool:
        return bool(self._by_name.get(name))

    def series_for(self, name: str) -> dict[LabelSet, list[tuple[float, float]]]:
        return {key: self._series[key] for key in self._by_name.get(name, ())}

    def window(
        self, points: list[tuple[float, float]], start: float, end: float
    ) -> list[tuple[float, float]]:
        """Return points with start < timestamp <= end."""
        lo = bisect.bisect_right(points, (start, float("inf")))
        hi = bisect.bisect_right(points, (end, float("inf")))
        return points[lo:hi]

    def evict_before(self, cutoff: float) -> int:
        """Drop points at or before cutoff; drop series left empty."""
        removed = 0
        for key in list(self._series.keys()):
            points = self._series[key]
            idx = bisect.bisect_right(points, (cutoff, float("inf")))
            if idx:
                del points[:idx]
                removed += idx
            if not points:
                self._series.pop(key, None)
                name = dict(key).get(METRIC_NAME_LABEL, "")
                names = self._by_name.get(name)
                if names is not None:
                    names.discard(key)
                    if not names:
                        self._by_name.pop(name, None)
        if removed:
            logger.debug("Evicted %d samples older than %.3f", removed, cutoff)
        return removed
