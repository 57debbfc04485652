"""Pull-based scraping of the Prometheus text exposition format."""

from __future__ import annotations

import asyncio
import logging
import time
from urllib.parse import urlparse

import requests
from prometheus_client.parser import text_string_to_metric_families

from .models.samples import MetricSample
from .store import SampleStore

logger = logging.getLogger(__name__)

UP_METRIC = "up"
_HEADERS = {
    "User-Agent": "alert-supervisor/1.0",
    "Accept": "text/plain;version=0.0.4",
}


def target_instance(url: str) -> str:
    parsed = urlparse(url)
    return parsed.netloc or url


def parse_exposition(text: str, default_ts: float, instance: str | None = None) -> list[MetricSample]:
    """Turn an exposition body into samples.

    Samples without an explicit timestamp get ``default_ts``. An ``instance``
    label is added unless the exporter already set one.
    """
    out: list[MetricSample] = []
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            labels = dict(sample.labels)
            if instance and "instance" not in labels:
                labels["instance"] = instance
            ts = sample.timestamp
            out.append(
                MetricSample(
                    name=sample.name,
                    labels=labels,
                    value=float(sample.value),
                    timestamp=float(ts) if ts is not None else default_ts,
                )
            )
    return out


def fetch_target(url: str, timeout: float) -> str:
    resp = requests.get(url, headers=_HEADERS, timeout=timeout)
    resp.raise_for_status()
    return resp.text


class Scraper:
    def __init__(self, targets: list[str], store: SampleStore, timeout: float = 10.0) -> None:
        self.targets = list(targets)
        self.store = store
        self.timeout = timeout
        self.last_errors: dict[str, str] = {}

    def _scrape_target(self, url: str, now: float) -> list[MetricSample]:
        body = fetch_target(url, self.timeout)
        return parse_exposition(body, now, instance=target_instance(url))

    async def _scrape_safe(self, url: str, now: float) -> tuple[str, list[MetricSample] | None]:
        try:
            samples = await asyncio.to_thread(self._scrape_target, url, now)
        except requests.RequestException as exc:
            self._record_error(url, f"fetch failed: {exc}")
            return url, None
        except ValueError as exc:
            self._record_error(url, f"malformed exposition: {exc}")
            return url, None
        self.last_errors.pop(url, None)
        return url, samples

    def _record_error(self, url: str, message: str) -> None:
        if self.last_errors.get(url) != message:
            logger.warning("Scrape of %s failed: %s", url, message)
        self.last_errors[url] = message

    async def scrape_once(self, now: float | None = None) -> int:
        """Scrape every target concurrently; returns the number of samples stored."""
        if not self.targets:
            return 0
        now = time.time() if now is None else now
        results = await asyncio.gather(*(self._scrape_safe(url, now) for url in self.targets))
        stored = 0
        for url, samples in results:
            up = 0.0 if samples is None else 1.0
            self.store.append(
                MetricSample(
                    name=UP_METRIC,
                    labels={"instance": target_instance(url)},
                    value=up,
                    timestamp=now,
                )
            )
            if samples:
                stored += self.store.extend(samples)
        logger.debug("Scraped %d target(s), %d sample(s)", len(self.targets), stored)
        return stored
