"""Notification delivery: bounded worker pool with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Mapping

from .errors import DeliveryError
from .models.alerts import DeliveryStatus, Notification
from .models.metrics import DeliveryMetrics
from .receivers.base import DeliveryOutcome, Receiver

logger = logging.getLogger(__name__)

def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at max_s."""
    return min(max_s, base_s * (2 ** max(0, attempt - 1)))


class Dispatcher:
    """Delivers notifications on a fixed pool of worker tasks.

    ``submit`` never blocks so the evaluation loop is never held up by a
    receiver. Retryable failures are re-queued from a timer after the backoff
    delay instead of sleeping inside a worker.
    """

    def __init__(
        self,
        receivers: Mapping[str, Receiver],
        workers: int = 4,
        queue_size: int = 1000,
        max_attempts: int = 5,
        backoff_base_s: float = 2.0,
        backoff_max_s: float = 300.0,
        attempt_timeout_s: float = 10.0,
    ) -> None:
        self.receivers: dict[str, Receiver] = dict(receivers)
        self.worker_count = max(1, int(workers))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.attempt_timeout_s = attempt_timeout_s
        # Every configured receiver exports its counters from zero.
        self.metrics: dict[str, DeliveryMetrics] = {
            name: DeliveryMetrics() for name in self.receivers
        }
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=max(1, queue_size))
        self._workers: list[asyncio.Task] = []
        self._retries: dict[int, tuple[asyncio.TimerHandle, Notification]] = {}
        self._retry_seq = 0
        self._closing = False

    def metrics_for(self, receiver: str) -> DeliveryMetrics:
        return self.metrics.setdefault(receiver, DeliveryMetrics())

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._retries)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"delivery-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Started %d delivery worker(s)", self.worker_count)

    def submit(self, notification: Notification) -> bool:
        if self._closing:
            self._fail(notification, "dispatcher is shutting down")
            return False
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self._fail(notification, "delivery queue full")
            return False
        return True

    async def _worker(self, idx: int) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._attempt(notification)
            except asyncio.CancelledError:
                self._fail(notification, "cancelled during shutdown")
                raise
            except Exception:
                logger.exception("Delivery worker %d crashed on %s", idx, notification.receiver)
            finally:
                self._queue.task_done()

    async def _attempt(self, notification: Notification) -> None:
        receiver = self.receivers.get(notification.receiver)
        if receiver is None:
            self._fail(notification, f"unknown receiver {notification.receiver!r}")
            return

        attempt = notification.attempts + 1
        metrics = self.metrics_for(notification.receiver)
        metrics.attempts += 1
        error: str | None = None
        start = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                receiver.deliver(notification), timeout=self.attempt_timeout_s
            )
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome.RETRYABLE
            error = f"timed out after {self.attempt_timeout_s:g}s"
        except DeliveryError as exc:
            outcome = DeliveryOutcome.RETRYABLE if exc.retryable else DeliveryOutcome.PERMANENT
            error = str(exc)
        except Exception as exc:
            logger.exception("Receiver %s raised while delivering", receiver.name)
            outcome = DeliveryOutcome.RETRYABLE
            error = str(exc) or type(exc).__name__
        latency = time.monotonic() - start
        metrics.total_latency_s += latency
        metrics.max_latency_s = max(metrics.max_latency_s, latency)

        notification = replace(notification, attempts=attempt)
        if outcome is DeliveryOutcome.SUCCESS:
            metrics.delivered += 1
            logger.info(
                "Delivered %s %s to %s (attempt %d)",
                notification.kind.value,
                notification.alert.rule_name,
                notification.receiver,
                attempt,
            )
            return

        error = error or outcome.value
        if outcome is DeliveryOutcome.PERMANENT:
            self._fail(notification, f"permanent failure: {error}")
            return
        if attempt >= self.max_attempts:
            self._fail(notification, f"gave up after {attempt} attempt(s): {error}")
            return
        if self._closing:
            self._fail(notification, f"not retried during shutdown: {error}")
            return
        self._schedule_retry(replace(notification, status=DeliveryStatus.RETRYING, last_error=error))

    def _schedule_retry(self, notification: Notification) -> None:
        delay = backoff_delay(notification.attempts, self.backoff_base_s, self.backoff_max_s)
        self.metrics_for(notification.receiver).retried += 1
        self._retry_seq += 1
        seq = self._retry_seq
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._requeue, seq)
        self._retries[seq] = (handle, notification)
        logger.warning(
            "Delivery of %s to %s failed (%s); retry %d/%d in %.1fs",
            notification.alert.rule_name,
            notification.receiver,
            notification.last_error,
            notification.attempts + 1,
            self.max_attempts,
            delay,
        )

    def _requeue(self, seq: int) -> None:
        entry = self._retries.pop(seq, None)
        if entry is None:
            return
        self.submit(entry[1])

    def _fail(self, notification: Notification, reason: str) -> None:
        metrics = self.metrics_for(notification.receiver)
        metrics.failed += 1
        receiver = self.receivers.get(notification.receiver)
        if receiver is not None:
            receiver.forget(notification)
        logger.error(
            "Notification %s/%s for %s to %s failed: %s",
            notification.alert.rule_name,
            notification.alert.fingerprint,
            notification.kind.value,
            notification.receiver,
            reason,
        )

    async def drain(self, poll_s: float = 0.01) -> None:
        """Wait until nothing is queued, in flight or waiting to be retried."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.sleep(poll_s)

    async def replace_receivers(self, receivers: Mapping[str, Receiver]) -> None:
        """Install new receivers at once, then close the ones no longer used."""
        old = self.receivers
        self.receivers = dict(receivers)
        for name in self.receivers:
            self.metrics_for(name)
        for name, receiver in old.items():
            if self.receivers.get(name) is receiver:
                continue
            try:
                await receiver.close()
            except Exception:
                logger.exception("Failed closing receiver %s", name)

    async def shutdown(self, grace_s: float = 10.0) -> None:
        """Stop accepting work, let in-flight attempts finish, then stop workers."""
        self._closing = True
        for handle, notification in self._retries.values():
            handle.cancel()
            self._fail(notification, "shutdown before retry")
        self._retries.clear()

        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning(
                    "Delivery did not finish within %.1fs; %d notification(s) abandoned",
                    grace_s,
                    self._queue.qsize(),
                )
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            self._fail(self._queue.get_nowait(), "abandoned at shutdown")
            self._queue.task_done()

        for name, receiver in self.receivers.items():
            try:
                await receiver.close()
            except Exception:
                logger.exception("Failed closing receiver %s", name)
