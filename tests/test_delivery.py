import asyncio
import logging

import pytest

from alert_supervisor.delivery import Dispatcher, backoff_delay
from alert_supervisor.errors import DeliveryError
from alert_supervisor.models.alerts import DeliveryStatus
from alert_supervisor.receivers.base import DeliveryOutcome

from conftest import DummyReceiver, make_notification


class SlowReceiver(DummyReceiver):
    async def deliver(self, notification):
        self.calls.append(notification)
        await asyncio.sleep(10)
        return DeliveryOutcome.SUCCESS


def _dispatcher(*receivers, **kwargs) -> Dispatcher:
    kwargs.setdefault("backoff_base_s", 0.01)
    kwargs.setdefault("backoff_max_s", 0.05)
    return Dispatcher({r.name: r for r in receivers}, **kwargs)


def _counts(dispatcher: Dispatcher, receiver: str) -> tuple[int, int, int, int]:
    m = dispatcher.metrics[receiver]
    return m.attempts, m.delivered, m.retried, m.failed


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(a, 2, 30) for a in range(1, 7)] == [2, 4, 8, 16, 30, 30]


def test_configured_receivers_start_with_zeroed_metrics():
    dispatcher = _dispatcher(DummyReceiver("chat"), DummyReceiver("pager"))
    assert _counts(dispatcher, "chat") == (0, 0, 0, 0)
    assert _counts(dispatcher, "pager") == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_delivers_on_first_attempt():
    receiver = DummyReceiver("chat")
    dispatcher = _dispatcher(receiver)
    dispatcher.start()

    assert dispatcher.submit(make_notification("chat"))
    await dispatcher.drain()

    assert len(receiver.calls) == 1
    assert _counts(dispatcher, "chat") == (1, 1, 0, 0)
    assert dispatcher.metrics["chat"].max_latency_s >= 0
    await dispatcher.shutdown(grace_s=1)
    assert receiver.closed


@pytest.mark.asyncio
async def test_retryable_failure_is_retried_until_success():
    receiver = DummyReceiver(
        "chat", [DeliveryOutcome.RETRYABLE, RuntimeError("boom"), DeliveryOutcome.SUCCESS]
    )
    dispatcher = _dispatcher(receiver)
    dispatcher.start()

    dispatcher.submit(make_notification("chat"))
    await dispatcher.drain()

    assert [n.attempts for n in receiver.calls] == [0, 1, 2]
    assert receiver.calls[1].status is DeliveryStatus.RETRYING
    assert _counts(dispatcher, "chat") == (3, 1, 2, 0)
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(caplog):
    receiver = DummyReceiver("chat", [DeliveryOutcome.RETRYABLE] * 5)
    dispatcher = _dispatcher(receiver, max_attempts=3)
    dispatcher.start()

    with caplog.at_level(logging.ERROR, logger="alert_supervisor.delivery"):
        dispatcher.submit(make_notification("chat"))
        await dispatcher.drain()

    assert len(receiver.calls) == 3
    assert _counts(dispatcher, "chat") == (3, 0, 2, 1)
    assert "gave up after 3" in caplog.text
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried():
    receiver = DummyReceiver("chat", [DeliveryError("bad request", retryable=False)])
    dispatcher = _dispatcher(receiver)
    dispatcher.start()

    dispatcher.submit(make_notification("chat"))
    await dispatcher.drain()

    assert len(receiver.calls) == 1
    assert _counts(dispatcher, "chat") == (1, 0, 0, 1)
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_one_failing_receiver_does_not_block_another():
    bad = DummyReceiver("bad", [DeliveryOutcome.PERMANENT])
    good = DummyReceiver("good")
    dispatcher = _dispatcher(bad, good, workers=2)
    dispatcher.start()

    dispatcher.submit(make_notification("bad"))
    dispatcher.submit(make_notification("good"))
    await dispatcher.drain()

    assert dispatcher.metrics["bad"].failed == 1
    assert dispatcher.metrics["good"].delivered == 1
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_failure(caplog):
    receiver = SlowReceiver("slow")
    dispatcher = _dispatcher(receiver, max_attempts=1, attempt_timeout_s=0.05)
    dispatcher.start()

    with caplog.at_level(logging.ERROR, logger="alert_supervisor.delivery"):
        dispatcher.submit(make_notification("slow"))
        await dispatcher.drain()

    assert dispatcher.metrics["slow"].failed == 1
    assert "timed out" in caplog.text
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_failure_releases_receiver_state():
    receiver = DummyReceiver("chat", [DeliveryOutcome.RETRYABLE] * 2)
    dispatcher = _dispatcher(receiver, max_attempts=2)
    dispatcher.start()
    notification = make_notification("chat")

    dispatcher.submit(notification)
    await dispatcher.drain()

    (forgotten,) = receiver.forgotten
    assert forgotten.alert.fingerprint == notification.alert.fingerprint
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_unknown_receiver_fails():
    dispatcher = _dispatcher()
    dispatcher.start()
    dispatcher.submit(make_notification("ghost"))
    await dispatcher.drain()
    assert dispatcher.metrics["ghost"].failed == 1
    await dispatcher.shutdown(grace_s=1)


@pytest.mark.asyncio
async def test_full_queue_rejects_submission(caplog):
    dispatcher = _dispatcher(DummyReceiver("chat"), queue_size=1)

    with caplog.at_level(logging.ERROR, logger="alert_supervisor.delivery"):
        assert dispatcher.submit(make_notification("chat"))
        assert not dispatcher.submit(make_notification("chat"))

    assert dispatcher.metrics["chat"].failed == 1
    assert "delivery queue full" in caplog.text


@pytest.mark.asyncio
async def test_shutdown_fails_pending_retries_and_closes_receivers():
    receiver = DummyReceiver("chat", [DeliveryOutcome.RETRYABLE])
    dispatcher = _dispatcher(receiver, backoff_base_s=60, backoff_max_s=60)
    dispatcher.start()
    dispatcher.submit(make_notification("chat"))
    while not dispatcher._retries:
        await asyncio.sleep(0.01)

    await dispatcher.shutdown(grace_s=1)

    assert dispatcher.pending == 0
    assert dispatcher.metrics["chat"].failed == 1
    assert len(receiver.forgotten) == 1
    assert receiver.closed
    assert not dispatcher.submit(make_notification("chat"))


@pytest.mark.asyncio
async def test_replace_receivers_closes_dropped_ones():
    old = DummyReceiver("old")
    kept = DummyReceiver("kept")
    dispatcher = _dispatcher(old, kept)

    await dispatcher.replace_receivers({"kept": kept, "new": DummyReceiver("new")})

    assert old.closed
    assert not kept.closed
    assert set(dispatcher.receivers) == {"kept", "new"}
    assert _counts(dispatcher, "new") == (0, 0, 0, 0)
