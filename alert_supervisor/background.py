"""Background loops (started once per supervisor)."""
from __future__ import annotations

import asyncio
import logging
import time

from .models.supervisor_state import SupervisorState

logger = logging.getLogger(__name__)

_TASK_EVALUATION = "evaluation"
_TASK_SCRAPE = "scrape"


def next_delay(elapsed: float, interval: float) -> tuple[float, int]:
    """Return (sleep seconds, ticks skipped) after a pass that took ``elapsed``.

    An overrunning pass never triggers a catch-up burst: the missed ticks are
    dropped and the loop waits for the next boundary on the original grid.
    """
    if elapsed < interval:
        return interval - elapsed, 0
    skipped = int(elapsed // interval)
    return interval - (elapsed % interval), skipped


def ensure_started(state: SupervisorState, eval_interval_s: float, scrape_interval_s: float) -> None:
    task = state.tasks.get(_TASK_EVALUATION)
    if not (isinstance(task, asyncio.Task) and not task.done()):
        state.tasks[_TASK_EVALUATION] = asyncio.create_task(
            evaluation_loop(state, eval_interval_s), name="evaluation-loop"
        )
    if state.scraper is None:
        return
    task = state.tasks.get(_TASK_SCRAPE)
    if not (isinstance(task, asyncio.Task) and not task.done()):
        state.tasks[_TASK_SCRAPE] = asyncio.create_task(
            scrape_loop(state, scrape_interval_s), name="scrape-loop"
        )


async def stop_all(state: SupervisorState) -> None:
    tasks = [t for t in state.tasks.values() if isinstance(t, asyncio.Task)]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    state.tasks.clear()


async def evaluation_loop(state: SupervisorState, interval_s: float) -> None:
    logger.info("Starting evaluation loop (interval=%ss)", interval_s)
    metrics = state.eval_metrics
    while True:
        try:
            start = time.monotonic()
            # tick() does not await, so a cancel can only land between ticks.
            state.tick(time.time())
            elapsed = time.monotonic() - start
            metrics.last_duration_s = elapsed
            metrics.max_duration_s = max(metrics.max_duration_s, elapsed)

            delay, skipped = next_delay(elapsed, interval_s)
            if skipped:
                metrics.skipped_ticks += skipped
                logger.warning(
                    "Evaluation took %.2fs (interval %ss); skipping %d tick(s)",
                    elapsed,
                    interval_s,
                    skipped,
                )
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Evaluation loop error")
            await asyncio.sleep(interval_s)


async def scrape_loop(state: SupervisorState, interval_s: float) -> None:
    scraper = state.scraper
    if scraper is None:
        return
    logger.info(
        "Starting scrape loop (interval=%ss, targets=%d)", interval_s, len(scraper.targets)
    )
    while True:
        try:
            start = time.monotonic()
            await scraper.scrape_once()
            elapsed = time.monotonic() - start
            delay, _ = next_delay(elapsed, interval_s)
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scrape loop error")
            await asyncio.sleep(interval_s)
