"""Entrypoint for running the alert supervisor.

This module wires up the rule set, dispatcher and background loops, and
handles reload (SIGHUP) and graceful shutdown (SIGTERM/SIGINT).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time

from . import config
from .background import ensure_started, stop_all
from .delivery import Dispatcher
from .errors import ConfigError
from .logger import setup_logging
from .models.supervisor_state import SupervisorState
from .ruleset import RuleSet, load_ruleset
from .secret_store import SecretStore

logger = logging.getLogger(__name__)


def _secrets(settings: config.Settings) -> SecretStore:
    return SecretStore(settings.SECRETS_DIR)


def _load(settings: config.Settings, path: str | None = None) -> RuleSet:
    return load_ruleset(
        path or settings.RULES_FILE,
        _secrets(settings),
        delivery_timeout_s=settings.DELIVERY_TIMEOUT_S,
    )


def build_supervisor(settings: config.Settings) -> SupervisorState:
    """Load the rule file and assemble the supervisor; ConfigError is fatal here."""
    ruleset = _load(settings)
    dispatcher = Dispatcher(
        ruleset.receivers,
        workers=settings.DELIVERY_WORKERS,
        queue_size=settings.DELIVERY_QUEUE_SIZE,
        max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
        backoff_base_s=settings.DELIVERY_BACKOFF_BASE_S,
        backoff_max_s=settings.DELIVERY_BACKOFF_MAX_S,
        attempt_timeout_s=settings.DELIVERY_TIMEOUT_S,
    )
    return SupervisorState.build(
        ruleset,
        dispatcher,
        scrape_targets=settings.SCRAPE_TARGETS,
        scrape_timeout_s=settings.SCRAPE_TIMEOUT_S,
        self_metrics=settings.SELF_METRICS,
        state_file=settings.STATE_FILE,
    )


async def reload(state: SupervisorState, settings: config.Settings) -> bool:
    """Re-read the rule file; on any error keep the active configuration."""
    try:
        ruleset = _load(settings)
    except ConfigError as exc:
        logger.error("Reload rejected, keeping previous configuration: %s", exc)
        return False
    await state.apply_ruleset(ruleset, time.time())
    return True


async def shutdown(state: SupervisorState, settings: config.Settings) -> None:
    logger.info("Shutting down")
    await stop_all(state)
    state.save_state()
    await state.dispatcher.shutdown(settings.SHUTDOWN_GRACE_S)


async def serve(settings: config.Settings) -> None:
    state = build_supervisor(settings)
    state.load_state()
    state.dispatcher.start()
    ensure_started(state, settings.EVAL_INTERVAL_S, settings.SCRAPE_INTERVAL_S)

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    reload_tasks: set[asyncio.Task] = set()

    def _on_reload() -> None:
        logger.info("Reload requested")
        task = loop.create_task(reload(state, settings))
        reload_tasks.add(task)
        task.add_done_callback(reload_tasks.discard)

    try:
        loop.add_signal_handler(signal.SIGHUP, _on_reload)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except (NotImplementedError, AttributeError):
        logger.warning("Signal handlers unavailable; reload via SIGHUP is disabled")

    try:
        await stop.wait()
    finally:
        if reload_tasks:
            await asyncio.gather(*reload_tasks, return_exceptions=True)
        await shutdown(state, settings)


def check(path: str, settings: config.Settings) -> int:
    try:
        ruleset = _load(settings, path)
    except ConfigError as exc:
        print(f"invalid: {exc}", file=sys.stderr)
        return 1
    print(
        f"ok: {len(ruleset.rules)} rule(s), {len(ruleset.receivers)} receiver(s) in {path}"
    )
    return 0


def run(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="alert-supervisor")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="evaluate rules and deliver notifications (default)")
    check_p = sub.add_parser("check", help="validate a rule file and exit")
    check_p.add_argument("rules_file", nargs="?", default=None)
    args = parser.parse_args(argv)

    setup_logging()
    settings = config.settings
    if args.command == "check":
        return check(args.rules_file or settings.RULES_FILE, settings)

    config.validate_settings(settings)
    logger.info("Starting alert_supervisor (rules=%s)", settings.RULES_FILE)
    try:
        asyncio.run(serve(settings))
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(run())
