"""Central configuration for alert_supervisor."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)


def _split_urls(s: str) -> List[str]:
    """Parse comma-separated string into a list of scrape target URLs.

    Example:
        >>> _split_urls("http://api:9100/metrics, http://db:9187/metrics")
        ['http://api:9100/metrics', 'http://db:9187/metrics']
    """
    return [p.strip() for p in (s or "").split(",") if p.strip()]


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
    """Read a float from the environment, falling back to default when invalid."""
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%r is below %s; using %s", name, raw, minimum, default)
        return default
    return value


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    return value if value >= minimum else default


@dataclass
class Settings:
    """Configuration settings for alert_supervisor.

    All settings are loaded from environment variables with sensible defaults.
    Receiver credentials are not settings; see ``secret_store``.
    """

    RULES_FILE: str
    EVAL_INTERVAL_S: float
    SCRAPE_TARGETS: List[str]
    SCRAPE_INTERVAL_S: float
    SCRAPE_TIMEOUT_S: float
    DELIVERY_WORKERS: int
    DELIVERY_QUEUE_SIZE: int
    DELIVERY_MAX_ATTEMPTS: int
    DELIVERY_BACKOFF_BASE_S: float
    DELIVERY_BACKOFF_MAX_S: float
    DELIVERY_TIMEOUT_S: float
    SHUTDOWN_GRACE_S: float
    SECRETS_DIR: str | None
    STATE_FILE: str | None
    SELF_METRICS: bool


def _read_settings() -> Settings:
    """Read all configuration from environment variables.

    Note:
        Invalid numeric values fall back to defaults with a warning.
        Boolean values accept: 1/true/yes (case-insensitive) as True.
    """
    return Settings(
        RULES_FILE=os.environ.get("RULES_FILE") or "/etc/alert-supervisor/rules.yml",
        EVAL_INTERVAL_S=_float_env("EVAL_INTERVAL_S", 15.0, minimum=0.1),
        SCRAPE_TARGETS=_split_urls(os.environ.get("SCRAPE_TARGETS", "")),
        SCRAPE_INTERVAL_S=_float_env("SCRAPE_INTERVAL_S", 15.0, minimum=0.1),
        SCRAPE_TIMEOUT_S=_float_env("SCRAPE_TIMEOUT_S", 10.0, minimum=0.1),
        DELIVERY_WORKERS=_int_env("DELIVERY_WORKERS", 4),
        DELIVERY_QUEUE_SIZE=_int_env("DELIVERY_QUEUE_SIZE", 1000),
        DELIVERY_MAX_ATTEMPTS=_int_env("DELIVERY_MAX_ATTEMPTS", 5),
        DELIVERY_BACKOFF_BASE_S=_float_env("DELIVERY_BACKOFF_BASE_S", 2.0),
        DELIVERY_BACKOFF_MAX_S=_float_env("DELIVERY_BACKOFF_MAX_S", 300.0),
        DELIVERY_TIMEOUT_S=_float_env("DELIVERY_TIMEOUT_S", 10.0, minimum=0.1),
        SHUTDOWN_GRACE_S=_float_env("SHUTDOWN_GRACE_S", 10.0),
        SECRETS_DIR=os.environ.get("SECRETS_DIR") or "/run/secrets",
        STATE_FILE=os.environ.get("STATE_FILE") or None,
        SELF_METRICS=os.environ.get("SELF_METRICS", "true").lower() in {"1", "true", "yes"},
    )


settings = _read_settings()


def validate_settings(s: Settings | None = None) -> None:
    """Log warnings for settings that will make the service useless or noisy."""
    s = s or settings
    if not s.SCRAPE_TARGETS and not s.SELF_METRICS:
        logger.warning("No SCRAPE_TARGETS and SELF_METRICS off; rules have nothing to evaluate.")
    if s.SCRAPE_INTERVAL_S > s.EVAL_INTERVAL_S * 4:
        logger.warning(
            "SCRAPE_INTERVAL_S (%ss) is much longer than EVAL_INTERVAL_S (%ss); "
            "raw selectors may go stale between scrapes.",
            s.SCRAPE_INTERVAL_S,
            s.EVAL_INTERVAL_S,
        )
    if s.DELIVERY_BACKOFF_BASE_S > s.DELIVERY_BACKOFF_MAX_S:
        logger.warning("DELIVERY_BACKOFF_BASE_S exceeds DELIVERY_BACKOFF_MAX_S; retries use the max.")

