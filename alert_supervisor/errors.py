"""Exception types shared across the supervisor."""

from __future__ import annotations


class ConfigError(Exception):
    """Invalid rule file, expression, route or receiver definition."""

    def __init__(self, message: str, path: str | None = None) -> None:
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class EvaluationError(Exception):
    """A rule expression could not be evaluated for this tick."""


class DeliveryError(Exception):
    """A receiver failed to deliver a notification.

    ``retryable`` tells the dispatcher whether another attempt makes sense.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)
