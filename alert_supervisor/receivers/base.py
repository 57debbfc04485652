"""Receiver contract and shared delivery classification."""

from __future__ import annotations

import enum
import logging

import httpx

from ..models.alerts import Notification

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 425, 429}


class DeliveryOutcome(str, enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


def classify_status(status_code: int) -> DeliveryOutcome:
    if 200 <= status_code < 300:
        return DeliveryOutcome.SUCCESS
    if status_code in _RETRYABLE_STATUS or status_code >= 500:
        return DeliveryOutcome.RETRYABLE
    return DeliveryOutcome.PERMANENT


class Receiver:
    """A notification target. Subclasses implement :meth:`deliver`."""

    kind = "base"

    def __init__(self, name: str) -> None:
        self.name = name

    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        raise NotImplementedError

    def forget(self, notification: Notification) -> None:
        """Drop any per-notification state once delivery has been given up."""
        return None

    async def close(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class HttpReceiver(Receiver):
    """Receiver posting JSON with a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name)
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def payload(self, notification: Notification) -> dict:
        raise NotImplementedError

    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        try:
            response = await self._get_client().post(
                self.url, json=self.payload(notification)
            )
        except httpx.TimeoutException as exc:
            logger.warning("%s: request timed out: %s", self.name, exc)
            return DeliveryOutcome.RETRYABLE
        except httpx.UnsupportedProtocol as exc:
            logger.error("%s: unsupported target URL: %s", self.name, exc)
            return DeliveryOutcome.PERMANENT
        except httpx.TransportError as exc:
            logger.warning("%s: transport error: %s", self.name, exc)
            return DeliveryOutcome.RETRYABLE
        except httpx.InvalidURL as exc:
            logger.error("%s: invalid target URL: %s", self.name, exc)
            return DeliveryOutcome.PERMANENT
        outcome = classify_status(response.status_code)
        if outcome is not DeliveryOutcome.SUCCESS:
            logger.warning(
                "%s: HTTP %s (%s)", self.name, response.status_code, outcome.value
            )
        return outcome

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
