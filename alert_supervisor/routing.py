"""Routing tree: label predicates selecting receivers for alert events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from .expression import Matcher
from .models.alerts import AlertEvent, Notification

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def submit(self, notification: Notification) -> bool: ...


@dataclass(frozen=True)
class Route:
    matchers: tuple[Matcher, ...] = ()
    receivers: tuple[str, ...] = ()
    continue_matching: bool = False
    repeat_interval_s: float | None = None
    routes: tuple["Route", ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        return all(m.matches(labels) for m in self.matchers)


def _walk(routes: tuple[Route, ...], labels: dict[str, str]) -> list[Route]:
    matched: list[Route] = []
    for route in routes:
        if not route.matches(labels):
            continue
        children = _walk(route.routes, labels) if route.routes else []
        matched.extend(children or [route])
        if not route.continue_matching:
            break
    return matched


@dataclass(frozen=True)
class RoutingTree:
    """Ordered routes plus the root receiver used when nothing matches.

    First match wins at every level unless a route sets ``continue``.
    """

    receivers: tuple[str, ...]
    routes: tuple[Route, ...] = ()
    repeat_interval_s: float | None = None

    def match(self, labels: dict[str, str]) -> list[Route]:
        return _walk(self.routes, labels)

    def receivers_for(self, labels: dict[str, str]) -> list[str]:
        matched = self.match(labels)
        if not matched:
            return list(self.receivers)
        out: list[str] = []
        for route in matched:
            for name in route.receivers or self.receivers:
                if name not in out:
                    out.append(name)
        return out

    def repeat_interval_for(self, labels: dict[str, str]) -> float | None:
        matched = self.match(labels)
        if matched:
            return matched[0].repeat_interval_s
        return self.repeat_interval_s


class Router:
    def __init__(self, tree: RoutingTree, sink: NotificationSink) -> None:
        self.tree = tree
        self.sink = sink

    def repeat_interval_for(self, labels: dict[str, str]) -> float | None:
        return self.tree.repeat_interval_for(labels)

    def route(self, event: AlertEvent) -> list[Notification]:
        """Fan an alert event out to every matched receiver, once each."""
        receivers = self.tree.receivers_for(event.alert.labels)
        notifications = [
            Notification(
                kind=event.kind,
                alert=event.alert,
                receiver=name,
                created_at=event.at,
            )
            for name in receivers
        ]
        for notification in notifications:
            self.sink.submit(notification)
        logger.debug(
            "Routed %s %s to %s",
            event.kind.value,
            event.alert.rule_name,
            ", ".join(receivers) or "nobody",
        )
        return notifications
