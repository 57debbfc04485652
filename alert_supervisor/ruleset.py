"""Rule file loading and validation.

A rule file is YAML with three sections::

    rules:            # or Prometheus style `groups: [{name, rules: [...]}]`
      - name: HighErrorRate
        expr: increase(http_requests_total{status=~"5.."}[5m]) > 10
        for: 5m
        severity: critical
        annotations:
          summary: "Error burst on {{ $labels.instance }}"
    route:
      receiver: chat
      repeat_interval: 4h
      routes:
        - matchers: ['severity="critical"']
          receivers: [pager, chat]
    receivers:
      - name: chat
        type: webhook
        url_secret: CHAT_WEBHOOK_URL

Receiver credentials are never read from the file itself, only the names of
secrets holding them. Any problem rejects the whole file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .expression import Matcher, parse_condition, parse_duration, parse_matchers
from .models.alerts import AlertRule
from .receivers.base import Receiver
from .receivers.chat import TelegramReceiver
from .receivers.mail import EmailReceiver, parse_transport
from .receivers.pager import PagerReceiver
from .receivers.webhook import WebhookReceiver
from .routing import Route, RoutingTree
from .secret_store import SecretStore

logger = logging.getLogger(__name__)

RECEIVER_TYPES = {"webhook", "telegram", "pager", "email"}
_INLINE_CREDENTIAL_KEYS = {"url", "token", "routing_key", "password", "transport", "api_key"}


@dataclass
class RuleSet:
    rules: list[AlertRule]
    tree: RoutingTree
    receivers: dict[str, Receiver] = field(default_factory=dict)
    source: str | None = None


def _require_mapping(value: Any, where: str) -> dict:
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return value


def _require_list(value: Any, where: str, allow_scalar: bool = False) -> list:
    if value is None:
        return []
    if allow_scalar and isinstance(value, (str, int)) and not isinstance(value, bool):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return value


def _str_map(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    mapping = _require_mapping(value, where)
    return {str(k): str(v) for k, v in mapping.items()}


def _duration(value: Any, where: str, default: float | None = None) -> float | None:
    parsed = parse_duration(value, default)
    if value is not None and parsed is None:
        raise ConfigError(f"{where}: invalid duration {value!r}")
    return parsed


def parse_rule(raw: Any, idx: int) -> AlertRule:
    data = _require_mapping(raw, f"rules[{idx}]")
    name = str(data.get("name") or data.get("alert") or "").strip()
    if not name:
        raise ConfigError(f"rules[{idx}]: missing name")
    expr = str(data.get("expr") or "").strip()
    try:
        condition = parse_condition(expr)
    except ConfigError as exc:
        raise ConfigError(f"rule {name}: {exc.message}") from exc
    for_s = _duration(data.get("for"), f"rule {name} for", 0.0) or 0.0
    labels = _str_map(data.get("labels"), f"rule {name} labels")
    severity = str(data.get("severity") or labels.pop("severity", "warning")).lower()
    if not severity:
        raise ConfigError(f"rule {name}: empty severity")
    return AlertRule(
        name=name,
        expr=expr,
        condition=condition,
        for_s=for_s,
        severity=severity,
        labels=labels,
        annotations=_str_map(data.get("annotations"), f"rule {name} annotations"),
    )


def _raw_rules(doc: dict) -> list:
    rules = list(_require_list(doc.get("rules"), "rules"))
    for g_idx, group in enumerate(_require_list(doc.get("groups"), "groups")):
        group = _require_mapping(group, f"groups[{g_idx}]")
        rules.extend(_require_list(group.get("rules"), f"groups[{g_idx}].rules"))
    return rules


def _route_matchers(data: dict, where: str) -> tuple[Matcher, ...]:
    matchers: list[Matcher] = []
    for item in _require_list(data.get("matchers"), f"{where} matchers", allow_scalar=True):
        try:
            matchers.extend(parse_matchers(str(item)))
        except ConfigError as exc:
            raise ConfigError(f"{where}: {exc.message}") from exc
    for label, value in _str_map(data.get("match"), f"{where} match").items():
        matchers.append(Matcher.build(label, "=", value))
    for label, value in _str_map(data.get("match_re"), f"{where} match_re").items():
        try:
            matchers.append(Matcher.build(label, "=~", value))
        except ConfigError as exc:
            raise ConfigError(f"{where}: {exc.message}") from exc
    return tuple(matchers)


def _receiver_names(data: dict, where: str) -> tuple[str, ...]:
    names: list[str] = []
    single = data.get("receiver")
    if single:
        names.append(str(single))
    for name in _require_list(data.get("receivers"), f"{where} receivers", allow_scalar=True):
        if str(name) not in names:
            names.append(str(name))
    return tuple(names)


def parse_route(
    raw: Any,
    where: str,
    parent_repeat: float | None,
    parent_receivers: tuple[str, ...] = (),
) -> Route:
    """Parse one route. Routes without receivers of their own inherit the
    nearest ancestor's, as they do ``repeat_interval``.
    """
    data = _require_mapping(raw, where)
    repeat = _duration(data.get("repeat_interval"), f"{where} repeat_interval", parent_repeat)
    own = _receiver_names(data, where)
    receivers = own or parent_receivers
    children = tuple(
        parse_route(child, f"{where}.routes[{i}]", repeat, receivers)
        for i, child in enumerate(_require_list(data.get("routes"), f"{where} routes"))
    )
    if not own and not children:
        raise ConfigError(f"{where}: route needs a receiver or child routes")
    return Route(
        matchers=_route_matchers(data, where),
        receivers=receivers,
        continue_matching=bool(data.get("continue", False)),
        repeat_interval_s=repeat,
        routes=children,
    )


def parse_tree(raw: Any) -> RoutingTree:
    data = _require_mapping(raw, "route")
    receivers = _receiver_names(data, "route")
    if not receivers:
        raise ConfigError("route: root needs a default receiver")
    repeat = _duration(data.get("repeat_interval"), "route repeat_interval")
    routes = tuple(
        parse_route(child, f"route.routes[{i}]", repeat, receivers)
        for i, child in enumerate(_require_list(data.get("routes"), "route routes"))
    )
    return RoutingTree(receivers=receivers, routes=routes, repeat_interval_s=repeat)


def _tree_receivers(tree: RoutingTree) -> set[str]:
    names = set(tree.receivers)
    stack = list(tree.routes)
    while stack:
        route = stack.pop()
        names.update(route.receivers)
        stack.extend(route.routes)
    return names


def _secret(data: dict, key: str, where: str, secrets: SecretStore) -> str:
    name = str(data.get(key) or "").strip()
    if not name:
        raise ConfigError(f"{where}: missing {key}")
    value = secrets.get(name)
    if not value:
        raise ConfigError(f"{where}: secret {name!r} is not set")
    return value


def build_receiver(
    raw: Any, idx: int, secrets: SecretStore, timeout: float = 10.0
) -> Receiver:
    data = _require_mapping(raw, f"receivers[{idx}]")
    name = str(data.get("name") or "").strip()
    if not name:
        raise ConfigError(f"receivers[{idx}]: missing name")
    where = f"receiver {name}"
    inline = _INLINE_CREDENTIAL_KEYS.intersection(data)
    if inline:
        raise ConfigError(
            f"{where}: {', '.join(sorted(inline))} must come from a secret (use *_secret)"
        )
    kind = str(data.get("type") or "").strip().lower()
    if kind not in RECEIVER_TYPES:
        raise ConfigError(f"{where}: unknown type {kind!r}")

    if kind == "webhook":
        return WebhookReceiver(name, _secret(data, "url_secret", where, secrets), timeout=timeout)
    if kind == "pager":
        return PagerReceiver(
            name,
            _secret(data, "url_secret", where, secrets),
            routing_key=_secret(data, "routing_key_secret", where, secrets),
            timeout=timeout,
        )
    if kind == "telegram":
        chat_ids_raw = _require_list(data.get("chat_ids"), f"{where} chat_ids", allow_scalar=True)
        try:
            chat_ids = [int(c) for c in chat_ids_raw]
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{where}: chat_ids must be integers") from exc
        if not chat_ids:
            raise ConfigError(f"{where}: chat_ids is empty")
        return TelegramReceiver(
            name, _secret(data, "token_secret", where, secrets), chat_ids=chat_ids
        )

    transport = parse_transport(_secret(data, "transport_secret", where, secrets))
    sender = str(data.get("from") or "").strip()
    to = [
        str(addr).strip()
        for addr in _require_list(data.get("to"), f"{where} to", allow_scalar=True)
        if str(addr).strip()
    ]
    if not sender or not to:
        raise ConfigError(f"{where}: email needs from and to")
    return EmailReceiver(name, transport, sender=sender, to=to, timeout=timeout)


def parse_ruleset(
    doc: Any,
    secrets: SecretStore,
    source: str | None = None,
    delivery_timeout_s: float = 10.0,
) -> RuleSet:
    try:
        doc = _require_mapping(doc, "rule file")
        rules: list[AlertRule] = []
        seen: set[str] = set()
        for idx, raw in enumerate(_raw_rules(doc)):
            rule = parse_rule(raw, idx)
            if rule.name in seen:
                raise ConfigError(f"duplicate rule name {rule.name!r}")
            seen.add(rule.name)
            rules.append(rule)

        receivers: dict[str, Receiver] = {}
        for idx, raw in enumerate(_require_list(doc.get("receivers"), "receivers")):
            receiver = build_receiver(raw, idx, secrets, timeout=delivery_timeout_s)
            if receiver.name in receivers:
                raise ConfigError(f"duplicate receiver name {receiver.name!r}")
            receivers[receiver.name] = receiver
        if not receivers:
            raise ConfigError("no receivers configured")

        if "route" not in doc:
            raise ConfigError("missing route section")
        tree = parse_tree(doc["route"])
        unknown = _tree_receivers(tree) - set(receivers)
        if unknown:
            raise ConfigError(f"route references unknown receiver(s): {', '.join(sorted(unknown))}")
    except ConfigError as exc:
        raise ConfigError(exc.message, path=source) from exc
    return RuleSet(rules=rules, tree=tree, receivers=receivers, source=source)


def load_ruleset(
    path: str | Path, secrets: SecretStore, delivery_timeout_s: float = 10.0
) -> RuleSet:
    """Load and validate a rule file; raises ConfigError on any problem."""
    path = Path(path)
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError("rule file not found", path=str(path)) from exc
    except OSError as exc:
        raise ConfigError(f"cannot read rule file: {exc}", path=str(path)) from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}", path=str(path)) from exc
    ruleset = parse_ruleset(doc, secrets, source=str(path), delivery_timeout_s=delivery_timeout_s)
    logger.info(
        "Loaded %d rule(s) and %d receiver(s) from %s",
        len(ruleset.rules),
        len(ruleset.receivers),
        path,
    )
    return ruleset
