"""Rule condition language: parsing and evaluation over a SampleStore.

Supported shape::

    [sum|avg|min|max|count [by (l1, l2)]] (func(metric{l="v"}[5m]) | metric{...}) CMP number

Range functions drop the metric name from the result labels, raw selectors
keep it. A metric with no series at all raises :class:`EvaluationError`; a
series with too few points in the window is simply absent from the result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

from .errors import ConfigError, EvaluationError
from .models.samples import METRIC_NAME_LABEL, LabelSet, without_name
from .store import SampleStore

# Newest point younger than this counts as the current value of a raw series.
LOOKBACK_S = 5 * 60

_DURATION_UNITS: dict[str, float] = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_NUMBER_RE = re.compile(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")

COMPARATORS = (">=", "<=", "==", "!=", ">", "<")
MATCH_OPS = ("=~", "!~", "!=", "=")
AGGREGATIONS = {"sum", "avg", "min", "max", "count"}


def parse_duration(raw: object, default_s: float | None = None) -> float | None:
    """Parse ``30s``, ``5m``, ``1h30m`` or a bare number of seconds.

    Returns ``default_s`` for empty input and None for anything invalid.
    """
    if raw is None:
        return default_s
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if raw >= 0 else None
    text = str(raw).strip().lower()
    if not text:
        return default_s
    try:
        value = float(text)
    except ValueError:
        pass
    else:
        return value if value >= 0 else None
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        return None
    return total


def format_duration(duration_s: float) -> str:
    duration = int(duration_s)
    if duration != duration_s:
        return f"{duration_s:g}s"
    if duration % 3600 == 0 and duration >= 3600:
        return f"{duration // 3600}h"
    if duration % 60 == 0 and duration >= 60:
        return f"{duration // 60}m"
    return f"{duration}s"


def compare(operator: str, left: float | None, right: float | None) -> bool:
    if left is None or right is None:
        return False
    if operator == "==":
        return left == right
    if operator == "!=":
        return left != right
    if operator == ">":
        return left > right
    if operator == ">=":
        return left >= right
    if operator == "<":
        return left < right
    if operator == "<=":
        return left <= right
    return False


@dataclass(frozen=True)
class Matcher:
    label: str
    op: str
    value: str
    _regex: re.Pattern | None = field(default=None, compare=False, repr=False)

    @classmethod
    def build(cls, label: str, op: str, value: str) -> "Matcher":
        regex = None
        if op in {"=~", "!~"}:
            try:
                regex = re.compile(f"(?:{value})")
            except re.error as exc:
                raise ConfigError(f"invalid regex {value!r}: {exc}") from exc
        return cls(label=label, op=op, value=value, _regex=regex)

    def matches(self, labels: dict[str, str]) -> bool:
        actual = labels.get(self.label, "")
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        hit = self._regex is not None and self._regex.fullmatch(actual) is not None
        return hit if self.op == "=~" else not hit


def parse_matchers(raw: str) -> tuple[Matcher, ...]:
    """Parse a bare matcher list such as ``severity="critical", team=~"db|infra"``."""
    parser = _Parser(raw)
    if raw.strip().startswith("{"):
        matchers = parser.parse_matcher_block()
    else:
        matchers = parser.parse_matcher_list(end=None)
    parser.expect_end()
    return matchers


@dataclass(frozen=True)
class Selector:
    name: str
    matchers: tuple[Matcher, ...] = ()

    def select(self, store: SampleStore) -> dict[LabelSet, list[tuple[float, float]]]:
        if not store.has_metric(self.name):
            raise EvaluationError(f"no samples for metric {self.name!r}")
        out = {}
        for key, points in store.series_for(self.name).items():
            labels = dict(key)
            if all(m.matches(labels) for m in self.matchers):
                out[key] = points
        return out

    def evaluate(self, store: SampleStore, at: float) -> dict[LabelSet, float]:
        out: dict[LabelSet, float] = {}
        for key, points in self.select(store).items():
            recent = store.window(points, at - LOOKBACK_S, at)
            if recent:
                out[key] = recent[-1][1]
        return out

    @property
    def window_s(self) -> float:
        return LOOKBACK_S


def _increase(points: list[tuple[float, float]], _: float) -> float | None:
    if len(points) < 2:
        return None
    total = 0.0
    prev = points[0][1]
    for _, value in points[1:]:
        # A drop means the counter restarted from zero.
        total += value - prev if value >= prev else value
        prev = value
    return total


def _rate(points: list[tuple[float, float]], window_s: float) -> float | None:
    inc = _increase(points, window_s)
    if inc is None or window_s <= 0:
        return None
    return inc / window_s


def _delta(points: list[tuple[float, float]], _: float) -> float | None:
    if len(points) < 2:
        return None
    return points[-1][1] - points[0][1]


def _values(fn: Callable[[list[float]], float]):
    def _apply(points: list[tuple[float, float]], _: float) -> float | None:
        if not points:
            return None
        return fn([v for _, v in points])

    return _apply


RANGE_FUNCTIONS: dict[str, Callable[[list[tuple[float, float]], float], float | None]] = {
    "increase": _increase,
    "rate": _rate,
    "delta": _delta,
    "avg_over_time": _values(lambda vs: sum(vs) / len(vs)),
    "min_over_time": _values(min),
    "max_over_time": _values(max),
    "sum_over_time": _values(sum),
    "count_over_time": _values(lambda vs: float(len(vs))),
    "last_over_time": _values(lambda vs: vs[-1]),
}


@dataclass(frozen=True)
class RangeFunction:
    func: str
    selector: Selector
    range_s: float

    def evaluate(self, store: SampleStore, at: float) -> dict[LabelSet, float]:
        fn = RANGE_FUNCTIONS[self.func]
        out: dict[LabelSet, float] = {}
        for key, points in self.selector.select(store).items():
            value = fn(store.window(points, at - self.range_s, at), self.range_s)
            if value is not None:
                out[without_name(key)] = value
        return out

    @property
    def window_s(self) -> float:
        return self.range_s


@dataclass(frozen=True)
class Aggregation:
    op: str
    inner: "Selector | RangeFunction"
    by: tuple[str, ...] = ()

    def evaluate(self, store: SampleStore, at: float) -> dict[LabelSet, float]:
        groups: dict[LabelSet, list[float]] = {}
        for key, value in self.inner.evaluate(store, at).items():
            labels = dict(key)
            group = tuple(sorted((k, labels[k]) for k in self.by if k in labels))
            groups.setdefault(group, []).append(value)
        out: dict[LabelSet, float] = {}
        for group, values in groups.items():
            if self.op == "sum":
                out[group] = sum(values)
            elif self.op == "avg":
                out[group] = sum(values) / len(values)
            elif self.op == "min":
                out[group] = min(values)
            elif self.op == "max":
                out[group] = max(values)
            else:
                out[group] = float(len(values))
        return out

    @property
    def window_s(self) -> float:
        return self.inner.window_s


@dataclass(frozen=True)
class Condition:
    expr: "Selector | RangeFunction | Aggregation"
    op: str
    threshold: float

    @property
    def window_s(self) -> float:
        return self.expr.window_s

    def values(self, store: SampleStore, at: float) -> dict[LabelSet, float]:
        return self.expr.evaluate(store, at)

    def evaluate(self, store: SampleStore, at: float) -> dict[LabelSet, float]:
        """Return the series (label-set -> value) for which the condition holds."""
        return {
            key: value
            for key, value in self.values(store, at).items()
            if compare(self.op, value, self.threshold)
        }


def parse_condition(text: str) -> Condition:
    if not text or not str(text).strip():
        raise ConfigError("empty expression")
    return _Parser(str(text)).parse_condition()


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def _error(self, message: str) -> ConfigError:
        return ConfigError(f"{message} at position {self.pos} in {self.text!r}")

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self, token: str) -> bool:
        self._skip_ws()
        return self.text.startswith(token, self.pos)

    def _accept(self, token: str) -> bool:
        if self._peek(token):
            self.pos += len(token)
            return True
        return False

    def _expect(self, token: str) -> None:
        if not self._accept(token):
            raise self._error(f"expected {token!r}")

    def _match(self, pattern: re.Pattern, what: str) -> str:
        self._skip_ws()
        match = pattern.match(self.text, self.pos)
        if not match:
            raise self._error(f"expected {what}")
        self.pos = match.end()
        return match.group(0)

    def expect_end(self) -> None:
        self._skip_ws()
        if self.pos != len(self.text):
            raise self._error("unexpected trailing input")

    def _string(self) -> str:
        self._skip_ws()
        if self.pos >= len(self.text) or self.text[self.pos] not in {'"', "'"}:
            raise self._error("expected quoted string")
        quote = self.text[self.pos]
        self.pos += 1
        out: list[str] = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\\" and self.pos + 1 < len(self.text):
                nxt = self.text[self.pos + 1]
                out.append({"n": "\n", "t": "\t"}.get(nxt, nxt))
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return "".join(out)
            out.append(ch)
            self.pos += 1
        raise self._error("unterminated string")

    def parse_matcher_list(self, end: str | None) -> tuple[Matcher, ...]:
        matchers: list[Matcher] = []
        while True:
            if end is not None and self._peek(end):
                break
            self._skip_ws()
            if end is None and self.pos >= len(self.text):
                break
            label = self._match(_LABEL_NAME_RE, "label name")
            op = next((o for o in MATCH_OPS if self._accept(o)), None)
            if op is None:
                raise self._error("expected label matcher operator")
            matchers.append(Matcher.build(label, op, self._string()))
            if not self._accept(","):
                break
        return tuple(matchers)

    def parse_matcher_block(self) -> tuple[Matcher, ...]:
        self._expect("{")
        matchers = self.parse_matcher_list(end="}")
        self._expect("}")
        return matchers

    def _selector(self, name: str) -> Selector:
        matchers: tuple[Matcher, ...] = ()
        if self._peek("{"):
            matchers = self.parse_matcher_block()
        if any(m.label == METRIC_NAME_LABEL for m in matchers):
            raise self._error("__name__ matchers are not supported")
        return Selector(name=name, matchers=matchers)

    def _range(self) -> float:
        self._expect("[")
        end = self.text.find("]", self.pos)
        if end < 0:
            raise self._error("unterminated range")
        raw = self.text[self.pos : end].strip()
        window = parse_duration(raw)
        if window is None or window <= 0 or not re.search(r"[a-z]", raw):
            raise self._error(f"malformed window {raw!r}")
        self.pos = end + 1
        return window

    def _by_clause(self) -> tuple[str, ...]:
        self._expect("(")
        labels: list[str] = []
        while not self._peek(")"):
            labels.append(self._match(_LABEL_NAME_RE, "label name"))
            if not self._accept(","):
                break
        self._expect(")")
        return tuple(labels)

    def _inner(self):
        name = self._match(_METRIC_NAME_RE, "metric name or function")
        if name in RANGE_FUNCTIONS and self._peek("("):
            self._expect("(")
            selector = self._selector(self._match(_METRIC_NAME_RE, "metric name"))
            range_s = self._range()
            self._expect(")")
            return RangeFunction(func=name, selector=selector, range_s=range_s)
        if self._peek("["):
            raise self._error("range vector needs a function such as rate() or increase()")
        return self._selector(name)

    def _expr(self):
        self._skip_ws()
        save = self.pos
        word = _LABEL_NAME_RE.match(self.text, self.pos)
        if word and word.group(0) in AGGREGATIONS:
            self.pos = word.end()
            by: tuple[str, ...] = ()
            if self._accept("by"):
                by = self._by_clause()
            if self._peek("("):
                self._expect("(")
                inner = self._inner()
                self._expect(")")
                if not by and self._accept("by"):
                    by = self._by_clause()
                return Aggregation(op=word.group(0), inner=inner, by=by)
            # Metric that happens to be named like an aggregation.
            self.pos = save
        return self._inner()

    def parse_condition(self) -> Condition:
        expr = self._expr()
        op = next((o for o in COMPARATORS if self._accept(o)), None)
        if op is None:
            raise self._error("expected comparison operator")
        raw = self._match(_NUMBER_RE, "numeric threshold")
        self.expect_end()
        return Condition(expr=expr, op=op, threshold=float(raw))
