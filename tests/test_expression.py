import pytest

from alert_supervisor.errors import ConfigError, EvaluationError
from alert_supervisor.expression import (
    Aggregation,
    RangeFunction,
    Selector,
    format_duration,
    parse_condition,
    parse_duration,
    parse_matchers,
)
from alert_supervisor.models.samples import label_key
from alert_supervisor.store import SampleStore

from conftest import sample


def test_parse_duration_units():
    assert parse_duration("30s") == 30
    assert parse_duration("5m") == 300
    assert parse_duration("1h30m") == 5400
    assert parse_duration("250ms") == 0.25
    assert parse_duration(90) == 90
    assert parse_duration("45") == 45
    assert parse_duration(None, 7) == 7
    assert parse_duration("", 7) == 7


def test_parse_duration_invalid():
    assert parse_duration("5x") is None
    assert parse_duration("m5") is None
    assert parse_duration("-3") is None
    assert parse_duration(True) is None


def test_format_duration():
    assert format_duration(300) == "5m"
    assert format_duration(7200) == "2h"
    assert format_duration(45) == "45s"


def test_parse_condition_shapes():
    cond = parse_condition('increase(http_requests_total{status=~"5..", job="api"}[5m]) > 10')
    assert isinstance(cond.expr, RangeFunction)
    assert cond.expr.func == "increase"
    assert cond.expr.range_s == 300
    assert cond.op == ">"
    assert cond.threshold == 10
    assert cond.window_s == 300
    assert [m.label for m in cond.expr.selector.matchers] == ["status", "job"]

    raw = parse_condition("node_load1 >= 2.5")
    assert isinstance(raw.expr, Selector)
    assert raw.op == ">="

    agg = parse_condition("sum by (job) (rate(errors_total[1m])) != 0")
    assert isinstance(agg.expr, Aggregation)
    assert agg.expr.by == ("job",)

    trailing_by = parse_condition("max(cpu_usage) by (host) < 0.5")
    assert trailing_by.expr.by == ("host",)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "errors_total",
        "errors_total > ",
        "errors_total[5m] > 1",
        "rate(errors_total[5]) > 1",
        "rate(errors_total[0m]) > 1",
        'errors_total{job="api" > 1',
        'errors_total{job=~"("} > 1',
        "errors_total > 1 extra",
    ],
)
def test_parse_condition_rejects(text):
    with pytest.raises(ConfigError):
        parse_condition(text)


def test_parse_matchers_bare_and_braced():
    bare = parse_matchers('severity="critical", team=~"db|infra"')
    braced = parse_matchers('{severity="critical"}')
    assert [m.op for m in bare] == ["=", "=~"]
    assert braced[0].matches({"severity": "critical"})


def test_regex_matcher_is_anchored():
    (m,) = parse_matchers('status=~"5.."')
    assert m.matches({"status": "503"})
    assert not m.matches({"status": "1503"})
    (neg,) = parse_matchers('status!~"5.."')
    assert neg.matches({"status": "200"})


def test_increase_handles_counter_reset():
    store = SampleStore()
    for ts, value in [(0, 10), (15, 20), (30, 5), (45, 15)]:
        store.append(sample("reqs_total", value, ts, instance="a"))
    cond = parse_condition("increase(reqs_total[1m]) > 0")
    values = cond.values(store, 45)
    # 10 -> 20 (+10), reset to 5 (+5), 5 -> 15 (+10)
    assert values == {label_key({"instance": "a"}): 25.0}


def test_rate_divides_by_window():
    store = SampleStore()
    store.append(sample("reqs_total", 0, 0))
    store.append(sample("reqs_total", 60, 60))
    cond = parse_condition("rate(reqs_total[1m]) > 0.5")
    # Window is (0, 60], so only one point is inside and there is no rate.
    assert cond.evaluate(store, 60) == {}
    store.append(sample("reqs_total", 120, 90))
    assert cond.evaluate(store, 90) == {(): 1.0}


def test_raw_selector_uses_lookback():
    store = SampleStore()
    store.append(sample("temp", 80, 0, host="a"))
    cond = parse_condition("temp > 70")
    key = label_key({"host": "a", "__name__": "temp"})
    assert cond.evaluate(store, 100) == {key: 80.0}
    # Older than the 5 minute lookback: no current value.
    assert cond.evaluate(store, 400) == {}


def test_series_with_too_few_points_is_absent():
    store = SampleStore()
    store.append(sample("reqs_total", 1, 10, instance="a"))
    store.append(sample("reqs_total", 1, 10, instance="b"))
    store.append(sample("reqs_total", 9, 20, instance="b"))
    cond = parse_condition("increase(reqs_total[1m]) > 0")
    assert cond.evaluate(store, 20) == {label_key({"instance": "b"}): 8.0}


def test_missing_metric_raises_evaluation_error():
    store = SampleStore()
    cond = parse_condition("increase(nothing_total[5m]) > 1")
    with pytest.raises(EvaluationError):
        cond.evaluate(store, 0)


def test_aggregation_groups_by_label():
    store = SampleStore()
    store.append(sample("cpu", 0.2, 10, host="a", job="web"))
    store.append(sample("cpu", 0.6, 10, host="b", job="web"))
    store.append(sample("cpu", 0.9, 10, host="c", job="db"))
    cond = parse_condition("avg by (job) (cpu) > 0.3")
    result = cond.evaluate(store, 10)
    assert result == {
        (("job", "web"),): pytest.approx(0.4),
        (("job", "db"),): pytest.approx(0.9),
    }
    count = parse_condition("count(cpu) == 3")
    assert count.evaluate(store, 10) == {(): 3.0}


def test_over_time_functions():
    store = SampleStore()
    for ts, value in [(10, 1), (20, 5), (30, 3)]:
        store.append(sample("queue_depth", value, ts))
    assert parse_condition("max_over_time(queue_depth[1m]) > 4").evaluate(store, 30) == {(): 5.0}
    assert parse_condition("avg_over_time(queue_depth[1m]) == 3").evaluate(store, 30) == {(): 3.0}
    assert parse_condition("count_over_time(queue_depth[15s]) == 2").evaluate(store, 30) == {(): 2.0}
