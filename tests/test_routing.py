from alert_supervisor.expression import parse_matchers
from alert_supervisor.models.alerts import EventKind
from alert_supervisor.routing import Route, Router, RoutingTree

from conftest import DummySink, make_event


def _route(matchers: str, *receivers: str, **kwargs) -> Route:
    return Route(matchers=parse_matchers(matchers), receivers=receivers, **kwargs)


def _tree() -> RoutingTree:
    return RoutingTree(
        receivers=("default",),
        repeat_interval_s=3600,
        routes=(
            _route('severity="critical"', "pager", "chat", repeat_interval_s=600),
            _route('team="db"', "db-chat", continue_matching=True),
            _route('team=~"db|infra"', "infra-mail"),
            _route('team="web"', "web-chat"),
        ),
    )


def test_first_match_wins():
    tree = _tree()
    assert tree.receivers_for({"severity": "critical", "team": "db"}) == ["pager", "chat"]
    assert tree.receivers_for({"severity": "warning", "team": "infra"}) == ["infra-mail"]


def test_continue_keeps_matching():
    tree = _tree()
    assert tree.receivers_for({"severity": "warning", "team": "db"}) == ["db-chat", "infra-mail"]


def test_unmatched_falls_back_to_root():
    assert _tree().receivers_for({"severity": "info"}) == ["default"]


def test_nested_routes_prefer_matching_child():
    tree = RoutingTree(
        receivers=("default",),
        routes=(
            Route(
                matchers=parse_matchers('team="db"'),
                receivers=("db-chat",),
                routes=(_route('severity="critical"', "db-pager"),),
            ),
        ),
    )
    assert tree.receivers_for({"team": "db", "severity": "critical"}) == ["db-pager"]
    assert tree.receivers_for({"team": "db", "severity": "warning"}) == ["db-chat"]


def test_receiver_listed_twice_is_notified_once():
    tree = RoutingTree(
        receivers=("default",),
        routes=(
            _route('team="db"', "chat", continue_matching=True),
            _route('severity="critical"', "chat", "pager"),
        ),
    )
    assert tree.receivers_for({"team": "db", "severity": "critical"}) == ["chat", "pager"]


def test_repeat_interval_comes_from_first_matched_route():
    tree = _tree()
    assert tree.repeat_interval_for({"severity": "critical"}) == 600
    assert tree.repeat_interval_for({"severity": "info"}) == 3600
    assert tree.repeat_interval_for({"team": "web"}) is None


def test_router_submits_one_notification_per_receiver():
    sink = DummySink()
    router = Router(_tree(), sink)
    event = make_event(EventKind.FIRING, labels={"team": "db"})

    notifications = router.route(event)

    assert [n.receiver for n in notifications] == ["pager", "chat"]
    assert sink.submitted == notifications
    assert all(n.created_at == event.at for n in notifications)
    assert all(n.kind is EventKind.FIRING for n in notifications)
