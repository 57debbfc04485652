"""Supervisor runtime state (store, evaluator, routing, background tasks)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .. import selfmetrics
from ..alerting import AlertEvaluator
from ..delivery import Dispatcher
from ..routing import Router
from ..ruleset import RuleSet
from ..scrape import Scraper
from ..store import SampleStore
from .alerts import AlertEvent
from .metrics import EvaluationMetrics

logger = logging.getLogger(__name__)


@dataclass
class SupervisorState:
    """Everything one running supervisor owns.

    The evaluator's instance table is only touched from :meth:`tick`,
    :meth:`apply_ruleset` and :meth:`load_state`, all synchronous and all
    called from the event loop.
    """

    store: SampleStore
    evaluator: AlertEvaluator
    router: Router
    dispatcher: Dispatcher
    ruleset: RuleSet
    scraper: Scraper | None = None
    self_metrics: bool = True
    tasks: dict[str, object] = field(default_factory=dict)
    state_file: Path | None = None

    @classmethod
    def build(
        cls,
        ruleset: RuleSet,
        dispatcher: Dispatcher,
        scrape_targets: list[str] | None = None,
        scrape_timeout_s: float = 10.0,
        self_metrics: bool = True,
        state_file: str | Path | None = None,
    ) -> "SupervisorState":
        store = SampleStore()
        router = Router(ruleset.tree, dispatcher)
        evaluator = AlertEvaluator(
            store,
            ruleset.rules,
            repeat_interval_for=router.repeat_interval_for,
            metrics=EvaluationMetrics(),
        )
        scraper = Scraper(scrape_targets, store, scrape_timeout_s) if scrape_targets else None
        return cls(
            store=store,
            evaluator=evaluator,
            router=router,
            dispatcher=dispatcher,
            ruleset=ruleset,
            scraper=scraper,
            self_metrics=self_metrics,
            state_file=Path(state_file) if state_file else None,
        )

    @property
    def eval_metrics(self) -> EvaluationMetrics:
        return self.evaluator.metrics

    def record_self_metrics(self, now: float) -> None:
        if not self.self_metrics:
            return
        self.store.extend(selfmetrics.delivery_samples(self.dispatcher.metrics, now))
        self.store.extend(
            selfmetrics.evaluation_samples(self.eval_metrics, self.evaluator.instances(), now)
        )
        self.store.extend(selfmetrics.process_samples(now))

    def tick(self, now: float) -> list[AlertEvent]:
        """One evaluation pass: record own metrics, evaluate, route transitions."""
        self.record_self_metrics(now)
        events = self.evaluator.evaluate(now)
        for event in events:
            self.router.route(event)
        return events

    async def apply_ruleset(self, ruleset: RuleSet, now: float) -> list[AlertEvent]:
        """Switch to a validated rule set between ticks.

        Tree, rules and receivers all change before the first await, so a tick
        never sees a mix of old and new configuration.
        """
        self.router.tree = ruleset.tree
        events = self.evaluator.replace_rules(ruleset.rules, now)
        self.ruleset = ruleset
        for event in events:
            self.router.route(event)
        await self.dispatcher.replace_receivers(ruleset.receivers)
        logger.info(
            "Applied rule set from %s (%d rules, %d receivers)",
            ruleset.source,
            len(ruleset.rules),
            len(ruleset.receivers),
        )
        return events

    def save_state(self) -> None:
        """Persist the alert instance table so a restart does not re-page."""
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            data = {"instances": self.evaluator.dump()}
            tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
            tmp.write_text(json.dumps(data, indent=2))
            tmp.replace(self.state_file)
            logger.info("Saved %d alert instance(s) to %s", len(data["instances"]), self.state_file)
        except Exception:
            logger.exception("Failed to save supervisor state")

    def load_state(self) -> None:
        """Load persisted alert instances from disk."""
        if self.state_file is None:
            return
        try:
            if not self.state_file.exists():
                return
            data = json.loads(self.state_file.read_text())
            restored = self.evaluator.restore(data.get("instances", []))
            logger.info("Restored %d alert instance(s) from %s", restored, self.state_file)
        except Exception:
            logger.exception("Failed to load supervisor state")
