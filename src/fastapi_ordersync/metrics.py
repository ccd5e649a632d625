"""In-process metrics and threshold alerting for webhook processing."""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_RETRY = "retry"
OUTCOME_DEFERRED = "deferred"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class AlertRule:
    """Fire when ``outcome`` is seen ``threshold`` times within the window."""

    name: str
    outcome: str
    threshold: int
    window_seconds: float
    event_type: str | None = None


@dataclass(frozen=True)
class Alert:
    rule: str
    environment: str
    outcome: str
    count: int
    window_seconds: float
    event_type: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "environment": self.environment,
            "outcome": self.outcome,
            "count": self.count,
            "window_seconds": self.window_seconds,
            "event_type": self.event_type,
        }


DEFAULT_ALERT_RULES = (
    AlertRule(
        name="webhook-permanent-failures",
        outcome=OUTCOME_FAILED,
        threshold=3,
        window_seconds=300.0,
    ),
    AlertRule(
        name="webhook-retry-storm",
        outcome=OUTCOME_RETRY,
        threshold=20,
        window_seconds=300.0,
    ),
)


@dataclass
class _Timing:
    count: int = 0
    total: float = 0.0
    max: float = 0.0

    def add(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        self.max = max(self.max, seconds)


@dataclass
class MetricsSink:
    """Counters and timings keyed by ``(environment, event_type, outcome)``.

    The sink is a pure observer; recording never raises into callers.
    """

    environment: str = "development"
    rules: tuple[AlertRule, ...] = DEFAULT_ALERT_RULES
    on_alert: Callable[[Alert], None] | None = None
    clock: Callable[[], float] = time.monotonic
    history_size: int = 1000
    counters: Counter = field(default_factory=Counter)
    _timings: dict[tuple[str, str, str], _Timing] = field(
        default_factory=dict, init=False
    )
    _events: deque = field(default_factory=deque, init=False)

    def __post_init__(self) -> None:
        self._events = deque(maxlen=self.history_size)

    def record(
        self,
        event_type: str,
        outcome: str,
        duration: float | None = None,
    ) -> None:
        key = (self.environment, event_type, outcome)
        self.counters[key] += 1
        if duration is not None:
            self._timings.setdefault(key, _Timing()).add(duration)
        self._events.append((self.clock(), event_type, outcome))

    def count(self, event_type: str | None = None, outcome: str | None = None) -> int:
        return sum(
            value
            for (_, ev, out), value in self.counters.items()
            if (event_type is None or ev == event_type)
            and (outcome is None or out == outcome)
        )

    def _count_in_window(self, rule: AlertRule, now: float) -> int:
        cutoff = now - rule.window_seconds
        return sum(
            1
            for at, event_type, outcome in self._events
            if at >= cutoff
            and outcome == rule.outcome
            and (rule.event_type is None or event_type == rule.event_type)
        )

    def evaluate_alerts(self) -> list[Alert]:
        """Return the alerts whose rule threshold is reached right now."""
        now = self.clock()
        alerts: list[Alert] = []
        for rule in self.rules:
            count = self._count_in_window(rule, now)
            if count < rule.threshold:
                continue
            alert = Alert(
                rule=rule.name,
                environment=self.environment,
                outcome=rule.outcome,
                count=count,
                window_seconds=rule.window_seconds,
                event_type=rule.event_type,
            )
            logger.error(
                "Alert %s: %d %s outcomes in %.0fs (%s)",
                rule.name,
                count,
                rule.outcome,
                rule.window_seconds,
                self.environment,
            )
            if self.on_alert is not None:
                try:
                    self.on_alert(alert)
                except Exception:
                    logger.exception("Alert callback failed for %s", rule.name)
            alerts.append(alert)
        return alerts

    def snapshot(self) -> dict[str, Any]:
        counters: dict[str, dict[str, int]] = {}
        for (_, event_type, outcome), value in sorted(self.counters.items()):
            counters.setdefault(event_type, {})[outcome] = value
        timings = {
            f"{event_type}:{outcome}": {
                "count": timing.count,
                "avg": timing.total / timing.count if timing.count else 0.0,
                "max": timing.max,
            }
            for (_, event_type, outcome), timing in sorted(self._timings.items())
        }
        return {
            "environment": self.environment,
            "counters": counters,
            "timings": timings,
        }
