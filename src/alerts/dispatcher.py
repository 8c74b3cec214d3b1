"""
Turns rule triggers into persisted alerts and routes them for delivery.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Callable, Optional

from src.database.connection import utcnow
from src.database.models import AlertHistory, AlertRule
from src.database.repository import (
    AlertHistoryRepository,
    DuplicateRecordError,
    NotFoundError,
    RuleRepository,
    UserRepository,
)
from src.notifiers.router import NotificationRouter
from src.rules.engine import RuleEvaluator
from src.rules.types import EvaluationContext, EvaluationResult

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
    """Counters for one dispatch pass."""

    triggered: int = 0
    alerts_created: int = 0
    duplicates: int = 0
    sent_now: int = 0
    queued: int = 0
    undelivered: int = 0
    errors: int = 0

    def merge(self, other: "DispatchSummary") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


def dedup_key(rule: AlertRule, symbol: str, when: datetime) -> str:
    """Idempotency key: one alert per rule, symbol and UTC day."""
    return f"{rule.id}:{symbol}:{when.date().isoformat()}"


class AlertDispatcher:
    """Evaluates a symbol's rules and materializes the triggers."""

    def __init__(
        self,
        evaluator: RuleEvaluator,
        rule_repo: RuleRepository,
        alert_repo: AlertHistoryRepository,
        user_repo: UserRepository,
        router: NotificationRouter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.evaluator = evaluator
        self.rule_repo = rule_repo
        self.alert_repo = alert_repo
        self.user_repo = user_repo
        self.router = router
        self.clock = clock

    def evaluate_rules_for_symbol(
        self,
        symbol: str,
        context: EvaluationContext,
        now: Optional[datetime] = None,
    ) -> list[tuple[AlertRule, EvaluationResult]]:
        """
        Evaluate every active rule for the symbol, including market-wide
        rules, and return the ones that triggered in fetch order.
        """
        now = now or self.clock()
        triggered = []
        for rule in self.rule_repo.get_active_rules_for_symbol(symbol):
            result = self.evaluator.evaluate(rule, context, now=now)
            if result.triggered:
                triggered.append((rule, result))
        return triggered

    def process_symbol(self, symbol: str, context: EvaluationContext) -> DispatchSummary:
        """Evaluate and dispatch all rules for one symbol."""
        now = self.clock()
        triggered = self.evaluate_rules_for_symbol(symbol, context, now=now)
        logger.info(f"{symbol}: {len(triggered)} rules triggered")
        return self.dispatch(symbol, triggered, now=now)

    def dispatch(
        self,
        symbol: str,
        triggered: list[tuple[AlertRule, EvaluationResult]],
        now: Optional[datetime] = None,
    ) -> DispatchSummary:
        """Persist and route each trigger. One failure never stops the rest."""
        now = now or self.clock()
        summary = DispatchSummary()

        for rule, result in triggered:
            if not result.triggered or not result.title or not result.message:
                continue
            summary.triggered += 1
            try:
                self._dispatch_one(symbol, rule, result, now, summary)
            except Exception as e:
                summary.errors += 1
                logger.error(f"Failed to dispatch rule {rule.id} for {symbol}: {e}")

        return summary

    def _dispatch_one(
        self,
        symbol: str,
        rule: AlertRule,
        result: EvaluationResult,
        now: datetime,
        summary: DispatchSummary,
    ) -> None:
        alert = AlertHistory(
            rule_id=rule.id,
            user_id=rule.user_id,
            symbol=symbol,
            alert_type=rule.rule_type,
            title=result.title,
            message=result.message,
            data=result.data or {},
            priority=result.priority or "medium",
            dedup_key=dedup_key(rule, symbol, now),
            created_at=now,
        )
        try:
            alert = self.alert_repo.create(alert)
        except DuplicateRecordError:
            summary.duplicates += 1
            logger.info(f"Alert for rule {rule.id} on {symbol} already recorded today, skipping")
            return

        summary.alerts_created += 1
        count = self.rule_repo.record_trigger(rule.id, now)
        rule.trigger_count = count
        rule.last_triggered_at = now
        logger.info(f"Alert {alert.id} created for rule {rule.id} ({symbol}), trigger #{count}")

        try:
            user = self.user_repo.require(rule.user_id)
        except NotFoundError as e:
            summary.undelivered += 1
            logger.info(f"Alert {alert.id} not routed: {e}")
            return

        outcome = self.router.route(rule, alert, user)
        if outcome.sent_now:
            summary.sent_now += 1
        if outcome.queued:
            summary.queued += 1
