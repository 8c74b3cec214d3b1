"""
Rule evaluation engine.
"""

import math
from datetime import datetime, timezone
from typing import Callable, Optional

from src.database.connection import utcnow
from src.database.models import AlertRule
from .types import (
    Conditions,
    EarningsDateConditions,
    EvaluationContext,
    EvaluationResult,
    PriceThresholdConditions,
    RatingChangeConditions,
    TargetPriceConditions,
    ValidationError,
    ValuationAnomalyConditions,
    parse_conditions,
)

__all__ = ["RuleEvaluator", "EvaluationContext", "EvaluationResult"]

RATING_ORDER = ["sell", "hold", "buy"]
EARNINGS_MATCH_MODES = ("exact", "within")


def _fmt(value: float) -> str:
    """Render a number the way it was entered: 50 not 50.0."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _rating_index(rating: str) -> int:
    return RATING_ORDER.index(rating) if rating in RATING_ORDER else -1


def _parse_earnings_date(value: str) -> Optional[datetime]:
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RuleEvaluator:
    """Evaluates alert rules against an evaluation context."""

    def __init__(
        self,
        earnings_match: str = "exact",
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the evaluator.

        Args:
            earnings_match: "exact" fires earnings reminders only when the
                report is exactly days_before days away; "within" fires on
                any day from days_before down to the report day.
            clock: Source of the current time
        """
        if earnings_match not in EARNINGS_MATCH_MODES:
            raise ValueError(f"Unknown earnings match mode: {earnings_match}")
        self.earnings_match = earnings_match
        self.clock = clock

    def evaluate(
        self,
        rule: AlertRule,
        context: EvaluationContext,
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """
        Evaluate a single rule. Never raises; bad conditions or missing
        context fields simply do not trigger.
        """
        try:
            conditions = parse_conditions(rule.rule_type, rule.conditions)
        except ValidationError:
            return EvaluationResult(triggered=False)

        return self.evaluate_conditions(conditions, context, now or self.clock())

    def evaluate_conditions(
        self,
        conditions: Conditions,
        context: EvaluationContext,
        now: datetime,
    ) -> EvaluationResult:
        if isinstance(conditions, RatingChangeConditions):
            return self._rating_change(context)
        elif isinstance(conditions, TargetPriceConditions):
            return self._target_price(conditions, context)
        elif isinstance(conditions, ValuationAnomalyConditions):
            return self._valuation_anomaly(conditions, context)
        elif isinstance(conditions, EarningsDateConditions):
            return self._earnings_date(conditions, context, now)
        elif isinstance(conditions, PriceThresholdConditions):
            return self._price_threshold(conditions, context)
        return EvaluationResult(triggered=False)

    def _rating_change(self, context: EvaluationContext) -> EvaluationResult:
        current, previous = context.current_rating, context.previous_rating
        if not current or not previous or current == previous:
            return EvaluationResult(triggered=False)

        current_idx = _rating_index(current)
        previous_idx = _rating_index(previous)
        if current_idx > previous_idx:
            change = "上调"
        elif current_idx < previous_idx:
            change = "下调"
        else:
            change = "调整"

        symbol = context.symbol
        return EvaluationResult(
            triggered=True,
            title=f"{symbol} 分析师评级{change}至 {current.upper()}",
            message=(
                f"{symbol} 的分析师共识评级从 {previous.upper()} 调整为 "
                f"{current.upper()}。这一变化可能影响投资决策，建议查看最新分析报告。"
            ),
            data={
                "previousRating": previous,
                "newRating": current,
                "changeDirection": change,
            },
            priority="high",
        )

    def _target_price(
        self, conditions: TargetPriceConditions, context: EvaluationContext
    ) -> EvaluationResult:
        new, old = context.target_price, context.previous_target_price
        if not new or not old:
            return EvaluationResult(triggered=False)

        change_pct = (new - old) / old * 100
        if abs(change_pct) < conditions.threshold:
            return EvaluationResult(triggered=False)

        direction = "上调" if change_pct > 0 else "下调"
        abs_change = f"{abs(change_pct):.1f}"
        symbol = context.symbol
        return EvaluationResult(
            triggered=True,
            title=f"{symbol} 目标价{direction} {abs_change}%",
            message=(
                f"{symbol} 的分析师共识目标价从 ${old:.2f} 调整为 ${new:.2f}"
                f"（{direction} {abs_change}%）。"
            ),
            data={
                "previousPrice": old,
                "newPrice": new,
                "changePercent": change_pct,
                "direction": direction,
            },
            priority="high",
        )

    def _valuation_anomaly(
        self, conditions: ValuationAnomalyConditions, context: EvaluationContext
    ) -> EvaluationResult:
        pe, percentile = context.pe_ratio, context.pe_percentile
        if not pe or percentile is None:
            return EvaluationResult(triggered=False)

        if percentile >= conditions.threshold:
            assessment = "偏高"
            outlook = "这可能表示估值偏高，建议关注。"
        elif percentile <= 100 - conditions.threshold:
            assessment = "偏低"
            outlook = "这可能表示估值偏低，存在投资机会。"
        else:
            return EvaluationResult(triggered=False)

        symbol = context.symbol
        return EvaluationResult(
            triggered=True,
            title=f"{symbol} 估值处于历史{_fmt(percentile)}%分位",
            message=(
                f"{symbol} 的 P/E 目前为 {pe:.2f}，处于历史 5 年的 "
                f"{_fmt(percentile)}% 分位。{outlook}"
            ),
            data={
                "metric": "P/E",
                "currentValue": pe,
                "percentile": percentile,
                "lookbackPeriod": "5年",
                "assessment": assessment,
            },
            priority="medium",
        )

    def _earnings_date(
        self,
        conditions: EarningsDateConditions,
        context: EvaluationContext,
        now: datetime,
    ) -> EvaluationResult:
        if not context.earnings_date:
            return EvaluationResult(triggered=False)
        earnings = _parse_earnings_date(context.earnings_date)
        if earnings is None:
            return EvaluationResult(triggered=False)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        diff_days = math.ceil((earnings - now).total_seconds() / 86400)
        if self.earnings_match == "exact":
            matched = diff_days == conditions.days_before
        else:
            matched = 0 <= diff_days <= conditions.days_before
        if not matched:
            return EvaluationResult(triggered=False)

        symbol = context.symbol
        return EvaluationResult(
            triggered=True,
            title=f"{symbol} 即将发布财报",
            message=(
                f"{symbol} 将在 {diff_days} 天后发布财报（{context.earnings_date}）。"
                "历史财报表现和AI分析已就绪，可提前查看。"
            ),
            data={
                "days": diff_days,
                "date": context.earnings_date,
                "symbol": symbol,
            },
            priority="medium",
        )

    def _price_threshold(
        self, conditions: PriceThresholdConditions, context: EvaluationContext
    ) -> EvaluationResult:
        current, previous = context.current_price, context.previous_price
        if not current or not previous:
            return EvaluationResult(triggered=False)

        threshold = conditions.threshold
        crossed_up = previous < threshold <= current
        crossed_down = previous > threshold >= current

        if conditions.direction == "up":
            triggered = crossed_up
        elif conditions.direction == "down":
            triggered = crossed_down
        else:
            triggered = crossed_up or crossed_down
        if not triggered:
            return EvaluationResult(triggered=False)

        condition = "突破" if crossed_up else "跌破"
        symbol = context.symbol
        return EvaluationResult(
            triggered=True,
            title=f"{symbol} 股价{condition} ${_fmt(threshold)}",
            message=(
                f"{symbol} 当前股价 ${current:.2f} 已{condition}您设定的阈值 "
                f"${_fmt(threshold)}。目标达成！建议查看最新分析以决定后续操作。"
            ),
            data={
                "currentPrice": current,
                "threshold": threshold,
                "condition": condition,
                "direction": "up" if crossed_up else "down",
            },
            priority="low",
        )
