"""
Rule condition types and evaluation value objects.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union


class ValidationError(ValueError):
    """Raised when a rule's conditions payload is malformed."""

    pass


@dataclass
class EvaluationContext:
    """Snapshot of market/company state for one symbol."""

    symbol: str
    current_price: Optional[float] = None
    previous_price: Optional[float] = None
    current_rating: Optional[str] = None
    previous_rating: Optional[str] = None
    target_price: Optional[float] = None
    previous_target_price: Optional[float] = None
    pe_ratio: Optional[float] = None
    pe_percentile: Optional[float] = None
    earnings_date: Optional[str] = None  # ISO date or datetime


@dataclass
class EvaluationResult:
    """Outcome of evaluating one rule against one context."""

    triggered: bool
    title: Optional[str] = None
    message: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    priority: Optional[str] = None


@dataclass(frozen=True)
class RatingChangeConditions:
    rule_type = "rating_change"


@dataclass(frozen=True)
class TargetPriceConditions:
    rule_type = "target_price"

    threshold: float = 10.0  # percent


@dataclass(frozen=True)
class ValuationAnomalyConditions:
    rule_type = "valuation_anomaly"

    threshold: float = 95.0  # percentile


@dataclass(frozen=True)
class EarningsDateConditions:
    rule_type = "earnings_date"

    days_before: int = 3


@dataclass(frozen=True)
class PriceThresholdConditions:
    rule_type = "price_threshold"

    threshold: float
    direction: Optional[str] = None  # "up", "down" or None for either


Conditions = Union[
    RatingChangeConditions,
    TargetPriceConditions,
    ValuationAnomalyConditions,
    EarningsDateConditions,
    PriceThresholdConditions,
]


def _number(payload: dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"'{key}' must be a number, got {value!r}")
    return float(value)


def parse_conditions(rule_type: str, payload: Optional[dict[str, Any]]) -> Conditions:
    """
    Build the typed conditions for a rule from its stored payload.

    Zero or missing thresholds fall back to the rule type's default, except
    for price_threshold where the threshold is mandatory.

    Raises:
        ValidationError: If the rule type is unknown or the payload is malformed
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError(f"Conditions must be a mapping, got {payload!r}")

    if rule_type == "rating_change":
        return RatingChangeConditions()

    elif rule_type == "target_price":
        threshold = _number(payload, "threshold") or 10.0
        if threshold < 0:
            raise ValidationError("target_price threshold must be positive")
        return TargetPriceConditions(threshold=threshold)

    elif rule_type == "valuation_anomaly":
        threshold = _number(payload, "threshold") or 95.0
        if not 0 < threshold <= 100:
            raise ValidationError("valuation_anomaly threshold must be in (0, 100]")
        return ValuationAnomalyConditions(threshold=threshold)

    elif rule_type == "earnings_date":
        raw = payload.get("days_before", payload.get("daysBefore"))
        if raw is not None and (isinstance(raw, bool) or not isinstance(raw, int)):
            raise ValidationError(f"days_before must be an integer, got {raw!r}")
        days_before = raw or 3
        if days_before < 0:
            raise ValidationError("days_before cannot be negative")
        return EarningsDateConditions(days_before=days_before)

    elif rule_type == "price_threshold":
        threshold = _number(payload, "threshold")
        if threshold is None:
            raise ValidationError("price_threshold requires a threshold")
        direction = payload.get("direction")
        if direction not in (None, "up", "down"):
            raise ValidationError(f"direction must be 'up' or 'down', got {direction!r}")
        return PriceThresholdConditions(threshold=threshold, direction=direction)

    raise ValidationError(f"Unknown rule type: {rule_type}")
