"""
Rule engine tests.
Tests for condition parsing and alert rule evaluation.
"""

import pytest
from datetime import datetime, timezone

from src.rules.engine import RuleEvaluator
from src.rules.types import (
    EarningsDateConditions,
    EvaluationContext,
    PriceThresholdConditions,
    RatingChangeConditions,
    TargetPriceConditions,
    ValidationError,
    ValuationAnomalyConditions,
    parse_conditions,
)
from src.database.models import AlertRule

NOW = datetime(2024, 6, 3, 2, 0, tzinfo=timezone.utc)


@pytest.fixture
def evaluator():
    """Create an evaluator with a fixed clock."""
    return RuleEvaluator(clock=lambda: NOW)


def rule(rule_type: str, **conditions) -> AlertRule:
    return AlertRule(id=1, rule_type=rule_type, conditions=conditions, symbol="AAPL")


class TestParseConditions:
    """Test typed condition parsing."""

    def test_rating_change_has_no_parameters(self):
        """Should ignore payload for rating_change."""
        assert parse_conditions("rating_change", {"anything": 1}) == RatingChangeConditions()

    def test_defaults_applied(self):
        """Should fall back to defaults for missing values."""
        assert parse_conditions("target_price", {}) == TargetPriceConditions(threshold=10.0)
        assert parse_conditions("valuation_anomaly", None) == ValuationAnomalyConditions(
            threshold=95.0
        )
        assert parse_conditions("earnings_date", {}) == EarningsDateConditions(days_before=3)

    def test_zero_threshold_uses_default(self):
        """Should treat a zero threshold as unset."""
        assert parse_conditions("target_price", {"threshold": 0}).threshold == 10.0
        assert parse_conditions("earnings_date", {"days_before": 0}).days_before == 3

    def test_days_before_camel_case(self):
        """Should accept the daysBefore spelling."""
        assert parse_conditions("earnings_date", {"daysBefore": 7}).days_before == 7

    def test_price_threshold_requires_threshold(self):
        """Should reject price_threshold without a threshold."""
        with pytest.raises(ValidationError):
            parse_conditions("price_threshold", {})

    def test_price_threshold_direction(self):
        """Should parse an optional direction."""
        parsed = parse_conditions("price_threshold", {"threshold": 100, "direction": "down"})
        assert parsed == PriceThresholdConditions(threshold=100.0, direction="down")

    def test_invalid_direction(self):
        """Should reject unknown directions."""
        with pytest.raises(ValidationError):
            parse_conditions("price_threshold", {"threshold": 100, "direction": "sideways"})

    def test_non_numeric_threshold(self):
        """Should reject strings and booleans as thresholds."""
        with pytest.raises(ValidationError):
            parse_conditions("target_price", {"threshold": "ten"})
        with pytest.raises(ValidationError):
            parse_conditions("price_threshold", {"threshold": True})

    def test_unknown_rule_type(self):
        """Should reject unknown rule types."""
        with pytest.raises(ValidationError):
            parse_conditions("volume_spike", {})


class TestRatingChange:
    """Test analyst rating change detection."""

    def test_upgrade(self, evaluator: RuleEvaluator):
        """Should report an upgrade with high priority."""
        context = EvaluationContext(symbol="AAPL", current_rating="buy", previous_rating="hold")
        result = evaluator.evaluate(rule("rating_change"), context)

        assert result.triggered is True
        assert result.priority == "high"
        assert result.title == "AAPL 分析师评级上调至 BUY"
        assert "从 HOLD 调整为 BUY" in result.message
        assert result.data == {
            "previousRating": "hold",
            "newRating": "buy",
            "changeDirection": "上调",
        }

    def test_downgrade(self, evaluator: RuleEvaluator):
        """Should report a downgrade."""
        context = EvaluationContext(symbol="AAPL", current_rating="sell", previous_rating="buy")
        result = evaluator.evaluate(rule("rating_change"), context)
        assert result.data["changeDirection"] == "下调"

    def test_unknown_ratings_are_adjustments(self, evaluator: RuleEvaluator):
        """Should call a change between two unranked ratings an adjustment."""
        context = EvaluationContext(
            symbol="AAPL", current_rating="outperform", previous_rating="neutral"
        )
        result = evaluator.evaluate(rule("rating_change"), context)
        assert result.triggered is True
        assert result.data["changeDirection"] == "调整"

    def test_unchanged_rating(self, evaluator: RuleEvaluator):
        """Should not trigger when the rating is unchanged."""
        context = EvaluationContext(symbol="AAPL", current_rating="buy", previous_rating="buy")
        assert evaluator.evaluate(rule("rating_change"), context).triggered is False

    def test_missing_previous_rating(self, evaluator: RuleEvaluator):
        """Should not trigger without a baseline."""
        context = EvaluationContext(symbol="AAPL", current_rating="buy")
        assert evaluator.evaluate(rule("rating_change"), context).triggered is False


class TestTargetPrice:
    """Test consensus target price changes."""

    def test_raise_above_threshold(self, evaluator: RuleEvaluator):
        """Should trigger on a 15% raise with a 10% threshold."""
        context = EvaluationContext(
            symbol="AAPL", target_price=115.0, previous_target_price=100.0
        )
        result = evaluator.evaluate(rule("target_price", threshold=10), context)

        assert result.triggered is True
        assert result.priority == "high"
        assert result.title == "AAPL 目标价上调 15.0%"
        assert "$100.00 调整为 $115.00" in result.message
        assert result.data["direction"] == "上调"
        assert abs(result.data["changePercent"] - 15.0) < 1e-9

    def test_cut_above_threshold(self, evaluator: RuleEvaluator):
        """Should trigger on a cut using the absolute change."""
        context = EvaluationContext(
            symbol="AAPL", target_price=170.0, previous_target_price=200.0
        )
        result = evaluator.evaluate(rule("target_price"), context)
        assert result.triggered is True
        assert result.title == "AAPL 目标价下调 15.0%"

    def test_below_threshold(self, evaluator: RuleEvaluator):
        """Should not trigger below the threshold."""
        context = EvaluationContext(
            symbol="AAPL", target_price=109.0, previous_target_price=100.0
        )
        assert evaluator.evaluate(rule("target_price", threshold=0), context).triggered is False

    def test_exact_threshold_triggers(self, evaluator: RuleEvaluator):
        """Should trigger when the change equals the threshold."""
        context = EvaluationContext(
            symbol="AAPL", target_price=110.0, previous_target_price=100.0
        )
        assert evaluator.evaluate(rule("target_price", threshold=10), context).triggered is True

    def test_eleven_percent_raise_triggers(self, evaluator: RuleEvaluator):
        """Should trigger on an 11% raise with a 10% threshold."""
        context = EvaluationContext(
            symbol="AAPL", target_price=111.0, previous_target_price=100.0
        )
        assert evaluator.evaluate(rule("target_price", threshold=10), context).triggered is True

    def test_missing_previous_target(self, evaluator: RuleEvaluator):
        """Should not trigger without a previous target."""
        context = EvaluationContext(symbol="AAPL", target_price=150.0)
        assert evaluator.evaluate(rule("target_price"), context).triggered is False


class TestValuationAnomaly:
    """Test P/E percentile extremes."""

    def test_high_percentile(self, evaluator: RuleEvaluator):
        """Should flag an expensive valuation."""
        context = EvaluationContext(symbol="AAPL", pe_ratio=30.0, pe_percentile=96)
        result = evaluator.evaluate(rule("valuation_anomaly"), context)

        assert result.triggered is True
        assert result.priority == "medium"
        assert result.title == "AAPL 估值处于历史96%分位"
        assert result.data["assessment"] == "偏高"
        assert result.data["lookbackPeriod"] == "5年"
        assert "P/E 目前为 30.00" in result.message

    def test_percentile_at_threshold(self, evaluator: RuleEvaluator):
        """Should trigger when the percentile equals the threshold."""
        context = EvaluationContext(symbol="AAPL", pe_ratio=28.0, pe_percentile=95)
        result = evaluator.evaluate(rule("valuation_anomaly", threshold=95), context)
        assert result.triggered is True
        assert result.data["assessment"] == "偏高"

    def test_low_percentile(self, evaluator: RuleEvaluator):
        """Should flag a cheap valuation at the mirrored threshold."""
        context = EvaluationContext(symbol="AAPL", pe_ratio=12.0, pe_percentile=5)
        result = evaluator.evaluate(rule("valuation_anomaly"), context)
        assert result.triggered is True
        assert result.data["assessment"] == "偏低"

    def test_zero_percentile_is_valid(self, evaluator: RuleEvaluator):
        """Should treat a 0th percentile as data, not as missing."""
        context = EvaluationContext(symbol="AAPL", pe_ratio=12.0, pe_percentile=0)
        assert evaluator.evaluate(rule("valuation_anomaly"), context).triggered is True

    def test_middle_percentile(self, evaluator: RuleEvaluator):
        """Should not trigger for ordinary valuations."""
        context = EvaluationContext(symbol="AAPL", pe_ratio=20.0, pe_percentile=50)
        assert evaluator.evaluate(rule("valuation_anomaly"), context).triggered is False

    def test_missing_percentile(self, evaluator: RuleEvaluator):
        """Should not trigger without valuation history."""
        context = EvaluationContext(symbol="AAPL", pe_ratio=20.0)
        assert evaluator.evaluate(rule("valuation_anomaly"), context).triggered is False


class TestEarningsDate:
    """Test upcoming earnings reminders."""

    def test_exact_day_triggers(self, evaluator: RuleEvaluator):
        """Should trigger when the report is exactly days_before away."""
        # 2024-06-06 00:00 UTC is 2 days 22 hours after NOW, rounded up to 3
        context = EvaluationContext(symbol="AAPL", earnings_date="2024-06-06")
        result = evaluator.evaluate(rule("earnings_date", days_before=3), context)

        assert result.triggered is True
        assert result.priority == "medium"
        assert result.title == "AAPL 即将发布财报"
        assert result.data == {"days": 3, "date": "2024-06-06", "symbol": "AAPL"}
        assert "3 天后" in result.message

    def test_other_days_do_not_trigger(self, evaluator: RuleEvaluator):
        """Should only fire on the matching day in exact mode."""
        for date in ("2024-06-05", "2024-06-07", "2024-06-01"):
            context = EvaluationContext(symbol="AAPL", earnings_date=date)
            result = evaluator.evaluate(rule("earnings_date", days_before=3), context)
            assert result.triggered is False, date

    def test_within_mode(self):
        """Should fire on any day up to days_before in within mode."""
        evaluator = RuleEvaluator(earnings_match="within", clock=lambda: NOW)

        inside = EvaluationContext(symbol="AAPL", earnings_date="2024-06-05")
        outside = EvaluationContext(symbol="AAPL", earnings_date="2024-06-07")
        past = EvaluationContext(symbol="AAPL", earnings_date="2024-06-01")

        assert evaluator.evaluate(rule("earnings_date"), inside).triggered is True
        assert evaluator.evaluate(rule("earnings_date"), outside).triggered is False
        assert evaluator.evaluate(rule("earnings_date"), past).triggered is False

    def test_utc_suffix(self, evaluator: RuleEvaluator):
        """Should accept ISO timestamps ending in Z."""
        context = EvaluationContext(symbol="AAPL", earnings_date="2024-06-06T00:00:00Z")
        result = evaluator.evaluate(rule("earnings_date", days_before=3), context)
        assert result.triggered is True

    def test_unparseable_date(self, evaluator: RuleEvaluator):
        """Should not trigger on garbage dates."""
        context = EvaluationContext(symbol="AAPL", earnings_date="next week")
        assert evaluator.evaluate(rule("earnings_date"), context).triggered is False

    def test_invalid_match_mode(self):
        """Should reject unknown match modes."""
        with pytest.raises(ValueError):
            RuleEvaluator(earnings_match="fuzzy")


class TestPriceThreshold:
    """Test price threshold crossings."""

    def test_cross_up(self, evaluator: RuleEvaluator):
        """Should report an upward crossing with low priority."""
        context = EvaluationContext(symbol="ACME", current_price=105.0, previous_price=95.0)
        result = evaluator.evaluate(rule("price_threshold", threshold=100), context)

        assert result.triggered is True
        assert result.priority == "low"
        assert result.title == "ACME 股价突破 $100"
        assert "当前股价 $105.00 已突破您设定的阈值 $100" in result.message
        assert result.data["direction"] == "up"
        assert result.data["condition"] == "突破"

    def test_cross_down(self, evaluator: RuleEvaluator):
        """Should report a downward crossing."""
        context = EvaluationContext(symbol="ACME", current_price=95.0, previous_price=105.0)
        result = evaluator.evaluate(rule("price_threshold", threshold=100), context)
        assert result.triggered is True
        assert result.title == "ACME 股价跌破 $100"
        assert result.data["direction"] == "down"

    def test_landing_on_threshold_counts(self, evaluator: RuleEvaluator):
        """Should count reaching the threshold exactly as a crossing."""
        context = EvaluationContext(symbol="ACME", current_price=100.0, previous_price=95.0)
        assert evaluator.evaluate(rule("price_threshold", threshold=100), context).triggered

    def test_starting_on_threshold_does_not_count(self, evaluator: RuleEvaluator):
        """Should not trigger when the previous price sat on the threshold."""
        context = EvaluationContext(symbol="ACME", current_price=105.0, previous_price=100.0)
        result = evaluator.evaluate(rule("price_threshold", threshold=100), context)
        assert result.triggered is False

    def test_direction_filter(self, evaluator: RuleEvaluator):
        """Should ignore crossings in the other direction."""
        context = EvaluationContext(symbol="ACME", current_price=95.0, previous_price=105.0)
        result = evaluator.evaluate(
            rule("price_threshold", threshold=100, direction="up"), context
        )
        assert result.triggered is False

    def test_fractional_threshold_formatting(self, evaluator: RuleEvaluator):
        """Should keep fractional thresholds as entered."""
        context = EvaluationContext(symbol="ACME", current_price=100.0, previous_price=99.0)
        result = evaluator.evaluate(rule("price_threshold", threshold=99.5), context)
        assert result.title == "ACME 股价突破 $99.5"

    def test_missing_previous_price(self, evaluator: RuleEvaluator):
        """Should not trigger without a previous price."""
        context = EvaluationContext(symbol="ACME", current_price=105.0)
        assert evaluator.evaluate(rule("price_threshold", threshold=100), context).triggered is False


class TestEvaluatorRobustness:
    """Test that evaluation never raises."""

    def test_invalid_conditions_do_not_trigger(self, evaluator: RuleEvaluator):
        """Should swallow malformed conditions as a non-trigger."""
        context = EvaluationContext(symbol="ACME", current_price=105.0, previous_price=95.0)
        assert evaluator.evaluate(rule("price_threshold"), context).triggered is False

    def test_unknown_rule_type(self, evaluator: RuleEvaluator):
        """Should not trigger for unknown rule types."""
        context = EvaluationContext(symbol="ACME", current_price=105.0, previous_price=95.0)
        assert evaluator.evaluate(rule("volume_spike"), context).triggered is False

    def test_non_trigger_results_are_independent(self, evaluator: RuleEvaluator):
        """Should return a fresh result each time."""
        context = EvaluationContext(symbol="ACME")
        first = evaluator.evaluate(rule("rating_change"), context)
        first.data["x"] = 1
        second = evaluator.evaluate(rule("rating_change"), context)
        assert second.data == {}
