"""
Tests for the condition grammar in `care_core/domain/conditions.py`.

Covers:
- Duration parsing ('30m', '24h', '7d', '2w', 'immediate')
- Alias handling for metric key and window fields
- Operator-specific companion fields
- no_assessment_for rewriting to missing-data conditions
- Validation against a metric's value type
"""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from adapters.rtm.catalog import rule_templates, standard_metrics
from care_core.domain.conditions import (
    ComparisonCondition,
    ContainsCondition,
    EqualityCondition,
    MissingDataCondition,
    TrendCondition,
    parse_condition,
    parse_cooldown,
    parse_duration,
    validate_condition,
)
from care_core.domain.errors import InvalidRuleExpression
from care_core.domain.models import MetricDefinition

METRICS = {metric.key: metric for metric in standard_metrics()}


def metric(key: str) -> MetricDefinition:
    return METRICS[key]


class TestParseDuration:
    """Duration strings used by timeWindow, duration and cooldown."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("30m", timedelta(minutes=30)),
            ("24h", timedelta(hours=24)),
            ("7d", timedelta(days=7)),
            ("2w", timedelta(weeks=2)),
            (" 12H ", timedelta(hours=12)),
        ],
    )
    def test_parses_supported_units(self, text: str, expected: timedelta) -> None:
        assert parse_duration(text) == expected

    def test_immediate_means_no_window(self) -> None:
        assert parse_duration("immediate") is None
        assert parse_duration("IMMEDIATE") is None

    @pytest.mark.parametrize("text", ["", "7", "d7", "7 days", "0h", "-3d", "1y"])
    def test_rejects_malformed_or_non_positive(self, text: str) -> None:
        with pytest.raises(InvalidRuleExpression):
            parse_duration(text)

    def test_cooldown_cannot_be_immediate(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="immediate") as exc_info:
            parse_cooldown("immediate")
        assert exc_info.value.field == "cooldown"

    @given(amount=st.integers(min_value=1, max_value=10_000))
    def test_hours_round_trip_for_any_positive_amount(self, amount: int) -> None:
        assert parse_duration(f"{amount}h") == timedelta(hours=amount)


class TestParseCondition:
    """Raw expressions become one typed variant per operator."""

    def test_comparison_with_metric_key_alias(self) -> None:
        condition = parse_condition(
            {"condition": "pain_scale_0_10", "operator": "greater_than_or_equal", "threshold": 8}
        )
        assert isinstance(condition, ComparisonCondition)
        assert condition.metric_key == "pain_scale_0_10"
        assert condition.is_immediate

    @pytest.mark.parametrize("alias", ["metricKey", "metric", "condition", "metric_key"])
    def test_every_metric_key_alias_is_accepted(self, alias: str) -> None:
        condition = parse_condition({alias: "mood_scale", "operator": "less_than", "threshold": 3})
        assert condition.metric_key == "mood_scale"

    def test_time_window_and_duration_are_interchangeable(self) -> None:
        by_window = parse_condition(
            {"metricKey": "mood_scale", "operator": "less_than", "threshold": 3, "timeWindow": "3d"}
        )
        by_duration = parse_condition(
            {"metricKey": "mood_scale", "operator": "less_than", "threshold": 3, "duration": "3d"}
        )
        assert by_window.window == by_duration.window == timedelta(days=3)
        assert by_window.time_window == "3d"
        assert by_duration.duration == "3d"

    def test_conflicting_window_aliases_are_rejected(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="disagree"):
            parse_condition(
                {
                    "metricKey": "mood_scale",
                    "operator": "less_than",
                    "threshold": 3,
                    "timeWindow": "3d",
                    "duration": "5d",
                }
            )

    def test_occurrences_and_consecutive_days_together_are_ambiguous(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="ambiguous"):
            parse_condition(
                {
                    "metricKey": "mood_scale",
                    "operator": "less_than",
                    "threshold": 3,
                    "occurrences": 2,
                    "consecutiveDays": 3,
                }
            )

    @pytest.mark.parametrize(
        "counter",
        [{"occurrences": 3}, {"consecutiveDays": 2}],
    )
    @pytest.mark.parametrize("alias", ["timeWindow", "duration"])
    def test_immediate_window_cannot_count_observations(
        self, alias: str, counter: dict[str, int]
    ) -> None:
        with pytest.raises(InvalidRuleExpression, match="immediate window"):
            parse_condition(
                {
                    "metricKey": "pain_scale_0_10",
                    "operator": "greater_than",
                    "threshold": 7,
                    alias: "immediate",
                    **counter,
                }
            )

    def test_immediate_window_alone_is_accepted(self) -> None:
        condition = parse_condition(
            {"metricKey": "pain_scale_0_10", "operator": "greater_than", "threshold": 7, "timeWindow": "immediate"}
        )
        assert condition.is_immediate
        assert condition.window is None

    def test_immediate_trend_is_rejected(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="immediate window"):
            parse_condition(
                {
                    "metricKey": "pain_scale_0_10",
                    "operator": "trend_increasing",
                    "occurrences": 3,
                    "timeWindow": "immediate",
                }
            )

    def test_comparison_requires_numeric_threshold(self) -> None:
        with pytest.raises(InvalidRuleExpression) as exc_info:
            parse_condition({"metricKey": "mood_scale", "operator": "less_than", "threshold": "3"})
        assert exc_info.value.field == "threshold"

    def test_unknown_operator_is_rejected(self) -> None:
        with pytest.raises(InvalidRuleExpression):
            parse_condition({"metricKey": "mood_scale", "operator": "between", "threshold": 3})

    def test_non_dict_expression_is_rejected(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="object"):
            parse_condition(["pain_scale_0_10", ">", 8])  # type: ignore[arg-type]

    def test_equality_needs_exactly_one_target(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="requires a threshold or a value"):
            parse_condition({"metricKey": "fall_occurred", "operator": "equals"})
        with pytest.raises(InvalidRuleExpression, match="not both"):
            parse_condition(
                {"metricKey": "mood_scale", "operator": "equal", "threshold": 3, "value": "3"}
            )

    def test_equality_value_target(self) -> None:
        condition = parse_condition(
            {"metricKey": "fall_occurred", "operator": "equals", "value": "true"}
        )
        assert isinstance(condition, EqualityCondition)
        assert condition.target == "true"

    def test_contains_needs_a_non_empty_value(self) -> None:
        condition = parse_condition({"metricKey": "pain_notes", "operator": "contains", "value": "sharp"})
        assert isinstance(condition, ContainsCondition)
        with pytest.raises(InvalidRuleExpression):
            parse_condition({"metricKey": "pain_notes", "operator": "contains", "value": ""})

    def test_trend_requires_occurrences(self) -> None:
        with pytest.raises(InvalidRuleExpression):
            parse_condition({"metricKey": "pain_scale_0_10", "operator": "trend_increasing"})
        condition = parse_condition(
            {"metricKey": "pain_scale_0_10", "operator": "trend_decreasing", "occurrences": 3}
        )
        assert isinstance(condition, TrendCondition)
        assert not condition.increasing

    def test_no_assessment_for_becomes_missing_data(self) -> None:
        raw = {"condition": "no_assessment_for", "operator": "greater_than", "threshold": 24}
        condition = parse_condition(raw)
        assert isinstance(condition, MissingDataCondition)
        assert condition.applies_to_all_metrics
        assert condition.max_gap == timedelta(hours=24)
        # The stored expression is never rewritten.
        assert raw["operator"] == "greater_than"

    def test_no_assessment_for_rejects_non_comparison_operators(self) -> None:
        with pytest.raises(InvalidRuleExpression) as exc_info:
            parse_condition({"condition": "no_assessment_for", "operator": "contains", "value": "x"})
        assert exc_info.value.field == "operator"

    def test_missing_data_threshold_must_be_positive(self) -> None:
        with pytest.raises(InvalidRuleExpression, match="positive"):
            parse_condition({"metricKey": "pain_scale_0_10", "operator": "missing_data", "threshold": 0})

    def test_parsed_conditions_are_frozen(self) -> None:
        condition = parse_condition(
            {"metricKey": "pain_scale_0_10", "operator": "greater_than", "threshold": 7}
        )
        with pytest.raises(ValueError, match="frozen"):
            condition.threshold = 9  # type: ignore[misc]

    def test_every_catalog_template_parses_and_validates(self) -> None:
        for template in rule_templates():
            condition = parse_condition(template.conditions)
            target = None if isinstance(condition, MissingDataCondition) else metric(condition.metric_key)
            validate_condition(condition, target)


class TestValidateCondition:
    """Operators must be coherent with the metric's value type."""

    def test_numeric_operator_on_text_metric_is_rejected(self) -> None:
        condition = parse_condition({"metricKey": "pain_notes", "operator": "greater_than", "threshold": 3})
        with pytest.raises(InvalidRuleExpression) as exc_info:
            validate_condition(condition, metric("pain_notes"))
        assert exc_info.value.field == "operator"

    def test_contains_on_numeric_metric_is_rejected(self) -> None:
        condition = parse_condition({"metricKey": "mood_scale", "operator": "contains", "value": "3"})
        with pytest.raises(InvalidRuleExpression, match="contains needs"):
            validate_condition(condition, metric("mood_scale"))

    def test_categorical_value_must_be_an_option(self) -> None:
        ok = parse_condition({"metricKey": "pain_location", "operator": "equals", "value": "Knee"})
        validate_condition(ok, metric("pain_location"))

        bad = parse_condition({"metricKey": "pain_location", "operator": "equals", "value": "elbow"})
        with pytest.raises(InvalidRuleExpression, match="not an option"):
            validate_condition(bad, metric("pain_location"))

    def test_boolean_metric_accepts_only_boolean_values(self) -> None:
        validate_condition(
            parse_condition({"metricKey": "fall_occurred", "operator": "equals", "value": True}),
            metric("fall_occurred"),
        )
        with pytest.raises(InvalidRuleExpression, match="not boolean"):
            validate_condition(
                parse_condition({"metricKey": "fall_occurred", "operator": "equals", "value": "maybe"}),
                metric("fall_occurred"),
            )

    def test_numeric_threshold_on_categorical_metric_is_rejected(self) -> None:
        condition = parse_condition({"metricKey": "pain_location", "operator": "equal", "threshold": 1})
        with pytest.raises(InvalidRuleExpression) as exc_info:
            validate_condition(condition, metric("pain_location"))
        assert exc_info.value.field == "threshold"

    def test_metric_is_required_except_for_no_assessment_for(self) -> None:
        validate_condition(
            parse_condition({"condition": "no_assessment_for", "threshold": 48}), None
        )
        with pytest.raises(InvalidRuleExpression, match="required"):
            validate_condition(
                parse_condition({"metricKey": "mood_scale", "operator": "less_than", "threshold": 3}),
                None,
            )
