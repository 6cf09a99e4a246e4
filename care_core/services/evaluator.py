"""
Rule evaluation: validate → aggregate → compare → explain.

Each condition variant is matched exhaustively; the result carries a
TriggerContext (observations, window, observed value, normalised deviation)
that the dispatcher uses for dedup and risk scoring.

Invalid persisted rules and unknown metrics come back as error Results so the
engine can log and skip them without aborting the rest of the rule set.
"""

import operator
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, time
from typing import Any

import structlog

from care_core.domain.conditions import (
    ComparisonCondition,
    Condition,
    ContainsCondition,
    EqualityCondition,
    MissingDataCondition,
    TrendCondition,
    parse_condition,
    parse_cooldown,
    validate_condition,
)
from care_core.domain.errors import CareMonitorError, InvalidRuleExpression, UnknownMetric
from care_core.domain.models import (
    NUMBER_LIKE_TYPES,
    AlertRule,
    Enrollment,
    MetricDefinition,
    Observation,
    TriggerContext,
)
from care_core.services.aggregator import (
    Predicate,
    TimeWindowAggregator,
    WindowSlice,
    consecutive_day_streak,
    matching_observations,
    trailing_trend_run,
)
from care_core.services.explanations import explain_condition
from care_core.services.stores import MetricRegistry, Result

logger = structlog.get_logger(__name__)

_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "greater_than": operator.gt,
    "greater_than_or_equal": operator.ge,
    "less_than": operator.lt,
    "less_than_or_equal": operator.le,
}


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating one rule for one enrollment at one instant."""

    rule: AlertRule
    enrollment_id: str
    condition: Condition
    metric: MetricDefinition | None
    triggered: bool
    explanation: str
    evaluated_at: datetime
    context: TriggerContext | None = None


def _canonical(value: Any, metric: MetricDefinition | None) -> Any:
    """Normalise an observation value or rule value for equality checks."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return float(value)

    text = str(value).strip()
    if metric is not None:
        for option in metric.options:
            if text.casefold() in (str(option.value).casefold(), option.label.casefold()):
                return _canonical(option.value, None)
        if metric.value_type in NUMBER_LIKE_TYPES:
            try:
                return float(text)
            except ValueError:
                pass
    return text.casefold()


def build_predicate(condition: Condition, metric: MetricDefinition | None) -> Predicate:
    """Instant comparison of a single observation against the condition."""
    match condition:
        case ComparisonCondition():
            compare = _COMPARATORS[condition.operator]
            threshold = float(condition.threshold)

            def numeric_check(obs: Observation) -> bool:
                value = obs.numeric_value()
                return value is not None and compare(value, threshold)

            return numeric_check

        case EqualityCondition():
            target = _canonical(condition.target, metric)
            negate = condition.operator == "not_equal"

            def equality_check(obs: Observation) -> bool:
                return (_canonical(obs.value, metric) == target) != negate

            return equality_check

        case ContainsCondition():
            needle = condition.value.casefold()

            def contains_check(obs: Observation) -> bool:
                return isinstance(obs.value, str) and needle in obs.value.casefold()

            return contains_check

        case TrendCondition() | MissingDataCondition():
            raise InvalidRuleExpression(
                f"{condition.operator} has no instant comparison", field="operator"
            )


def _denominator(metric: MetricDefinition | None, reference: float) -> float:
    span = metric.scale_span if metric is not None else None
    if span:
        return span
    if reference:
        return abs(reference)
    return 1.0


def _exceedance(condition: ComparisonCondition, value: float) -> float:
    if condition.operator.startswith("greater"):
        return max(0.0, value - condition.threshold)
    return max(0.0, condition.threshold - value)


class RuleEvaluator:
    """Evaluates alert rules for an enrollment against its observation history."""

    def __init__(self, aggregator: TimeWindowAggregator, metrics: MetricRegistry) -> None:
        self.aggregator = aggregator
        self.metrics = metrics
        self.logger = logger.bind(component="rule_evaluator")

    async def resolve(
        self, rule: AlertRule
    ) -> Result[tuple[Condition, MetricDefinition | None], CareMonitorError]:
        """Parse a rule's expression and look up the metric it targets."""
        try:
            condition = parse_condition(rule.conditions)
            if rule.cooldown:
                parse_cooldown(rule.cooldown)
        except InvalidRuleExpression as e:
            return Result.err(e)

        metric: MetricDefinition | None = None
        if not (isinstance(condition, MissingDataCondition) and condition.applies_to_all_metrics):
            metric = await self.metrics.get_metric_by_key(condition.metric_key)
            if metric is None:
                return Result.err(UnknownMetric(condition.metric_key))

        try:
            validate_condition(condition, metric)
        except InvalidRuleExpression as e:
            return Result.err(e)
        return Result.ok((condition, metric))

    async def evaluate(
        self, rule: AlertRule, enrollment: Enrollment, now: datetime
    ) -> Result[Evaluation, CareMonitorError]:
        resolved = await self.resolve(rule)
        if resolved.is_err():
            return Result.err(resolved.unwrap_err())
        condition, metric = resolved.unwrap()

        explanation = explain_condition(condition, metric)
        match condition:
            case MissingDataCondition():
                context = await self._evaluate_missing_data(condition, enrollment, now)
            case TrendCondition():
                window = await self.aggregator.load_window(
                    enrollment.id, condition.metric_key, condition, now
                )
                context = self._evaluate_trend(condition, metric, window)
            case ComparisonCondition() | EqualityCondition() | ContainsCondition():
                window = await self.aggregator.load_window(
                    enrollment.id, condition.metric_key, condition, now
                )
                context = self._evaluate_instant(condition, metric, window)

        evaluation = Evaluation(
            rule=rule,
            enrollment_id=enrollment.id,
            condition=condition,
            metric=metric,
            triggered=context is not None,
            explanation=explanation,
            evaluated_at=now,
            context=context,
        )
        self.logger.debug(
            "rule_evaluated",
            rule_id=rule.id,
            enrollment_id=enrollment.id,
            triggered=evaluation.triggered,
            explanation=explanation,
        )
        return Result.ok(evaluation)

    def _evaluate_instant(
        self,
        condition: ComparisonCondition | EqualityCondition | ContainsCondition,
        metric: MetricDefinition | None,
        window: WindowSlice,
    ) -> TriggerContext | None:
        predicate = build_predicate(condition, metric)

        if condition.consecutive_days:
            streak = consecutive_day_streak(window, predicate)
            if streak.days < condition.consecutive_days:
                return None
            matches = list(streak.matches)
        elif condition.is_immediate:
            latest = window.latest
            if latest is None or not predicate(latest):
                return None
            matches = [latest]
        else:
            matches = matching_observations(window, predicate)
            if len(matches) < condition.required_count:
                return None

        observed = matches[-1]
        deviation = 0.0
        if isinstance(condition, ComparisonCondition):
            values = [obs.numeric_value() or 0.0 for obs in matches]
            worst = max(range(len(values)), key=lambda i: _exceedance(condition, values[i]))
            observed = matches[worst]
            deviation = _exceedance(condition, values[worst]) / _denominator(
                metric, float(condition.threshold)
            )

        return TriggerContext(
            metric_key=condition.metric_key,
            observation_ids=tuple(obs.id for obs in matches),
            window_start=window.start,
            window_end=max(obs.recorded_at for obs in matches),
            observed_value=observed.value,
            deviation=deviation,
        )

    def _evaluate_trend(
        self, condition: TrendCondition, metric: MetricDefinition | None, window: WindowSlice
    ) -> TriggerContext | None:
        run = trailing_trend_run(window, increasing=condition.increasing)
        if run.steps < condition.occurrences:
            return None

        first = run.observations[0].numeric_value() or 0.0
        last = run.observations[-1].numeric_value() or 0.0
        return TriggerContext(
            metric_key=condition.metric_key,
            observation_ids=tuple(obs.id for obs in run.observations),
            window_start=window.start,
            window_end=run.observations[-1].recorded_at,
            observed_value=run.observations[-1].value,
            deviation=abs(last - first) / _denominator(metric, first),
        )

    async def _evaluate_missing_data(
        self, condition: MissingDataCondition, enrollment: Enrollment, now: datetime
    ) -> TriggerContext | None:
        metric_key = None if condition.applies_to_all_metrics else condition.metric_key
        latest = await self.aggregator.latest_observation(enrollment.id, metric_key, now)
        reference = (
            latest.recorded_at
            if latest is not None
            else datetime.combine(enrollment.start_date, time.min, tzinfo=UTC)
        )
        deadline = reference + condition.max_gap
        if now < deadline:
            return None

        hours_since = (now - reference).total_seconds() / 3600
        return TriggerContext(
            metric_key=condition.metric_key,
            observation_ids=(latest.id,) if latest is not None else (),
            window_start=reference,
            window_end=deadline,
            observed_value=round(hours_since, 1),
            deviation=(now - deadline) / condition.max_gap,
        )
