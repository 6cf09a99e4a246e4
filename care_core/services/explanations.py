"""
Human-readable rendering of rule conditions and alert messages.

Rendering is pure and total: every parsed condition renders a non-empty
string, and an unknown metric falls back to its raw key.
"""

from datetime import datetime
from typing import Any

from care_core.domain.conditions import (
    IMMEDIATE,
    ComparisonCondition,
    Condition,
    ContainsCondition,
    EqualityCondition,
    MissingDataCondition,
    TrendCondition,
)
from care_core.domain.models import AlertRule, MetricDefinition

OPERATOR_SYMBOLS: dict[str, str] = {
    "greater_than": ">",
    "greater_than_or_equal": "≥",
    "less_than": "<",
    "less_than_or_equal": "≤",
    "equal": "=",
    "equals": "=",
    "not_equal": "≠",
    "trend_increasing": "trending upward",
    "trend_decreasing": "trending downward",
    "missing_data": "has missing data",
    "contains": "contains",
}


def metric_label(metric_key: str, metric: MetricDefinition | None) -> str:
    if metric is not None and metric.display_name:
        return metric.display_name
    return metric_key


def _percentage_like(metric_key: str, metric: MetricDefinition | None) -> bool:
    if metric is not None:
        return metric.is_percentage_like
    return metric_key.endswith("_rate")


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def format_threshold(threshold: int | float, metric_key: str, metric: MetricDefinition | None) -> str:
    if _percentage_like(metric_key, metric) and 0 <= threshold <= 1:
        return f"{threshold * 100:.0f}%"
    unit = metric.unit if metric is not None else None
    return f"{threshold} {unit}" if unit else str(threshold)


def _format_hours(hours: int | float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)


def explain_condition(condition: Condition, metric: MetricDefinition | None = None) -> str:
    """Render a condition, e.g. 'Pain Scale (0-10) ≥ 8 (24h) (3 times)'."""
    name = metric_label(condition.metric_key, metric)

    if isinstance(condition, MissingDataCondition):
        hours = _format_hours(condition.threshold)
        if condition.applies_to_all_metrics:
            return f"No assessment for {hours}+ hours"
        return f"{name} has missing data for {hours}+ hours"

    text = f"{name} {OPERATOR_SYMBOLS[condition.operator]}"

    match condition:
        case ComparisonCondition():
            text += f" {format_threshold(condition.threshold, condition.metric_key, metric)}"
        case EqualityCondition() if condition.threshold is not None:
            text += f" {format_threshold(condition.threshold, condition.metric_key, metric)}"
        case EqualityCondition() | ContainsCondition():
            text += f' "{format_value(condition.value)}"'
        case TrendCondition():
            pass

    if condition.window_spec and condition.window_spec.strip().lower() != IMMEDIATE:
        text += f" ({condition.window_spec})"

    if condition.consecutive_days:
        text += f" for {condition.consecutive_days} consecutive days"
    elif isinstance(condition, TrendCondition):
        text += f" for {condition.occurrences} consecutive periods"
    elif condition.occurrences:
        text += f" ({condition.occurrences} times)"

    return text


def alert_message(
    rule: AlertRule,
    condition: Condition,
    metric: MetricDefinition | None,
    observed_value: Any,
) -> str:
    """Short clinician-facing line, e.g. 'High Pain Alert: Pain Scale (0-10) is 9'."""
    headline = rule.description or rule.name
    name = metric_label(condition.metric_key, metric)

    if isinstance(condition, MissingDataCondition):
        subject = "assessments" if condition.applies_to_all_metrics else name
        if isinstance(observed_value, int | float):
            return f"{headline}: no {subject} recorded for {observed_value:.0f} hours"
        return f"{headline}: no {subject} recorded"

    unit = f" {metric.unit}" if metric is not None and metric.unit else ""
    return f"{headline}: {name} is {format_value(observed_value)}{unit}"
