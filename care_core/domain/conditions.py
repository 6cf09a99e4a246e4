"""
Alert rule condition grammar.

A rule's `conditions` JSON is persisted exactly as authored. At validation and
evaluation time it is parsed into one variant of a discriminated union keyed
by `operator`, so every operator carries exactly the companion fields it
needs:

- ComparisonCondition:  greater_than, greater_than_or_equal, less_than, less_than_or_equal
- EqualityCondition:    equal, equals, not_equal
- ContainsCondition:    contains
- TrendCondition:       trend_increasing, trend_decreasing
- MissingDataCondition: missing_data (also any expression on `no_assessment_for`)

`timeWindow` and `duration` are kept as separate fields so the alias the
author used survives a round trip.
"""

import re
from datetime import timedelta
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from care_core.domain.errors import InvalidRuleExpression
from care_core.domain.models import (
    NUMBER_LIKE_TYPES,
    STRING_LIKE_TYPES,
    MetricDefinition,
    ValueType,
)

NO_ASSESSMENT_KEY = "no_assessment_for"
IMMEDIATE = "immediate"

Number = StrictInt | StrictFloat

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(m|min|mins|h|hr|hrs|d|w)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "m": "minutes",
    "min": "minutes",
    "mins": "minutes",
    "h": "hours",
    "hr": "hours",
    "hrs": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(text: str, field: str = "timeWindow") -> timedelta | None:
    """Parse '30m', '24h', '7d', '2w' into a timedelta; 'immediate' is None."""
    if text.strip().lower() == IMMEDIATE:
        return None
    match = _DURATION_RE.match(text)
    if not match:
        raise InvalidRuleExpression(f"Invalid duration {text!r}", field=field)
    amount, unit = int(match.group(1)), match.group(2).lower()
    if amount <= 0:
        raise InvalidRuleExpression(f"Duration {text!r} must be positive", field=field)
    return timedelta(**{_DURATION_UNITS[unit]: amount})


def parse_cooldown(text: str) -> timedelta:
    delta = parse_duration(text, field="cooldown")
    if delta is None:
        raise InvalidRuleExpression("cooldown cannot be 'immediate'", field="cooldown")
    return delta


class ConditionBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    metric_key: str = Field(
        min_length=1,
        validation_alias=AliasChoices("metricKey", "metric", "condition", "metric_key"),
    )
    time_window: str | None = Field(
        default=None, validation_alias=AliasChoices("timeWindow", "time_window")
    )
    duration: str | None = None
    cooldown: str | None = None
    occurrences: int | None = Field(default=None, ge=1)
    consecutive_days: int | None = Field(
        default=None, ge=1, validation_alias=AliasChoices("consecutiveDays", "consecutive_days")
    )
    description: str | None = None

    @model_validator(mode="after")
    def check_shared_fields(self) -> "ConditionBase":
        if self.time_window and self.duration and self.time_window != self.duration:
            raise ValueError("timeWindow and duration disagree; use one of them")
        if self.window_spec is not None:
            window = parse_duration(self.window_spec)
            if window is None and (
                self.occurrences is not None or self.consecutive_days is not None
            ):
                raise ValueError(
                    "an immediate window looks at one observation; "
                    "it cannot be combined with occurrences or consecutiveDays"
                )
        if self.cooldown is not None:
            parse_cooldown(self.cooldown)
        if self.consecutive_days is not None and self.occurrences is not None:
            raise ValueError(
                "consecutiveDays and occurrences are both set; which one governs the count is ambiguous"
            )
        return self

    @property
    def window_spec(self) -> str | None:
        return self.time_window or self.duration

    @property
    def window(self) -> timedelta | None:
        """Aggregation interval; None means no interval bound."""
        if self.window_spec is None:
            return None
        return parse_duration(self.window_spec)

    @property
    def is_immediate(self) -> bool:
        """True when only the most recent observation should be looked at."""
        return self.window is None and self.occurrences is None and self.consecutive_days is None

    @property
    def cooldown_delta(self) -> timedelta | None:
        if self.cooldown is None:
            return None
        return parse_cooldown(self.cooldown)

    @property
    def required_count(self) -> int:
        return self.occurrences or 1


class ComparisonCondition(ConditionBase):
    operator: Literal[
        "greater_than", "greater_than_or_equal", "less_than", "less_than_or_equal"
    ]
    threshold: Number


class EqualityCondition(ConditionBase):
    operator: Literal["equal", "equals", "not_equal"]
    threshold: Number | None = None
    value: StrictStr | StrictBool | None = None

    @model_validator(mode="after")
    def needs_threshold_or_value(self) -> "EqualityCondition":
        if self.threshold is None and self.value is None:
            raise ValueError(f"{self.operator} requires a threshold or a value")
        if self.threshold is not None and self.value is not None:
            raise ValueError(f"{self.operator} takes a threshold or a value, not both")
        return self

    @property
    def target(self) -> Any:
        return self.value if self.value is not None else self.threshold


class ContainsCondition(ConditionBase):
    operator: Literal["contains"]
    value: StrictStr = Field(min_length=1)


class TrendCondition(ConditionBase):
    operator: Literal["trend_increasing", "trend_decreasing"]
    occurrences: int = Field(ge=1)
    threshold: Number | None = None

    @property
    def increasing(self) -> bool:
        return self.operator == "trend_increasing"


class MissingDataCondition(ConditionBase):
    operator: Literal["missing_data"]
    threshold: Number = Field(description="Hours since the last observation")

    @model_validator(mode="after")
    def threshold_is_positive(self) -> "MissingDataCondition":
        if self.threshold <= 0:
            raise ValueError("missing_data threshold must be a positive number of hours")
        return self

    @property
    def applies_to_all_metrics(self) -> bool:
        return self.metric_key == NO_ASSESSMENT_KEY

    @property
    def max_gap(self) -> timedelta:
        return timedelta(hours=self.threshold)


Condition = Annotated[
    ComparisonCondition
    | EqualityCondition
    | ContainsCondition
    | TrendCondition
    | MissingDataCondition,
    Field(discriminator="operator"),
]

_condition_adapter: TypeAdapter[Condition] = TypeAdapter(Condition)

COMPARISON_OPERATORS = frozenset(
    {"greater_than", "greater_than_or_equal", "less_than", "less_than_or_equal"}
)


def _metric_key_of(expression: dict[str, Any]) -> Any:
    for alias in ("metricKey", "metric", "condition", "metric_key"):
        if alias in expression:
            return expression[alias]
    return None


def parse_condition(expression: dict[str, Any]) -> Condition:
    """Parse a raw expression into its typed variant.

    The input dict is never modified; `no_assessment_for` expressions are
    read as missing-data conditions regardless of the operator they were
    authored with.
    """
    if not isinstance(expression, dict):
        raise InvalidRuleExpression("Condition expression must be an object")

    candidate = dict(expression)
    if _metric_key_of(candidate) == NO_ASSESSMENT_KEY:
        if candidate.get("operator") not in (None, "missing_data", *COMPARISON_OPERATORS):
            raise InvalidRuleExpression(
                f"{NO_ASSESSMENT_KEY} does not support operator {candidate.get('operator')!r}",
                field="operator",
            )
        candidate["operator"] = "missing_data"

    try:
        return _condition_adapter.validate_python(candidate)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"][1:]) or None
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'expression'}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidRuleExpression(messages, field=field) from exc


def _option_values(metric: MetricDefinition) -> set[str]:
    accepted: set[str] = set()
    for option in metric.options:
        accepted.add(str(option.value).casefold())
        accepted.add(option.label.casefold())
    return accepted


def _check_value_for_metric(value: Any, metric: MetricDefinition) -> None:
    value_type = metric.value_type
    if value_type == ValueType.BOOLEAN:
        if isinstance(value, bool) or str(value).strip().lower() in {"true", "false"}:
            return
        raise InvalidRuleExpression(
            f"value {value!r} is not boolean for metric {metric.key}", field="value"
        )
    if isinstance(value, bool):
        raise InvalidRuleExpression(
            f"boolean value does not match {value_type.value} metric {metric.key}", field="value"
        )
    if metric.options and value_type in (ValueType.CATEGORICAL, ValueType.ORDINAL):
        if str(value).casefold() not in _option_values(metric):
            raise InvalidRuleExpression(
                f"value {value!r} is not an option of metric {metric.key}", field="value"
            )
        return
    if value_type == ValueType.NUMERIC:
        try:
            float(value)
        except ValueError:
            raise InvalidRuleExpression(
                f"value {value!r} is not numeric for metric {metric.key}", field="value"
            ) from None


def validate_condition(condition: Condition, metric: MetricDefinition | None) -> None:
    """Check a parsed condition against the value type of the metric it targets.

    `metric` may only be None for `no_assessment_for` expressions, which look
    at every metric of the enrollment.
    """
    if metric is None:
        if isinstance(condition, MissingDataCondition) and condition.applies_to_all_metrics:
            return
        raise InvalidRuleExpression(
            f"Metric {condition.metric_key} is required for operator {condition.operator}",
            field="metricKey",
        )

    value_type = metric.value_type
    match condition:
        case ComparisonCondition() | TrendCondition():
            if value_type not in NUMBER_LIKE_TYPES:
                raise InvalidRuleExpression(
                    f"{condition.operator} needs a numeric metric; "
                    f"{metric.key} is {value_type.value}",
                    field="operator",
                )
        case EqualityCondition():
            if condition.threshold is not None and value_type not in NUMBER_LIKE_TYPES:
                raise InvalidRuleExpression(
                    f"numeric threshold does not match {value_type.value} metric {metric.key}",
                    field="threshold",
                )
            if condition.value is not None:
                _check_value_for_metric(condition.value, metric)
        case ContainsCondition():
            if value_type not in STRING_LIKE_TYPES:
                raise InvalidRuleExpression(
                    f"contains needs a text or categorical metric; "
                    f"{metric.key} is {value_type.value}",
                    field="operator",
                )
        case MissingDataCondition():
            pass
