"""
Observation ingestion: validate → coerce → append → evaluate.

Fails closed: an unknown metric or a value that does not fit the metric's
value type is rejected before anything is stored. Rule evaluation completes
before `ingest` returns, so a successful call means the write was seen by
every rule of the enrollment.
"""

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from typing import Any, TypeVar

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from care_core.domain.errors import InvalidObservationValue, NotFound, UnknownMetric
from care_core.domain.models import (
    MetricDefinition,
    Observation,
    ObservationSource,
    ObservationValue,
    ValueType,
    utc_now,
)
from care_core.services.alert_engine import AlertEngine, EvaluationReport
from care_core.services.stores import EnrollmentStore, MetricRegistry, ObservationStore

logger = structlog.get_logger(__name__)

TemporalT = TypeVar("TemporalT", date, time, datetime)


class ObservationPayload(BaseModel):
    """Inbound observation as sent by clients (camelCase or snake_case)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enrollment_id: str = Field(validation_alias=AliasChoices("enrollmentId", "enrollment_id"))
    patient_id: str = Field(validation_alias=AliasChoices("patientId", "patient_id"))
    metric_definition_id: str = Field(
        validation_alias=AliasChoices("metricDefinitionId", "metric_definition_id")
    )
    value: Any
    source: ObservationSource
    recorded_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("recordedAt", "recorded_at")
    )


@dataclass(frozen=True)
class IngestionResult:
    observation: Observation
    report: EvaluationReport


def _reject(metric: MetricDefinition, value: Any, reason: str = "") -> InvalidObservationValue:
    detail = f": {reason}" if reason else ""
    return InvalidObservationValue(
        f"value {value!r} is not a valid {metric.value_type.value} for metric {metric.key}{detail}"
    )


def _as_number(value: Any, metric: MetricDefinition) -> int | float:
    if isinstance(value, bool):
        raise _reject(metric, value)
    if isinstance(value, int | float):
        number = value
    elif isinstance(value, str):
        for option in metric.options:
            if value.strip().casefold() == option.label.casefold() and not isinstance(
                option.value, str
            ):
                return option.value
        try:
            number = float(value)
        except ValueError:
            raise _reject(metric, value) from None
        if number.is_integer() and "." not in value:
            number = int(number)
    else:
        raise _reject(metric, value)

    if not math.isfinite(number):
        raise _reject(metric, value, "not a finite number")
    if metric.scale_min is not None and number < metric.scale_min:
        raise _reject(metric, value, f"below scale minimum {metric.scale_min}")
    if metric.scale_max is not None and number > metric.scale_max:
        raise _reject(metric, value, f"above scale maximum {metric.scale_max}")
    return number


def coerce_value(value: Any, metric: MetricDefinition) -> ObservationValue:
    """Convert a raw payload value into the Python type of the metric's value type."""
    match metric.value_type:
        case ValueType.NUMERIC | ValueType.ORDINAL:
            return _as_number(value, metric)
        case ValueType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
                return value.strip().lower() == "true"
            raise _reject(metric, value)
        case ValueType.CATEGORICAL:
            if not isinstance(value, str | int | float) or isinstance(value, bool):
                raise _reject(metric, value)
            if not metric.options:
                return str(value)
            for option in metric.options:
                if str(value).casefold() in (str(option.value).casefold(), option.label.casefold()):
                    return str(option.value)
            raise _reject(metric, value, "not one of the declared options")
        case ValueType.TEXT:
            if not isinstance(value, str):
                raise _reject(metric, value)
            return value
        case ValueType.DATETIME:
            parsed = _parse_temporal(value, datetime, metric)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        case ValueType.DATE:
            if isinstance(value, datetime):
                raise _reject(metric, value)
            return _parse_temporal(value, date, metric)
        case ValueType.TIME:
            return _parse_temporal(value, time, metric)


def _parse_temporal(
    value: Any, kind: type[TemporalT], metric: MetricDefinition
) -> TemporalT:
    if isinstance(value, kind):
        return value
    if isinstance(value, str):
        try:
            return kind.fromisoformat(value)
        except ValueError:
            pass
    raise _reject(metric, value)


class ObservationIngestor:
    """Entry point for observation writes."""

    def __init__(
        self,
        metrics: MetricRegistry,
        observations: ObservationStore,
        enrollments: EnrollmentStore,
        engine: AlertEngine,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.metrics = metrics
        self.observations = observations
        self.enrollments = enrollments
        self.engine = engine
        self.clock = clock
        self.logger = logger.bind(component="observation_ingestor")

    async def _resolve_metric(self, metric_ref: str) -> MetricDefinition:
        metric = await self.metrics.get_metric(metric_ref)
        if metric is None:
            metric = await self.metrics.get_metric_by_key(metric_ref)
        if metric is None:
            raise UnknownMetric(metric_ref)
        return metric

    async def ingest(self, payload: ObservationPayload | Mapping[str, Any]) -> IngestionResult:
        if not isinstance(payload, ObservationPayload):
            payload = ObservationPayload.model_validate(payload)

        metric = await self._resolve_metric(payload.metric_definition_id)
        enrollment = await self.enrollments.get_enrollment(payload.enrollment_id)
        if enrollment is None:
            raise NotFound("Enrollment", payload.enrollment_id)
        if enrollment.patient_id != payload.patient_id:
            raise NotFound(f"Enrollment for patient {payload.patient_id}", payload.enrollment_id)

        value = coerce_value(payload.value, metric)
        recorded_at = payload.recorded_at or self.clock()
        if recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=UTC)

        observation = Observation(
            patient_id=payload.patient_id,
            enrollment_id=enrollment.id,
            organization_id=enrollment.organization_id,
            metric_id=metric.id,
            metric_key=metric.key,
            value_type=metric.value_type,
            value=value,
            source=payload.source,
            recorded_at=recorded_at,
            created_at=self.clock(),
        )
        await self.observations.append(observation)
        self.logger.info(
            "observation_ingested",
            observation_id=observation.id,
            enrollment_id=enrollment.id,
            metric_key=metric.key,
            source=payload.source.value,
        )

        report = await self.engine.evaluate_observation(observation)
        return IngestionResult(observation=observation, report=report)
