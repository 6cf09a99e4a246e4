"""
Tests for observation ingestion: value coercion per metric type, rejection
of bad writes (including non-finite numbers), and evaluation completing
before `ingest` returns.
"""

from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import pytest

from adapters.memory.stores import MemoryBackend
from adapters.rtm.catalog import standard_metrics
from care_core.domain.errors import InvalidObservationValue, NotFound, UnknownMetric
from care_core.domain.models import EnrollmentStatus, MetricDefinition, MetricOption, ValueType
from care_core.services.alert_engine import AlertEngine
from care_core.services.ingestion import ObservationIngestor, ObservationPayload, coerce_value
from conftest import T0, FakeClock, make_enrollment

METRICS = {metric.key: metric for metric in standard_metrics()}


def payload(metric_ref: str, value: Any, **overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "enrollmentId": "enr-1",
        "patientId": "pat-1",
        "metricDefinitionId": metric_ref,
        "value": value,
        "source": "patient",
        "recordedAt": T0.isoformat(),
    }
    body.update(overrides)
    return body


@pytest.fixture
def ingestor(backend: MemoryBackend, engine: AlertEngine, clock: FakeClock) -> ObservationIngestor:
    backend.enrollments.add_enrollment(make_enrollment(condition_preset_id="chronic_pain_management"))
    return ObservationIngestor(backend.metrics, backend.observations, backend.enrollments, engine, clock)


class TestCoerceValue:
    """Raw payload values become the Python type of the metric's value type."""

    @pytest.mark.parametrize("raw,expected", [(7, 7), ("7", 7), ("7.5", 7.5), (0, 0), (10.0, 10.0)])
    def test_numeric(self, raw: Any, expected: float) -> None:
        assert coerce_value(raw, METRICS["pain_scale_0_10"]) == expected

    @pytest.mark.parametrize("raw", [11, -1, "eleven", True, None, [7]])
    def test_numeric_rejections(self, raw: Any) -> None:
        with pytest.raises(InvalidObservationValue):
            coerce_value(raw, METRICS["pain_scale_0_10"])

    @pytest.mark.parametrize(
        "raw", ["nan", "NaN", float("nan"), "inf", "-Infinity", float("inf"), float("-inf")]
    )
    def test_non_finite_numbers_are_rejected(self, raw: Any) -> None:
        weight = MetricDefinition(key="weight", display_name="Weight", value_type=ValueType.NUMERIC)

        with pytest.raises(InvalidObservationValue, match="finite"):
            coerce_value(raw, METRICS["pain_scale_0_10"])
        with pytest.raises(InvalidObservationValue, match="finite"):
            coerce_value(raw, weight)

    def test_ordinal_option_label_maps_to_its_value(self) -> None:
        effort = MetricDefinition(
            key="effort",
            display_name="Effort",
            value_type=ValueType.ORDINAL,
            options=(MetricOption(value=1, label="Low"), MetricOption(value=3, label="High")),
        )
        assert coerce_value("high", effort) == 3
        assert coerce_value(1, effort) == 1

    @pytest.mark.parametrize("raw,expected", [(True, True), ("false", False), (" TRUE ", True)])
    def test_boolean(self, raw: Any, expected: bool) -> None:
        assert coerce_value(raw, METRICS["fall_occurred"]) is expected

    @pytest.mark.parametrize("raw", [1, "yes", None])
    def test_boolean_rejections(self, raw: Any) -> None:
        with pytest.raises(InvalidObservationValue):
            coerce_value(raw, METRICS["fall_occurred"])

    def test_categorical_accepts_value_or_label(self) -> None:
        assert coerce_value("Lower back", METRICS["pain_location"]) == "lower_back"
        assert coerce_value("NECK", METRICS["pain_location"]) == "neck"
        with pytest.raises(InvalidObservationValue, match="declared options"):
            coerce_value("elbow", METRICS["pain_location"])

    def test_text_must_be_a_string(self) -> None:
        assert coerce_value("stiff in the morning", METRICS["pain_notes"]) == "stiff in the morning"
        with pytest.raises(InvalidObservationValue):
            coerce_value(42, METRICS["pain_notes"])

    def test_temporal_types(self) -> None:
        as_datetime = MetricDefinition(key="onset", display_name="Onset", value_type=ValueType.DATETIME)
        as_date = MetricDefinition(key="visit", display_name="Visit", value_type=ValueType.DATE)
        as_time = MetricDefinition(key="bedtime", display_name="Bedtime", value_type=ValueType.TIME)

        assert coerce_value("2025-01-06T09:00:00", as_datetime) == datetime(2025, 1, 6, 9, tzinfo=UTC)
        assert coerce_value("2025-01-06", as_date) == date(2025, 1, 6)
        assert coerce_value("22:30", as_time) == time(22, 30)
        with pytest.raises(InvalidObservationValue):
            coerce_value(datetime(2025, 1, 6, tzinfo=UTC), as_date)
        with pytest.raises(InvalidObservationValue):
            coerce_value("not a date", as_date)


class TestObservationIngestor:
    """Writes are validated, stored, then evaluated before returning."""

    @pytest.mark.asyncio
    async def test_ingest_by_metric_id_runs_evaluation(
        self, backend: MemoryBackend, ingestor: ObservationIngestor
    ) -> None:
        result = await ingestor.ingest(payload("metric_pain_scale_0_10", 9))

        assert result.observation.value == 9
        assert result.observation.metric_key == "pain_scale_0_10"
        assert result.observation.recorded_at == T0
        assert len(backend.observations) == 1
        # preset order: high_pain_threshold (priority 10) before pain_sudden_spike (9)
        assert [alert.rule_id for alert in result.report.alerts] == [
            "high_pain_threshold",
            "pain_sudden_spike",
        ]

    @pytest.mark.asyncio
    async def test_ingest_by_metric_key_with_snake_case_payload(
        self, backend: MemoryBackend, ingestor: ObservationIngestor
    ) -> None:
        body = ObservationPayload(
            enrollment_id="enr-1",
            patient_id="pat-1",
            metric_definition_id="pain_location",
            value="Knee",
            source="device",
        )
        result = await ingestor.ingest(body)

        assert result.observation.value == "knee"
        assert result.observation.recorded_at == T0
        assert result.report.alerts_created == 0

    @pytest.mark.asyncio
    async def test_naive_recorded_at_is_utc(self, ingestor: ObservationIngestor) -> None:
        result = await ingestor.ingest(payload("mood_scale", 5, recordedAt="2025-01-06T12:00:00"))
        assert result.observation.recorded_at == datetime(2025, 1, 6, 12, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_unknown_metric_is_rejected_before_storage(
        self, backend: MemoryBackend, ingestor: ObservationIngestor
    ) -> None:
        with pytest.raises(UnknownMetric):
            await ingestor.ingest(payload("heart_rate", 80))
        assert len(backend.observations) == 0

    @pytest.mark.asyncio
    async def test_invalid_value_is_rejected_before_storage(
        self, backend: MemoryBackend, ingestor: ObservationIngestor
    ) -> None:
        with pytest.raises(InvalidObservationValue):
            await ingestor.ingest(payload("pain_scale_0_10", "very bad"))
        assert len(backend.observations) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["NaN", "inf", float("nan")])
    async def test_non_finite_value_is_rejected_before_storage(
        self, backend: MemoryBackend, ingestor: ObservationIngestor, value: Any
    ) -> None:
        with pytest.raises(InvalidObservationValue):
            await ingestor.ingest(payload("pain_scale_0_10", value))
        assert len(backend.observations) == 0
        assert backend.alerts.all() == []

    @pytest.mark.asyncio
    async def test_write_to_completed_enrollment_is_stored_without_alerts(
        self, backend: MemoryBackend, ingestor: ObservationIngestor
    ) -> None:
        backend.enrollments.add_enrollment(
            make_enrollment(
                id="enr-done",
                status=EnrollmentStatus.COMPLETED,
                end_date=date(2025, 1, 2),
                condition_preset_id="chronic_pain_management",
            )
        )

        result = await ingestor.ingest(payload("pain_scale_0_10", 10, enrollmentId="enr-done"))

        assert result.observation.enrollment_id == "enr-done"
        assert len(backend.observations) == 1
        assert result.report.alerts_created == 0
        assert backend.alerts.all() == []
        assert backend.notifier.notified == []

    @pytest.mark.asyncio
    async def test_unknown_enrollment_or_wrong_patient(self, ingestor: ObservationIngestor) -> None:
        with pytest.raises(NotFound):
            await ingestor.ingest(payload("pain_scale_0_10", 3, enrollmentId="enr-404"))
        with pytest.raises(NotFound):
            await ingestor.ingest(payload("pain_scale_0_10", 3, patientId="pat-other"))

    @pytest.mark.asyncio
    async def test_created_at_comes_from_the_clock(self, ingestor: ObservationIngestor, clock: FakeClock) -> None:
        clock.now = T0 + timedelta(minutes=3)
        result = await ingestor.ingest(payload("pain_scale_0_10", 2))

        assert result.observation.created_at == T0 + timedelta(minutes=3)
