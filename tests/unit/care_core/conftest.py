"""Shared fixtures: a controllable clock and an in-memory backend seeded with the RTM catalog."""

from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from adapters.memory.stores import MemoryBackend
from adapters.rtm.catalog import (
    billing_programs,
    chronic_pain_preset,
    rule_templates,
    standard_metrics,
)
from care_core.config import AlertingConfig, AppConfig
from care_core.domain.models import Enrollment, Observation, ObservationSource
from care_core.services.alert_engine import AlertEngine

ORG_ID = "org-test"
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryBackend:
    """In-memory collaborators seeded with the standard metrics, templates and programs."""
    backend = MemoryBackend()
    for metric in standard_metrics():
        backend.metrics.register(metric)
    for template in rule_templates():
        backend.rules.add_template(template)
    backend.rules.add_preset(chronic_pain_preset())
    for program in billing_programs():
        backend.enrollments.add_program(program)
    return backend


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        alerting=AlertingConfig(dispatch_retry_attempts=3, dispatch_retry_backoff_seconds=0.0)
    )


@pytest.fixture
def engine(backend: MemoryBackend, clock: FakeClock, app_config: AppConfig) -> AlertEngine:
    return AlertEngine(
        metrics=backend.metrics,
        observations=backend.observations,
        enrollments=backend.enrollments,
        rules=backend.rules,
        alerts=backend.alerts,
        notifier=backend.notifier,
        config=app_config,
        clock=clock,
    )


def make_enrollment(**overrides: Any) -> Enrollment:
    fields: dict[str, Any] = {
        "id": "enr-1",
        "patient_id": "pat-1",
        "clinician_id": "clin-1",
        "organization_id": ORG_ID,
        "patient_name": "Ada Lovelace",
        "start_date": date(2025, 1, 1),
    }
    fields.update(overrides)
    return Enrollment(**fields)


def make_observation(
    value: Any,
    recorded_at: datetime,
    metric_key: str = "pain_scale_0_10",
    enrollment_id: str = "enr-1",
    source: ObservationSource = ObservationSource.PATIENT,
    value_type: str = "numeric",
) -> Observation:
    return Observation(
        patient_id="pat-1",
        enrollment_id=enrollment_id,
        organization_id=ORG_ID,
        metric_id=f"metric_{metric_key}",
        metric_key=metric_key,
        value_type=value_type,
        value=value,
        source=source,
        recorded_at=recorded_at,
    )
