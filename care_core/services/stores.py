"""
Collaborator protocols and shared service plumbing.

Key patterns:
- Protocol-based dependency injection for every external collaborator
  (observation store, enrollment store, rule store, alert store, notifier)
- Generic Result type for expected failures (a bad rule is skipped, not raised)
- Structured logging configured once for the whole service layer
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Generic, Protocol, TypeVar

import structlog

from care_core.domain.models import (
    Alert,
    AlertRule,
    BillingProgram,
    ClinicalTimeLog,
    ConditionPreset,
    Enrollment,
    MetricDefinition,
    Observation,
    OrganizationRule,
    RuleTemplate,
)

# Configure structured logging (production-ready observability)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

# Generic Result type for explicit error handling
ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Why: Makes error paths visible in type system, forces handling decisions.
    When to use: When failure is expected business logic, not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class MetricRegistry(Protocol):
    """Lookup of metric definitions by id or key (latest version per key)."""

    async def get_metric(self, metric_id: str) -> MetricDefinition | None: ...

    async def get_metric_by_key(self, key: str) -> MetricDefinition | None: ...


class ObservationStore(Protocol):
    """Append-only observation storage."""

    async def append(self, observation: Observation) -> None: ...

    async def list_observations(
        self,
        enrollment_id: str,
        metric_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> Sequence[Observation]:
        """Observations for an enrollment ordered by recorded_at ascending (bounds inclusive)."""
        ...


class EnrollmentStore(Protocol):
    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None: ...

    async def list_enrollments(self, organization_id: str | None = None) -> Sequence[Enrollment]: ...

    async def get_billing_program(self, program_id: str) -> BillingProgram | None: ...


class TimeLogStore(Protocol):
    async def list_time_logs(
        self, enrollment_id: str, since: datetime, until: datetime
    ) -> Sequence[ClinicalTimeLog]: ...


class RuleStore(Protocol):
    """Storage for platform templates, organization rules and condition presets."""

    async def get_template(self, template_id: str) -> RuleTemplate | None: ...

    async def list_templates(self) -> Sequence[RuleTemplate]: ...

    async def get_org_rule(self, rule_id: str) -> OrganizationRule | None: ...

    async def list_org_rules(self, organization_id: str) -> Sequence[OrganizationRule]: ...

    async def save_org_rule(self, rule: OrganizationRule) -> None: ...

    async def get_preset(self, preset_id: str) -> ConditionPreset | None: ...

    async def get_rule(self, rule_id: str) -> AlertRule | None:
        """Template or organization rule with this id."""
        ...


class AlertStore(Protocol):
    """
    Alert persistence.

    `save` must be an idempotent upsert on `idempotence_key`: saving a second
    alert with an existing key returns the stored alert unchanged.
    """

    async def save(self, alert: Alert) -> Alert: ...

    async def update(self, alert: Alert) -> Alert: ...

    async def get_alert(self, alert_id: str) -> Alert | None: ...

    async def list_alerts(
        self,
        rule_id: str | None = None,
        enrollment_id: str | None = None,
        organization_id: str | None = None,
    ) -> Sequence[Alert]: ...


class NotificationSink(Protocol):
    """Out-of-scope delivery layer (email, SMS, push, SSE...)."""

    async def notify(self, alert: Alert) -> None: ...

    async def delivery_failed(self, idempotence_key: str, reason: str) -> None: ...
