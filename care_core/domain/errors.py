"""
Error taxonomy for rule validation, ingestion, alert dispatch and billing.

Expected business failures are raised as these types at the API boundary
(rule CRUD, ingestion, billing query) and carried inside `Result` values
during evaluation, where a bad rule must be skipped rather than crash a run.
"""


class CareMonitorError(Exception):
    """Base class for all domain errors."""


class InvalidRuleExpression(CareMonitorError, ValueError):
    """A condition expression is malformed or incoherent for its operator/metric."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class UnknownMetric(CareMonitorError, LookupError):
    """A rule or observation references a metric with no definition."""

    def __init__(self, metric_ref: str) -> None:
        super().__init__(f"Unknown metric: {metric_ref}")
        self.metric_ref = metric_ref


class InvalidObservationValue(CareMonitorError, ValueError):
    """An observation value does not match its metric's value type."""


class NotFound(CareMonitorError, LookupError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PermissionDenied(CareMonitorError):
    """A mutation was attempted on a read-only (standardized or foreign) rule."""


class RuleAlreadyCustomized(CareMonitorError):
    """The organization already owns a customized copy of this template."""

    def __init__(self, template_id: str, existing_rule_id: str) -> None:
        super().__init__(
            f"Rule template {template_id} has already been customized as {existing_rule_id}"
        )
        self.template_id = template_id
        self.existing_rule_id = existing_rule_id


class InvalidAlertTransition(CareMonitorError):
    """An alert status change is not allowed from its current status."""


class MissingBillingProgram(CareMonitorError):
    """An enrollment has no billing program configured."""

    def __init__(self, enrollment_id: str) -> None:
        super().__init__(f"Enrollment {enrollment_id} has no billing program assigned")
        self.enrollment_id = enrollment_id


class InvalidBillingMonth(CareMonitorError, ValueError):
    """A billing month is not in YYYY-MM format."""


class DispatchFailed(CareMonitorError):
    """Persisting an alert failed after all retry attempts."""

    def __init__(self, idempotence_key: str, attempts: int, cause: BaseException) -> None:
        super().__init__(
            f"Alert {idempotence_key} could not be persisted after {attempts} attempts: {cause}"
        )
        self.idempotence_key = idempotence_key
        self.attempts = attempts
        self.cause = cause
