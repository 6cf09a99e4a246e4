"""
Alert dispatch: build → persist (retried, idempotent) → notify.

Architecture pattern: persistence is retried with exponential backoff under
the same idempotence key, so a retry can never create a duplicate; the
notifier sits behind a circuit breaker and its failures never lose an alert.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from care_core.config import AlertingConfig
from care_core.domain.errors import DispatchFailed
from care_core.domain.models import Alert, Enrollment, Severity, utc_now
from care_core.services.evaluator import Evaluation
from care_core.services.explanations import alert_message
from care_core.services.stores import AlertStore, NotificationSink

logger = structlog.get_logger(__name__)

SLA_MINUTES: dict[Severity, int] = {
    Severity.CRITICAL: 60,
    Severity.HIGH: 120,
    Severity.MEDIUM: 240,
    Severity.LOW: 480,
}

SEVERITY_MULTIPLIERS: dict[Severity, float] = {
    Severity.LOW: 0.8,
    Severity.MEDIUM: 1.0,
    Severity.HIGH: 1.2,
    Severity.CRITICAL: 1.5,
}


def risk_score(severity: Severity, deviation: float) -> float:
    """0-10 score, non-decreasing in deviation for a fixed severity."""
    base = 5.0 + min(10.0, max(0.0, deviation) * 10.0) * 0.5
    score = base * SEVERITY_MULTIPLIERS[severity]
    return round(min(10.0, max(0.0, score)), 1)


def sla_breach_at(severity: Severity, triggered_at: datetime) -> datetime:
    return triggered_at + timedelta(minutes=SLA_MINUTES[severity])


class CircuitBreakerState:
    """Simple circuit breaker for notifier calls."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open

    def can_execute(self) -> bool:
        if self.state == "closed":
            return True

        if self.state == "open":
            if self.last_failure_time:
                time_since_failure = self.clock() - self.last_failure_time
                if time_since_failure.total_seconds() >= self.recovery_timeout:
                    self.state = "half-open"
                    return True
            return False

        return self.state == "half-open"

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"


class AlertDispatcher:
    """Turns a fresh trigger into a persisted PENDING alert and notifies on it."""

    def __init__(
        self,
        alerts: AlertStore,
        notifier: NotificationSink,
        config: AlertingConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.alerts = alerts
        self.notifier = notifier
        self.config = config or AlertingConfig()
        self._sleep = sleep
        self.circuit_breaker = CircuitBreakerState(
            failure_threshold=self.config.notifier_failure_threshold,
            recovery_timeout=self.config.notifier_recovery_seconds,
            clock=clock,
        )
        self.logger = logger.bind(component="alert_dispatcher")

    def build_alert(
        self,
        evaluation: Evaluation,
        enrollment: Enrollment,
        idempotence_key: str,
        triggered_at: datetime,
    ) -> Alert:
        if evaluation.context is None:
            raise ValueError("Cannot build an alert from an evaluation that did not trigger")

        rule = evaluation.rule
        context = evaluation.context
        return Alert(
            idempotence_key=idempotence_key,
            rule_id=rule.id,
            enrollment_id=enrollment.id,
            patient_id=enrollment.patient_id,
            organization_id=enrollment.organization_id,
            clinician_id=enrollment.clinician_id,
            severity=rule.severity,
            risk_score=risk_score(rule.severity, context.deviation),
            message=alert_message(
                rule, evaluation.condition, evaluation.metric, context.observed_value
            ),
            explanation=evaluation.explanation,
            context=context,
            triggered_at=triggered_at,
            sla_breach_at=sla_breach_at(rule.severity, triggered_at),
        )

    async def persist(self, alert: Alert) -> Alert:
        """
        Save with retries; returns the stored alert.

        The store upserts on the idempotence key, so the returned alert may be
        an earlier one with the same key rather than `alert` itself.
        """
        attempts = self.config.dispatch_retry_attempts
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                stored = await self.alerts.save(alert)
                self.logger.info(
                    "alert_persisted",
                    alert_id=stored.id,
                    idempotence_key=alert.idempotence_key,
                    attempt=attempt,
                    created=stored.id == alert.id,
                )
                return stored
            except Exception as e:
                last_error = e
                self.logger.warning(
                    "alert_persist_failed",
                    idempotence_key=alert.idempotence_key,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt < attempts:
                    await self._sleep(self.config.dispatch_retry_backoff_seconds * 2 ** (attempt - 1))

        assert last_error is not None
        self.logger.error(
            "alert_dispatch_exhausted",
            idempotence_key=alert.idempotence_key,
            attempts=attempts,
            error=str(last_error),
        )
        try:
            await self.notifier.delivery_failed(alert.idempotence_key, str(last_error))
        except Exception as e:
            self.logger.error(
                "delivery_failure_report_failed", idempotence_key=alert.idempotence_key, error=str(e)
            )
        raise DispatchFailed(alert.idempotence_key, attempts, last_error)

    async def notify(self, alert: Alert) -> bool:
        """Hand the alert to the notifier; returns True when delivered."""
        if alert.severity.rank < self.config.notification_min_severity.rank:
            self.logger.debug(
                "notification_skipped_severity", alert_id=alert.id, severity=alert.severity.value
            )
            return False

        if not self.circuit_breaker.can_execute():
            self.logger.warning("notification_circuit_open", alert_id=alert.id)
            return False

        try:
            await self.notifier.notify(alert)
        except Exception as e:
            self.circuit_breaker.record_failure()
            self.logger.error(
                "notification_failed",
                alert_id=alert.id,
                error=str(e),
                circuit_state=self.circuit_breaker.state,
            )
            return False

        self.circuit_breaker.record_success()
        self.logger.info(
            "alert_dispatched",
            alert_id=alert.id,
            rule_id=alert.rule_id,
            enrollment_id=alert.enrollment_id,
            severity=alert.severity.value,
            risk_score=alert.risk_score,
        )
        return True

    async def dispatch(self, alert: Alert) -> Alert:
        stored = await self.persist(alert)
        if stored.id == alert.id:
            await self.notify(stored)
        return stored
