"""
Alert engine that ties rule evaluation, dedup and dispatch together.

This is the reactive end-to-end pipeline:
1. Resolve the live rules for the enrollment
2. Evaluate each rule (outside any lock)
3. Under the enrollment's lock: dedup/cooldown check, build, persist
4. Notify (outside the lock)

Evaluation for different enrollments runs concurrently; for one enrollment
the span "load existing alerts" through "persist new alert" is serialized so
no two alerts are ever created for the same satisfying window.

Architecture pattern: per-key locks plus a wall-clock scan for missing-data
rules, which cannot be triggered by a write.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from care_core.config import AppConfig, get_config
from care_core.domain.conditions import MissingDataCondition, parse_condition
from care_core.domain.errors import (
    DispatchFailed,
    InvalidAlertTransition,
    InvalidRuleExpression,
    NotFound,
)
from care_core.domain.models import (
    Alert,
    AlertRule,
    AlertStatus,
    Enrollment,
    Observation,
    utc_now,
)
from care_core.services.aggregator import TimeWindowAggregator
from care_core.services.cooldown import CooldownManager
from care_core.services.dispatcher import AlertDispatcher
from care_core.services.evaluator import Evaluation, RuleEvaluator
from care_core.services.rules import resolve_enrollment_rules
from care_core.services.stores import (
    AlertStore,
    EnrollmentStore,
    MetricRegistry,
    NotificationSink,
    ObservationStore,
    RuleStore,
)

logger = structlog.get_logger(__name__)

_ALLOWED_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


@dataclass
class EvaluationReport:
    """What one evaluation pass did for one enrollment."""

    enrollment_id: str
    evaluated_at: datetime
    rules_evaluated: int = 0
    alerts: list[Alert] = field(default_factory=list)
    suppressed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    failed: list[DispatchFailed] = field(default_factory=list)
    error: str | None = None

    @property
    def alerts_created(self) -> int:
        return len(self.alerts)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TriageEntry:
    """An open alert with its position in the clinician work queue."""

    alert: Alert
    rank: int
    sla_breached: bool


def triage_order(alerts: Iterable[Alert], now: datetime) -> list[TriageEntry]:
    """
    Open alerts, highest risk first, then the earliest SLA deadline.

    RESOLVED alerts are left out; ranks start at 1.
    """
    open_alerts = sorted(
        (alert for alert in alerts if alert.status != AlertStatus.RESOLVED),
        key=lambda alert: (-alert.risk_score, alert.sla_breach_at, alert.triggered_at, alert.id),
    )
    return [
        TriageEntry(alert=alert, rank=rank, sla_breached=now >= alert.sla_breach_at)
        for rank, alert in enumerate(open_alerts, start=1)
    ]


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def is_missing_data_rule(rule: AlertRule) -> bool:
    try:
        return isinstance(parse_condition(rule.conditions), MissingDataCondition)
    except InvalidRuleExpression:
        return False


class AlertEngine:
    """
    Main service orchestrating rule evaluation for enrollments.

    Triggered per observation write (`evaluate_observation`) and on a
    wall-clock tick for missing-data rules (`run_missing_data_scan`,
    `run_periodic_scan`). Also owns the clinician-driven alert lifecycle.
    """

    def __init__(
        self,
        *,
        metrics: MetricRegistry,
        observations: ObservationStore,
        enrollments: EnrollmentStore,
        rules: RuleStore,
        alerts: AlertStore,
        notifier: NotificationSink,
        config: AppConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or get_config()
        self.enrollments = enrollments
        self.rules = rules
        self.alerts = alerts
        self.clock = clock

        self.evaluator = RuleEvaluator(TimeWindowAggregator(observations), metrics)
        self.cooldown = CooldownManager(alerts)
        self.dispatcher = AlertDispatcher(alerts, notifier, self.config.alerting, clock=clock)
        self.locks = KeyedLocks()

        self._is_running = False
        self.logger = logger.bind(component="alert_engine")

    async def evaluate_observation(
        self, observation: Observation, now: datetime | None = None
    ) -> EvaluationReport:
        enrollment = await self.enrollments.get_enrollment(observation.enrollment_id)
        if enrollment is None:
            raise NotFound("Enrollment", observation.enrollment_id)

        now = now or self.clock()
        if not enrollment.is_active_on(now.date()):
            self.logger.info(
                "evaluation_skipped_inactive_enrollment",
                enrollment_id=enrollment.id,
                status=enrollment.status.value,
                observation_id=observation.id,
            )
            return EvaluationReport(enrollment_id=enrollment.id, evaluated_at=now)
        return await self.evaluate_enrollment(enrollment, now=now)

    async def evaluate_enrollment(
        self,
        enrollment: Enrollment,
        now: datetime | None = None,
        missing_data_only: bool = False,
    ) -> EvaluationReport:
        now = now or self.clock()
        report = EvaluationReport(enrollment_id=enrollment.id, evaluated_at=now)

        rules = await resolve_enrollment_rules(self.rules, enrollment)
        if missing_data_only:
            rules = [rule for rule in rules if is_missing_data_rule(rule)]

        triggered: list[Evaluation] = []
        for rule in rules:
            result = await self.evaluator.evaluate(rule, enrollment, now)
            report.rules_evaluated += 1
            if result.is_err():
                error = result.unwrap_err()
                self.logger.warning(
                    "rule_skipped_invalid",
                    rule_id=rule.id,
                    enrollment_id=enrollment.id,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                report.skipped.append((rule.id, str(error)))
                continue
            evaluation = result.unwrap()
            if evaluation.triggered:
                triggered.append(evaluation)

        created: list[Alert] = []
        for evaluation in triggered:
            alert = await self._record_trigger(evaluation, enrollment, now, report)
            if alert is not None:
                created.append(alert)

        for alert in created:
            await self.dispatcher.notify(alert)
        report.alerts.extend(created)

        self.logger.info(
            "enrollment_evaluated",
            enrollment_id=enrollment.id,
            rules_evaluated=report.rules_evaluated,
            alerts_created=report.alerts_created,
            suppressed=len(report.suppressed),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def _record_trigger(
        self,
        evaluation: Evaluation,
        enrollment: Enrollment,
        now: datetime,
        report: EvaluationReport,
    ) -> Alert | None:
        """Dedup, build and persist under the enrollment lock; None if nothing new."""
        assert evaluation.context is not None
        rule = evaluation.rule

        async with self.locks.hold(enrollment.id):
            decision = await self.cooldown.check(
                rule, evaluation.condition, enrollment.id, evaluation.context.window_end, now
            )
            if decision.suppressed:
                report.suppressed.append((rule.id, decision.reason or ""))
                return None

            alert = self.dispatcher.build_alert(
                evaluation, enrollment, decision.idempotence_key, triggered_at=now
            )
            try:
                stored = await self.dispatcher.persist(alert)
            except DispatchFailed as e:
                report.failed.append(e)
                return None

        if stored.id != alert.id:
            report.suppressed.append((rule.id, "duplicate_window"))
            return None
        return stored

    async def run_missing_data_scan(self, now: datetime | None = None) -> list[EvaluationReport]:
        """Evaluate missing-data rules for every active enrollment at `now`."""
        now = now or self.clock()
        enrollments = [
            enrollment
            for enrollment in await self.enrollments.list_enrollments()
            if enrollment.is_active_on(now.date())
        ]
        semaphore = asyncio.Semaphore(self.config.alerting.max_concurrent_enrollments)

        async def scan(enrollment: Enrollment) -> EvaluationReport:
            async with semaphore:
                try:
                    return await self.evaluate_enrollment(
                        enrollment, now=now, missing_data_only=True
                    )
                except Exception as e:
                    # one enrollment's failure must not cancel the rest of the tick
                    self.logger.exception(
                        "missing_data_scan_enrollment_failed",
                        enrollment_id=enrollment.id,
                        error=str(e),
                    )
                    return EvaluationReport(
                        enrollment_id=enrollment.id, evaluated_at=now, error=str(e)
                    )

        async with asyncio.TaskGroup() as task_group:
            tasks = [task_group.create_task(scan(enrollment)) for enrollment in enrollments]

        reports = [task.result() for task in tasks]
        self.logger.info(
            "missing_data_scan_completed",
            enrollments=len(reports),
            alerts_created=sum(report.alerts_created for report in reports),
            failed_enrollments=sum(not report.succeeded for report in reports),
        )
        return reports

    async def run_periodic_scan(self) -> AsyncIterator[list[EvaluationReport]]:
        """
        Run the missing-data scan on a wall-clock tick.

        Yields each tick's reports; stops after `stop()` or cancellation.
        """
        interval = self.config.alerting.missing_data_scan_interval_seconds
        self.logger.info("periodic_scan_starting", interval=interval)
        self._is_running = True

        try:
            while self._is_running:
                tick_start = self.clock()
                yield await self.run_missing_data_scan(tick_start)

                elapsed = (self.clock() - tick_start).total_seconds()
                sleep_time = max(0.0, interval - elapsed)
                if sleep_time > 0 and self._is_running:
                    await asyncio.sleep(sleep_time)

        except asyncio.CancelledError:
            self.logger.info("periodic_scan_cancelled")
            raise
        except Exception as e:
            self.logger.error("periodic_scan_failed", error=str(e))
            raise
        finally:
            self._is_running = False

    async def triage_queue(
        self, organization_id: str, now: datetime | None = None
    ) -> list[TriageEntry]:
        """Open alerts of an organization in the order clinicians should work them."""
        now = now or self.clock()
        alerts = await self.alerts.list_alerts(organization_id=organization_id)
        queue = triage_order(alerts, now)
        self.logger.debug(
            "triage_queue_built",
            organization_id=organization_id,
            open_alerts=len(queue),
            sla_breached=sum(entry.sla_breached for entry in queue),
        )
        return queue

    async def stop(self) -> None:
        self.logger.info("stopping_alert_engine")
        self._is_running = False

    async def transition_alert(
        self,
        alert_id: str,
        status: AlertStatus,
        actor_id: str,
        note: str | None = None,
    ) -> Alert:
        alert = await self.alerts.get_alert(alert_id)
        if alert is None:
            raise NotFound("Alert", alert_id)
        if status not in _ALLOWED_TRANSITIONS[alert.status]:
            raise InvalidAlertTransition(
                f"Alert {alert_id} cannot move from {alert.status.value} to {status.value}"
            )

        now = self.clock()
        changes: dict[str, object] = {"status": status}
        if status == AlertStatus.ACKNOWLEDGED:
            changes.update(acknowledged_at=now, acknowledged_by=actor_id)
        else:
            changes.update(resolved_at=now, resolved_by=actor_id, resolution_note=note)
            if alert.acknowledged_at is None:
                changes.update(acknowledged_at=now, acknowledged_by=actor_id)

        updated = await self.alerts.update(alert.model_copy(update=changes))
        self.logger.info(
            "alert_transitioned",
            alert_id=alert_id,
            from_status=alert.status.value,
            to_status=status.value,
            actor_id=actor_id,
        )
        return updated

    async def acknowledge(self, alert_id: str, clinician_id: str) -> Alert:
        return await self.transition_alert(alert_id, AlertStatus.ACKNOWLEDGED, clinician_id)

    async def resolve(self, alert_id: str, clinician_id: str, note: str | None = None) -> Alert:
        return await self.transition_alert(alert_id, AlertStatus.RESOLVED, clinician_id, note)
