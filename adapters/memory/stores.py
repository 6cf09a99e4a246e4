"""
In-memory implementations of every collaborator protocol.

Used by the tests and by the end-to-end system check. Each async method
yields to the event loop once, like a real I/O call would, so concurrency
bugs surface here instead of hiding behind synchronous code.
"""

import asyncio
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

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

logger = structlog.get_logger(__name__)


async def _io() -> None:
    await asyncio.sleep(0)


class InMemoryMetricRegistry:
    def __init__(self, metrics: Iterable[MetricDefinition] = ()) -> None:
        self._by_id: dict[str, MetricDefinition] = {}
        for metric in metrics:
            self.register(metric)

    def register(self, metric: MetricDefinition) -> None:
        self._by_id[metric.id] = metric

    async def get_metric(self, metric_id: str) -> MetricDefinition | None:
        await _io()
        return self._by_id.get(metric_id)

    async def get_metric_by_key(self, key: str) -> MetricDefinition | None:
        await _io()
        versions = [metric for metric in self._by_id.values() if metric.key == key]
        return max(versions, key=lambda metric: metric.version, default=None)


class InMemoryObservationStore:
    def __init__(self) -> None:
        self._by_enrollment: dict[str, list[Observation]] = defaultdict(list)

    async def append(self, observation: Observation) -> None:
        await _io()
        self._by_enrollment[observation.enrollment_id].append(observation)

    async def list_observations(
        self,
        enrollment_id: str,
        metric_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> Sequence[Observation]:
        await _io()
        rows = [
            obs
            for obs in self._by_enrollment.get(enrollment_id, [])
            if (metric_key is None or obs.metric_key == metric_key)
            and (since is None or obs.recorded_at >= since)
            and (until is None or obs.recorded_at <= until)
        ]
        return sorted(rows, key=lambda obs: obs.recorded_at)

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._by_enrollment.values())


class InMemoryEnrollmentStore:
    def __init__(
        self,
        enrollments: Iterable[Enrollment] = (),
        programs: Iterable[BillingProgram] = (),
    ) -> None:
        self._enrollments = {enrollment.id: enrollment for enrollment in enrollments}
        self._programs = {program.id: program for program in programs}

    def add_enrollment(self, enrollment: Enrollment) -> None:
        self._enrollments[enrollment.id] = enrollment

    def add_program(self, program: BillingProgram) -> None:
        self._programs[program.id] = program

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        await _io()
        return self._enrollments.get(enrollment_id)

    async def list_enrollments(self, organization_id: str | None = None) -> Sequence[Enrollment]:
        await _io()
        return [
            enrollment
            for enrollment in self._enrollments.values()
            if organization_id is None or enrollment.organization_id == organization_id
        ]

    async def get_billing_program(self, program_id: str) -> BillingProgram | None:
        await _io()
        return self._programs.get(program_id)


class InMemoryTimeLogStore:
    def __init__(self, logs: Iterable[ClinicalTimeLog] = ()) -> None:
        self._logs: list[ClinicalTimeLog] = list(logs)

    def add(self, log: ClinicalTimeLog) -> None:
        self._logs.append(log)

    async def list_time_logs(
        self, enrollment_id: str, since: datetime, until: datetime
    ) -> Sequence[ClinicalTimeLog]:
        await _io()
        return [
            log
            for log in self._logs
            if log.enrollment_id == enrollment_id and since <= log.logged_at <= until
        ]


class InMemoryRuleStore:
    def __init__(
        self,
        templates: Iterable[RuleTemplate] = (),
        presets: Iterable[ConditionPreset] = (),
    ) -> None:
        self._templates = {template.id: template for template in templates}
        self._org_rules: dict[str, OrganizationRule] = {}
        self._presets = {preset.id: preset for preset in presets}

    def add_template(self, template: RuleTemplate) -> None:
        self._templates[template.id] = template

    def add_preset(self, preset: ConditionPreset) -> None:
        self._presets[preset.id] = preset

    async def get_template(self, template_id: str) -> RuleTemplate | None:
        await _io()
        return self._templates.get(template_id)

    async def list_templates(self) -> Sequence[RuleTemplate]:
        await _io()
        return list(self._templates.values())

    async def get_org_rule(self, rule_id: str) -> OrganizationRule | None:
        await _io()
        return self._org_rules.get(rule_id)

    async def list_org_rules(self, organization_id: str) -> Sequence[OrganizationRule]:
        await _io()
        return [rule for rule in self._org_rules.values() if rule.organization_id == organization_id]

    async def save_org_rule(self, rule: OrganizationRule) -> None:
        await _io()
        self._org_rules[rule.id] = rule

    async def get_preset(self, preset_id: str) -> ConditionPreset | None:
        await _io()
        return self._presets.get(preset_id)

    async def get_rule(self, rule_id: str) -> AlertRule | None:
        await _io()
        return self._templates.get(rule_id) or self._org_rules.get(rule_id)


class InMemoryAlertStore:
    """
    Alert store with an idempotent `save`.

    `fail_next_saves` makes the next N saves raise ConnectionError, to
    exercise the dispatcher's retry path.
    """

    def __init__(self, fail_next_saves: int = 0) -> None:
        self._alerts: dict[str, Alert] = {}
        self._by_key: dict[str, str] = {}
        self.fail_next_saves = fail_next_saves
        self.save_attempts = 0

    async def save(self, alert: Alert) -> Alert:
        await _io()
        self.save_attempts += 1
        if self.fail_next_saves > 0:
            self.fail_next_saves -= 1
            raise ConnectionError("alert store unavailable")

        existing_id = self._by_key.get(alert.idempotence_key)
        if existing_id is not None:
            return self._alerts[existing_id]
        self._alerts[alert.id] = alert
        self._by_key[alert.idempotence_key] = alert.id
        return alert

    async def update(self, alert: Alert) -> Alert:
        await _io()
        if alert.id not in self._alerts:
            raise KeyError(alert.id)
        self._alerts[alert.id] = alert
        return alert

    async def get_alert(self, alert_id: str) -> Alert | None:
        await _io()
        return self._alerts.get(alert_id)

    async def list_alerts(
        self,
        rule_id: str | None = None,
        enrollment_id: str | None = None,
        organization_id: str | None = None,
    ) -> Sequence[Alert]:
        await _io()
        return [
            alert
            for alert in self._alerts.values()
            if (rule_id is None or alert.rule_id == rule_id)
            and (enrollment_id is None or alert.enrollment_id == enrollment_id)
            and (organization_id is None or alert.organization_id == organization_id)
        ]

    def all(self) -> list[Alert]:
        return sorted(self._alerts.values(), key=lambda alert: alert.triggered_at)


class RecordingNotifier:
    """Notification sink that records deliveries; can be told to fail."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.notified: list[Alert] = []
        self.delivery_failures: list[tuple[str, str]] = []
        self.fail_with = fail_with
        self.logger = logger.bind(component="recording_notifier")

    async def notify(self, alert: Alert) -> None:
        await _io()
        if self.fail_with is not None:
            raise self.fail_with
        self.notified.append(alert)
        self.logger.debug("notification_recorded", alert_id=alert.id)

    async def delivery_failed(self, idempotence_key: str, reason: str) -> None:
        await _io()
        self.delivery_failures.append((idempotence_key, reason))


@dataclass
class MemoryBackend:
    """All in-memory collaborators wired together."""

    metrics: InMemoryMetricRegistry = field(default_factory=InMemoryMetricRegistry)
    observations: InMemoryObservationStore = field(default_factory=InMemoryObservationStore)
    enrollments: InMemoryEnrollmentStore = field(default_factory=InMemoryEnrollmentStore)
    time_logs: InMemoryTimeLogStore = field(default_factory=InMemoryTimeLogStore)
    rules: InMemoryRuleStore = field(default_factory=InMemoryRuleStore)
    alerts: InMemoryAlertStore = field(default_factory=InMemoryAlertStore)
    notifier: RecordingNotifier = field(default_factory=RecordingNotifier)
