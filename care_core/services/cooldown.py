"""
Cooldown and duplicate-window suppression for triggered rules.

An alert is identified by its idempotence key (rule, enrollment, window end),
so re-evaluating the same satisfying window never yields a second alert.
Independently, a rule's cooldown blocks any new alert for the same
(rule, enrollment) pair until it has elapsed since the prior alert's
`triggered_at`.
"""

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

import structlog

from care_core.domain.conditions import Condition, parse_cooldown
from care_core.domain.models import Alert, AlertRule
from care_core.services.stores import AlertStore

logger = structlog.get_logger(__name__)

IDEMPOTENCE_KEY_LENGTH = 32

SuppressionReason = Literal["duplicate_window", "cooldown"]


def idempotence_key(rule_id: str, enrollment_id: str, window_end: datetime) -> str:
    raw = f"{rule_id}|{enrollment_id}|{window_end.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:IDEMPOTENCE_KEY_LENGTH]


def effective_cooldown(rule: AlertRule, condition: Condition) -> timedelta | None:
    """Expression cooldown wins; the rule-level cooldown is the fallback."""
    if condition.cooldown_delta is not None:
        return condition.cooldown_delta
    if rule.cooldown:
        return parse_cooldown(rule.cooldown)
    return None


@dataclass(frozen=True)
class DedupDecision:
    idempotence_key: str
    suppressed: bool
    reason: SuppressionReason | None = None
    prior_alert_id: str | None = None
    cooldown_until: datetime | None = None


class CooldownManager:
    """Decides whether a triggered evaluation may produce a new alert."""

    def __init__(self, alerts: AlertStore) -> None:
        self.alerts = alerts
        self.logger = logger.bind(component="cooldown_manager")

    async def check(
        self,
        rule: AlertRule,
        condition: Condition,
        enrollment_id: str,
        window_end: datetime,
        now: datetime,
    ) -> DedupDecision:
        key = idempotence_key(rule.id, enrollment_id, window_end)
        prior = await self.alerts.list_alerts(rule_id=rule.id, enrollment_id=enrollment_id)

        duplicate = next((alert for alert in prior if alert.idempotence_key == key), None)
        if duplicate is not None:
            self.logger.debug(
                "alert_suppressed_duplicate_window",
                rule_id=rule.id,
                enrollment_id=enrollment_id,
                prior_alert_id=duplicate.id,
            )
            return DedupDecision(
                idempotence_key=key,
                suppressed=True,
                reason="duplicate_window",
                prior_alert_id=duplicate.id,
            )

        cooldown = effective_cooldown(rule, condition)
        latest = self._latest(prior)
        if cooldown is not None and latest is not None:
            cooldown_until = latest.triggered_at + cooldown
            if now < cooldown_until:
                self.logger.debug(
                    "alert_suppressed_cooldown",
                    rule_id=rule.id,
                    enrollment_id=enrollment_id,
                    cooldown_until=cooldown_until.isoformat(),
                )
                return DedupDecision(
                    idempotence_key=key,
                    suppressed=True,
                    reason="cooldown",
                    prior_alert_id=latest.id,
                    cooldown_until=cooldown_until,
                )

        return DedupDecision(idempotence_key=key, suppressed=False)

    @staticmethod
    def _latest(alerts: Sequence[Alert]) -> Alert | None:
        return max(alerts, key=lambda alert: alert.triggered_at, default=None)
