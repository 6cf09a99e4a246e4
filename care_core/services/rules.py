"""
Alert rule management: validation, CRUD on organization rules, template
customization, and resolution of the rule set that applies to an enrollment.

Platform templates are read-only. Customizing one clones it into an
organization-owned copy that replaces the template for that organization's
enrollments; the raw condition expression is stored exactly as authored.
"""

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog

from care_core.domain.conditions import (
    Condition,
    MissingDataCondition,
    parse_condition,
    parse_cooldown,
    validate_condition,
)
from care_core.domain.errors import (
    NotFound,
    PermissionDenied,
    RuleAlreadyCustomized,
    UnknownMetric,
)
from care_core.domain.models import (
    AlertRule,
    Enrollment,
    OrganizationRule,
    RuleTemplate,
    Severity,
    utc_now,
)
from care_core.services.stores import MetricRegistry, RuleStore

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = frozenset(
    {"name", "description", "category", "severity", "conditions", "cooldown", "priority", "is_active"}
)


async def resolve_enrollment_rules(store: RuleStore, enrollment: Enrollment) -> list[AlertRule]:
    """
    Live rules for an enrollment: enabled preset links (by priority) followed
    by directly assigned rules, with each template swapped for the
    organization's customized copy when one exists.
    """
    rule_ids: list[str] = []
    if enrollment.condition_preset_id:
        preset = await store.get_preset(enrollment.condition_preset_id)
        if preset is None:
            logger.warning(
                "condition_preset_missing",
                enrollment_id=enrollment.id,
                preset_id=enrollment.condition_preset_id,
            )
        else:
            links = sorted(
                (link for link in preset.rule_links if link.is_enabled),
                key=lambda link: link.priority,
                reverse=True,
            )
            rule_ids.extend(link.rule_id for link in links)
    rule_ids.extend(enrollment.alert_rule_ids)

    customized = {
        rule.derived_from_template_id: rule
        for rule in await store.list_org_rules(enrollment.organization_id)
        if rule.derived_from_template_id and rule.deleted_at is None
    }

    resolved: list[AlertRule] = []
    seen: set[str] = set()
    for rule_id in rule_ids:
        rule = await store.get_rule(rule_id)
        if rule is None:
            logger.warning("rule_missing", enrollment_id=enrollment.id, rule_id=rule_id)
            continue
        if isinstance(rule, RuleTemplate):
            rule = customized.get(rule.id, rule)
        elif rule.organization_id != enrollment.organization_id:
            logger.warning(
                "rule_foreign_organization", enrollment_id=enrollment.id, rule_id=rule_id
            )
            continue
        if rule.id in seen or not rule.is_live:
            continue
        seen.add(rule.id)
        resolved.append(rule)
    return resolved


class RuleService:
    """Validated create/update/delete/customize for alert rules."""

    def __init__(
        self,
        rules: RuleStore,
        metrics: MetricRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.rules = rules
        self.metrics = metrics
        self.clock = clock
        self.logger = logger.bind(component="rule_service")

    async def validate_expression(self, conditions: dict[str, Any]) -> Condition:
        """Raise InvalidRuleExpression / UnknownMetric for an unusable expression."""
        condition = parse_condition(conditions)
        metric = None
        if not (isinstance(condition, MissingDataCondition) and condition.applies_to_all_metrics):
            metric = await self.metrics.get_metric_by_key(condition.metric_key)
            if metric is None:
                raise UnknownMetric(condition.metric_key)
        validate_condition(condition, metric)
        return condition

    async def _validate_fields(self, fields: Mapping[str, Any]) -> None:
        if "conditions" in fields:
            await self.validate_expression(fields["conditions"])
        if fields.get("cooldown"):
            parse_cooldown(fields["cooldown"])

    async def create_rule(
        self,
        organization_id: str,
        *,
        name: str,
        severity: Severity,
        conditions: dict[str, Any],
        description: str = "",
        category: str = "",
        cooldown: str | None = None,
        priority: int = 0,
        is_active: bool = True,
    ) -> OrganizationRule:
        await self._validate_fields({"conditions": conditions, "cooldown": cooldown})
        now = self.clock()
        rule = OrganizationRule(
            organization_id=organization_id,
            name=name,
            severity=severity,
            conditions=dict(conditions),
            description=description,
            category=category,
            cooldown=cooldown,
            priority=priority,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        await self.rules.save_org_rule(rule)
        self.logger.info("rule_created", rule_id=rule.id, organization_id=organization_id)
        return rule

    async def _owned_rule(self, rule_id: str, organization_id: str) -> OrganizationRule:
        rule = await self.rules.get_rule(rule_id)
        if rule is None:
            raise NotFound("Alert rule", rule_id)
        if isinstance(rule, RuleTemplate):
            raise PermissionDenied(
                f"Rule {rule_id} is a standardized template; customize it to make changes"
            )
        if rule.organization_id != organization_id:
            raise PermissionDenied(f"Rule {rule_id} belongs to another organization")
        if rule.deleted_at is not None:
            raise NotFound("Alert rule", rule_id)
        return rule

    async def update_rule(
        self, rule_id: str, organization_id: str, changes: Mapping[str, Any]
    ) -> OrganizationRule:
        rule = await self._owned_rule(rule_id, organization_id)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        await self._validate_fields(changes)

        updated = OrganizationRule.model_validate(
            {**rule.model_dump(), **changes, "updated_at": self.clock()}
        )
        await self.rules.save_org_rule(updated)
        self.logger.info("rule_updated", rule_id=rule_id, fields=sorted(changes))
        return updated

    async def delete_rule(self, rule_id: str, organization_id: str) -> OrganizationRule:
        """Soft delete: alerts keep referencing the rule, it just stops evaluating."""
        rule = await self._owned_rule(rule_id, organization_id)
        now = self.clock()
        deleted = rule.model_copy(update={"is_active": False, "deleted_at": now, "updated_at": now})
        await self.rules.save_org_rule(deleted)
        self.logger.info("rule_deleted", rule_id=rule_id, organization_id=organization_id)
        return deleted

    async def customize_rule(
        self,
        template_id: str,
        organization_id: str,
        overrides: Mapping[str, Any] | None = None,
    ) -> OrganizationRule:
        rule = await self.rules.get_rule(template_id)
        if rule is None:
            raise NotFound("Alert rule", template_id)
        if isinstance(rule, OrganizationRule):
            if rule.organization_id != organization_id:
                raise PermissionDenied(f"Rule {template_id} belongs to another organization")
            raise PermissionDenied(f"Rule {template_id} is already organization-owned")

        for existing in await self.rules.list_org_rules(organization_id):
            if existing.derived_from_template_id == rule.id and existing.deleted_at is None:
                raise RuleAlreadyCustomized(rule.id, existing.id)

        overrides = dict(overrides or {})
        unknown = set(overrides) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        await self._validate_fields(overrides)

        now = self.clock()
        base = rule.model_dump(exclude={"id"})
        copy = OrganizationRule.model_validate(
            {
                **base,
                **overrides,
                "organization_id": organization_id,
                "derived_from_template_id": rule.id,
                "created_at": now,
                "updated_at": now,
            }
        )
        await self.rules.save_org_rule(copy)
        self.logger.info(
            "rule_customized",
            template_id=rule.id,
            rule_id=copy.id,
            organization_id=organization_id,
        )
        return copy

    async def list_rules(self, organization_id: str) -> list[AlertRule]:
        """Templates not yet customized by the organization, then its live rules."""
        own = [
            rule
            for rule in await self.rules.list_org_rules(organization_id)
            if rule.deleted_at is None
        ]
        customized = {rule.derived_from_template_id for rule in own}
        templates = [
            template
            for template in await self.rules.list_templates()
            if template.id not in customized
        ]
        return [*templates, *own]

    async def rules_for_enrollment(self, enrollment: Enrollment) -> list[AlertRule]:
        return await resolve_enrollment_rules(self.rules, enrollment)
