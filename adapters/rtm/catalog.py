"""
Standardized catalog for remote therapeutic monitoring (RTM) programs.

This demonstrates how a deployment seeds the core framework:
- Platform metric definitions (pain, medication, side effects, mood)
- Standardized alert rule templates organizations can customize
- CMS 2025 billing programs (CCM time based, RPM day based, RTM combined)
- A condition preset bundling the chronic pain rules

Key RTM concepts:
- Data collection days: distinct days with device readings (16 per month)
- Treatment time: clinician minutes spent on the patient (20 per month)
- Adherence rates are fractions (0.8 means 80 %)
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from care_core.domain.models import (
    BillingProgram,
    ConditionPreset,
    MetricDefinition,
    MetricOption,
    PresetRuleLink,
    ProgramType,
    RuleTemplate,
    Severity,
    ValueType,
)


class RTMMetricKey(str, Enum):
    """Standardized metric keys shared by every organization."""

    PAIN_SCALE = "pain_scale_0_10"
    PAIN_LOCATION = "pain_location"
    PAIN_NOTES = "pain_notes"
    MEDICATION_ADHERENCE = "medication_adherence_rate"
    MISSED_DOSES = "missed_medication_doses"
    MEDICATION_EFFECTIVENESS = "medication_effectiveness"
    SIDE_EFFECTS_SEVERITY = "side_effects_severity"
    ASSESSMENT_COMPLETION = "assessment_completion_rate"
    MOOD_SCALE = "mood_scale"
    FALL_OCCURRED = "fall_occurred"
    BLOOD_GLUCOSE = "blood_glucose"


def _metric(key: RTMMetricKey, display_name: str, value_type: ValueType, **extra: object) -> MetricDefinition:
    return MetricDefinition(
        id=f"metric_{key.value}", key=key.value, display_name=display_name, value_type=value_type, **extra
    )


def standard_metrics() -> list[MetricDefinition]:
    return [
        _metric(
            RTMMetricKey.PAIN_SCALE,
            "Pain Scale (0-10)",
            ValueType.NUMERIC,
            scale_min=0,
            scale_max=10,
        ),
        _metric(
            RTMMetricKey.PAIN_LOCATION,
            "Pain Location",
            ValueType.CATEGORICAL,
            options=(
                MetricOption(value="lower_back", label="Lower back"),
                MetricOption(value="neck", label="Neck"),
                MetricOption(value="knee", label="Knee"),
                MetricOption(value="shoulder", label="Shoulder"),
                MetricOption(value="hip", label="Hip"),
            ),
        ),
        _metric(RTMMetricKey.PAIN_NOTES, "Pain Notes", ValueType.TEXT),
        _metric(
            RTMMetricKey.MEDICATION_ADHERENCE,
            "Medication Adherence Rate",
            ValueType.NUMERIC,
            unit="ratio",
            scale_min=0,
            scale_max=1,
        ),
        _metric(RTMMetricKey.MISSED_DOSES, "Missed Medication Doses", ValueType.NUMERIC, unit="doses", scale_min=0),
        _metric(
            RTMMetricKey.MEDICATION_EFFECTIVENESS,
            "Medication Effectiveness",
            ValueType.ORDINAL,
            scale_min=0,
            scale_max=10,
        ),
        _metric(
            RTMMetricKey.SIDE_EFFECTS_SEVERITY,
            "Side Effects Severity",
            ValueType.NUMERIC,
            scale_min=0,
            scale_max=10,
        ),
        _metric(
            RTMMetricKey.ASSESSMENT_COMPLETION,
            "Assessment Completion Rate",
            ValueType.NUMERIC,
            unit="ratio",
            scale_min=0,
            scale_max=1,
        ),
        _metric(RTMMetricKey.MOOD_SCALE, "Mood Scale (0-10)", ValueType.NUMERIC, scale_min=0, scale_max=10),
        _metric(RTMMetricKey.FALL_OCCURRED, "Fall Occurred", ValueType.BOOLEAN),
        _metric(
            RTMMetricKey.BLOOD_GLUCOSE,
            "Blood Glucose",
            ValueType.NUMERIC,
            unit="mg/dL",
            scale_min=20,
            scale_max=600,
        ),
    ]


def rule_templates() -> list[RuleTemplate]:
    """Platform rule templates; expressions use the original authoring aliases."""
    return [
        # Pain management
        RuleTemplate(
            id="high_pain_threshold",
            name="High Pain Alert",
            description="Triggers when pain scale exceeds threshold",
            category="Pain Management",
            severity=Severity.HIGH,
            cooldown="4h",
            conditions={
                "condition": "pain_scale_0_10",
                "operator": "greater_than_or_equal",
                "threshold": 8,
                "description": "Pain scale 8 or higher",
            },
        ),
        RuleTemplate(
            id="moderate_pain_persistent",
            name="Persistent Moderate Pain",
            description="Triggers when moderate pain persists for multiple days",
            category="Pain Management",
            severity=Severity.MEDIUM,
            cooldown="24h",
            conditions={
                "condition": "pain_scale_0_10",
                "operator": "greater_than_or_equal",
                "threshold": 5,
                "consecutiveDays": 3,
                "timeWindow": "5d",
            },
        ),
        RuleTemplate(
            id="pain_trend_increasing",
            name="Increasing Pain Trend",
            description="Triggers when pain shows increasing trend",
            category="Pain Management",
            severity=Severity.MEDIUM,
            cooldown="48h",
            conditions={
                "condition": "pain_scale_0_10",
                "operator": "trend_increasing",
                "occurrences": 3,
                "timeWindow": "7d",
            },
        ),
        RuleTemplate(
            id="pain_sudden_spike",
            name="Sudden Pain Spike",
            description="Triggers when pain increases dramatically in short time",
            category="Pain Management",
            severity=Severity.HIGH,
            cooldown="6h",
            conditions={
                "condition": "pain_scale_0_10",
                "operator": "greater_than",
                "threshold": 7,
                "timeWindow": "24h",
            },
        ),
        # Medication management
        RuleTemplate(
            id="medication_adherence_low",
            name="Low Medication Adherence",
            description="Triggers when medication adherence drops below threshold",
            category="Medication Management",
            severity=Severity.MEDIUM,
            cooldown="24h",
            conditions={
                "condition": "medication_adherence_rate",
                "operator": "less_than",
                "threshold": 0.8,
                "duration": "3d",
            },
        ),
        RuleTemplate(
            id="medication_adherence_critical",
            name="Critical Medication Non-Adherence",
            description="Triggers when medication adherence is critically low",
            category="Medication Management",
            severity=Severity.HIGH,
            cooldown="12h",
            conditions={
                "condition": "medication_adherence_rate",
                "operator": "less_than",
                "threshold": 0.5,
            },
        ),
        RuleTemplate(
            id="missed_doses_consecutive",
            name="Consecutive Missed Doses",
            description="Triggers when multiple consecutive doses are missed",
            category="Medication Management",
            severity=Severity.HIGH,
            cooldown="8h",
            conditions={
                "condition": "missed_medication_doses",
                "operator": "greater_than_or_equal",
                "threshold": 3,
                "consecutiveDays": 2,
            },
        ),
        RuleTemplate(
            id="medication_effectiveness_declining",
            name="Declining Medication Effectiveness",
            description="Triggers when medication effectiveness keeps dropping",
            category="Medication Management",
            severity=Severity.MEDIUM,
            cooldown="72h",
            conditions={
                "condition": "medication_effectiveness",
                "operator": "trend_decreasing",
                "occurrences": 4,
                "timeWindow": "2w",
            },
        ),
        # Side effects and safety
        RuleTemplate(
            id="severe_side_effects",
            name="Severe Side Effects",
            description="Triggers on severe medication side effects",
            category="Side Effects & Safety",
            severity=Severity.HIGH,
            cooldown="12h",
            conditions={
                "condition": "side_effects_severity",
                "operator": "greater_than_or_equal",
                "threshold": 7,
            },
        ),
        RuleTemplate(
            id="fall_reported",
            name="Fall Reported",
            description="Triggers when the patient reports a fall",
            category="Side Effects & Safety",
            severity=Severity.CRITICAL,
            conditions={"metricKey": "fall_occurred", "operator": "equals", "value": "true"},
        ),
        # Assessment and monitoring
        RuleTemplate(
            id="missing_assessment_24h",
            name="Missing Assessment (24h)",
            description="No assessment submitted in the last 24 hours",
            category="Assessment & Monitoring",
            severity=Severity.MEDIUM,
            cooldown="12h",
            conditions={"condition": "no_assessment_for", "operator": "greater_than", "threshold": 24},
        ),
        RuleTemplate(
            id="missing_assessment_48h",
            name="Missing Assessment (48h)",
            description="No assessment submitted in the last 48 hours",
            category="Assessment & Monitoring",
            severity=Severity.HIGH,
            cooldown="6h",
            conditions={"condition": "no_assessment_for", "operator": "greater_than", "threshold": 48},
        ),
        RuleTemplate(
            id="incomplete_assessments",
            name="Incomplete Assessments",
            description="Assessment completion rate is low",
            category="Assessment & Monitoring",
            severity=Severity.LOW,
            cooldown="48h",
            conditions={
                "condition": "assessment_completion_rate",
                "operator": "less_than",
                "threshold": 0.7,
                "timeWindow": "7d",
            },
        ),
        # Mood and mental health
        RuleTemplate(
            id="mood_declining",
            name="Declining Mood",
            description="Mood keeps declining across assessments",
            category="Mood & Mental Health",
            severity=Severity.MEDIUM,
            cooldown="48h",
            conditions={
                "condition": "mood_scale",
                "operator": "trend_decreasing",
                "occurrences": 4,
                "timeWindow": "7d",
            },
        ),
        RuleTemplate(
            id="low_mood_persistent",
            name="Persistent Low Mood",
            description="Low mood reported several times in a week",
            category="Mood & Mental Health",
            severity=Severity.HIGH,
            cooldown="24h",
            conditions={
                "condition": "mood_scale",
                "operator": "less_than_or_equal",
                "threshold": 3,
                "occurrences": 3,
                "timeWindow": "7d",
            },
        ),
    ]


def billing_programs() -> list[BillingProgram]:
    """CMS 2025 programs with the data-collection / treatment-time thresholds."""
    effective_from = date(2025, 1, 1)
    return [
        BillingProgram(
            id="CMS_CCM_2025",
            code="CMS_CCM_2025",
            name="CMS Chronic Care Management 2025",
            program_type=ProgramType.TIME_BASED,
            threshold_minutes=20,
            reimbursement=Decimal("52.37"),
            effective_from=effective_from,
        ),
        BillingProgram(
            id="CMS_RPM_2025",
            code="CMS_RPM_2025",
            name="CMS Remote Patient Monitoring 2025",
            program_type=ProgramType.DAY_BASED,
            threshold_days=16,
            reimbursement=Decimal("64.53"),
            effective_from=effective_from,
        ),
        BillingProgram(
            id="CMS_RTM_2025",
            code="CMS_RTM_2025",
            name="CMS Remote Therapeutic Monitoring 2025",
            program_type=ProgramType.COMBINED,
            threshold_minutes=20,
            threshold_days=16,
            reimbursement=Decimal("105.63"),
            effective_from=effective_from,
        ),
    ]


def chronic_pain_preset() -> ConditionPreset:
    links = [
        ("high_pain_threshold", 10),
        ("pain_sudden_spike", 9),
        ("moderate_pain_persistent", 5),
        ("pain_trend_increasing", 5),
        ("medication_adherence_low", 3),
        ("missing_assessment_24h", 1),
    ]
    return ConditionPreset(
        id="chronic_pain_management",
        name="Chronic Pain Management",
        rule_links=tuple(PresetRuleLink(rule_id=rule_id, priority=priority) for rule_id, priority in links),
    )
