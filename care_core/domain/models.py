"""
Domain models for care-program monitoring and billing.

These models represent the core business concepts and are persistence-agnostic.
They use Pydantic for validation; append-only facts (observations, metric
definitions, templates, alerts) are frozen.
"""

from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


class ValueType(str, Enum):
    """Value types a metric definition can declare."""

    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    ORDINAL = "ordinal"
    BOOLEAN = "boolean"
    TEXT = "text"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"


NUMBER_LIKE_TYPES = frozenset({ValueType.NUMERIC, ValueType.ORDINAL})
STRING_LIKE_TYPES = frozenset({ValueType.TEXT, ValueType.CATEGORICAL})


class ObservationSource(str, Enum):
    """Who (or what) reported an observation."""

    PATIENT = "patient"
    CLINICIAN = "clinician"
    SYSTEM = "system"
    DEVICE = "device"


class Severity(str, Enum):
    """Alert severity levels configured on a rule."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    COMPLETED = "COMPLETED"


class ProgramType(str, Enum):
    """Billing program archetypes (CCM is time based, RPM day based, RTM combined)."""

    TIME_BASED = "time_based"
    DAY_BASED = "day_based"
    COMBINED = "combined"


class MetricOption(BaseModel):
    """One enumerated value of a categorical or ordinal metric."""

    model_config = ConfigDict(frozen=True)

    value: str | int | float
    label: str


class MetricDefinition(BaseModel):
    """Definition of a measurable clinical metric, versioned by key."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    key: str = Field(min_length=1)
    display_name: str
    value_type: ValueType
    unit: str | None = None
    scale_min: float | None = None
    scale_max: float | None = None
    options: tuple[MetricOption, ...] = ()
    version: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def scale_is_ordered(self) -> "MetricDefinition":
        if self.scale_min is not None and self.scale_max is not None:
            if self.scale_min > self.scale_max:
                raise ValueError("scale_min must not exceed scale_max")
        return self

    @property
    def scale_span(self) -> float | None:
        if self.scale_min is None or self.scale_max is None:
            return None
        return self.scale_max - self.scale_min

    @property
    def is_percentage_like(self) -> bool:
        """Rates and ratios are stored as fractions but shown as percentages."""
        return self.key.endswith("_rate") or (self.unit or "").lower() in {"ratio", "fraction"}


ObservationValue = bool | int | float | str | datetime | date | time


def value_matches_type(value: Any, value_type: ValueType) -> bool:
    match value_type:
        case ValueType.NUMERIC | ValueType.ORDINAL:
            return isinstance(value, int | float) and not isinstance(value, bool)
        case ValueType.CATEGORICAL | ValueType.TEXT:
            return isinstance(value, str)
        case ValueType.BOOLEAN:
            return isinstance(value, bool)
        case ValueType.DATETIME:
            return isinstance(value, datetime)
        case ValueType.DATE:
            return isinstance(value, date) and not isinstance(value, datetime)
        case ValueType.TIME:
            return isinstance(value, time)


class Observation(BaseModel):
    """A single clinical fact reported for an enrollment. Append-only."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    patient_id: str
    enrollment_id: str
    organization_id: str
    metric_id: str
    metric_key: str
    value_type: ValueType
    value: ObservationValue
    source: ObservationSource
    recorded_at: datetime
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def value_matches_value_type(self) -> "Observation":
        if not value_matches_type(self.value, self.value_type):
            raise ValueError(
                f"value {self.value!r} does not match value type {self.value_type.value}"
            )
        return self

    @property
    def recorded_day(self) -> date:
        """Calendar day as the patient recorded it (in the timestamp's own zone)."""
        return self.recorded_at.date()

    def numeric_value(self) -> float | None:
        if isinstance(self.value, bool):
            return float(self.value)
        if isinstance(self.value, int | float):
            return float(self.value)
        return None


class AlertRuleBase(BaseModel):
    """Fields shared by platform templates and organization rules."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str = ""
    category: str = ""
    severity: Severity
    conditions: dict[str, Any]
    cooldown: str | None = Field(
        default=None, description="Rule-level cooldown used when the expression has none"
    )
    priority: int = 0
    is_active: bool = True


class RuleTemplate(AlertRuleBase):
    """Standardized, platform-owned rule. Read-only except for 'customize'."""

    model_config = ConfigDict(frozen=True)

    @property
    def organization_id(self) -> None:
        return None

    @property
    def is_standardized(self) -> bool:
        return True

    @property
    def is_customized(self) -> bool:
        return False

    @property
    def is_live(self) -> bool:
        return self.is_active


class OrganizationRule(AlertRuleBase):
    """Organization-owned rule, optionally derived from a template."""

    model_config = ConfigDict(validate_assignment=True)

    organization_id: str
    derived_from_template_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: datetime | None = None

    @property
    def is_standardized(self) -> bool:
        return False

    @property
    def is_customized(self) -> bool:
        return self.derived_from_template_id is not None

    @property
    def is_live(self) -> bool:
        return self.is_active and self.deleted_at is None


AlertRule = RuleTemplate | OrganizationRule


class PresetRuleLink(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    is_enabled: bool = True
    priority: int = 0


class ConditionPreset(BaseModel):
    """Named bundle of alert rules applied to an enrollment."""

    id: str = Field(default_factory=new_id)
    name: str
    rule_links: tuple[PresetRuleLink, ...] = ()


class Enrollment(BaseModel):
    """Binds a patient to a clinician, a condition preset and a billing program."""

    id: str = Field(default_factory=new_id)
    patient_id: str
    clinician_id: str | None = None
    organization_id: str
    condition_preset_id: str | None = None
    alert_rule_ids: tuple[str, ...] = ()
    billing_program_id: str | None = None
    patient_name: str = ""
    start_date: date
    end_date: date | None = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE

    def is_active_on(self, day: date) -> bool:
        if self.status != EnrollmentStatus.ACTIVE:
            return False
        if day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date


class BillingProgram(BaseModel):
    """Billing program with its eligibility thresholds."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    code: str
    name: str
    program_type: ProgramType
    threshold_minutes: int | None = Field(default=None, ge=0)
    threshold_days: int | None = Field(default=None, ge=0)
    reimbursement: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"
    day_sources: frozenset[ObservationSource] = frozenset({ObservationSource.DEVICE})
    is_active: bool = True
    effective_from: date | None = None
    effective_to: date | None = None

    @model_validator(mode="after")
    def thresholds_match_type(self) -> "BillingProgram":
        needs_minutes = self.program_type in (ProgramType.TIME_BASED, ProgramType.COMBINED)
        needs_days = self.program_type in (ProgramType.DAY_BASED, ProgramType.COMBINED)
        if needs_minutes and self.threshold_minutes is None:
            raise ValueError(f"{self.program_type.value} program requires threshold_minutes")
        if needs_days and self.threshold_days is None:
            raise ValueError(f"{self.program_type.value} program requires threshold_days")
        return self

    @property
    def tracks_minutes(self) -> bool:
        return self.program_type in (ProgramType.TIME_BASED, ProgramType.COMBINED)

    @property
    def tracks_days(self) -> bool:
        return self.program_type in (ProgramType.DAY_BASED, ProgramType.COMBINED)


class ClinicalTimeLog(BaseModel):
    """Clinician-recorded care time against an enrollment."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    enrollment_id: str
    clinician_id: str | None = None
    minutes: int = Field(ge=0)
    logged_at: datetime
    billable: bool = True


class TriggerContext(BaseModel):
    """What satisfied a rule: the observations and the window they fell in."""

    model_config = ConfigDict(frozen=True)

    metric_key: str
    observation_ids: tuple[str, ...] = ()
    window_start: datetime | None = None
    window_end: datetime
    observed_value: Any = None
    deviation: float = Field(default=0.0, ge=0.0)


class Alert(BaseModel):
    """A rule firing against one enrollment at one point in time."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    idempotence_key: str
    rule_id: str
    enrollment_id: str
    patient_id: str
    organization_id: str
    clinician_id: str | None = None
    severity: Severity
    risk_score: float = Field(ge=0.0, le=10.0)
    status: AlertStatus = AlertStatus.PENDING
    message: str
    explanation: str
    context: TriggerContext
    triggered_at: datetime
    sla_breach_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None
