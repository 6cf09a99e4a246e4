"""
Billing eligibility for one enrollment in one billing month.

Two "near" notions coexist on purpose:
- `status` buckets by percentage (CLOSE at or above `close_percentage`, 80 %
  by default). Summaries and exports use it.
- `near_eligible` flags any unmet dimension with a small positive gap
  (`near_eligible_units`, 3 by default). Proactive clinician prompts use it.
For a 5-minute program with 2 minutes logged the two disagree (40 % is
NOT_ELIGIBLE, but a 3-minute gap is near-eligible). Both are kept as is.

`compute_eligibility` is a pure function of (program, month, minutes, days);
the calculator class only gathers those facts from the stores.
"""

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict

from care_core.config import BillingConfig
from care_core.domain.errors import InvalidBillingMonth, MissingBillingProgram, NotFound
from care_core.domain.models import BillingProgram, Enrollment
from care_core.services.stores import EnrollmentStore, ObservationStore, TimeLogStore

logger = structlog.get_logger(__name__)

_BILLING_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class BillingPeriod:
    """Calendar month as a half-open UTC interval [start, end)."""

    month: str
    start: datetime
    end: datetime

    @property
    def first_day(self) -> date:
        return self.start.date()

    @property
    def last_day(self) -> date:
        return (self.end - timedelta(days=1)).date()


def parse_billing_month(month: str) -> BillingPeriod:
    if not isinstance(month, str) or not _BILLING_MONTH_RE.match(month):
        raise InvalidBillingMonth(f"Billing month must be YYYY-MM, got {month!r}")
    year, number = int(month[:4]), int(month[5:])
    start = datetime(year, number, 1, tzinfo=UTC)
    if number == 12:
        end = datetime(year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(year, number + 1, 1, tzinfo=UTC)
    return BillingPeriod(month=month, start=start, end=end)


class EligibilityStatus(str, Enum):
    ELIGIBLE = "ELIGIBLE"
    CLOSE = "CLOSE"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    NOT_APPLICABLE = "N/A"


Dimension = Literal["minutes", "days"]


class DimensionProgress(BaseModel):
    """Progress of one billing dimension toward its threshold."""

    model_config = ConfigDict(frozen=True)

    dimension: Dimension
    actual: int
    threshold: int
    percentage: float
    met: bool

    @property
    def remaining(self) -> int:
        return max(0, self.threshold - self.actual)


class ActionItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    priority: Literal["high", "medium"]
    dimension: Dimension
    message: str


class EnrollmentEligibility(BaseModel):
    """Per-enrollment, per-month billing readiness."""

    model_config = ConfigDict(frozen=True)

    enrollment_id: str
    patient_id: str
    patient_name: str = ""
    billing_month: str
    program_id: str | None = None
    program_code: str | None = None
    program_name: str | None = None
    status: EligibilityStatus
    eligible: bool
    near_eligible: bool = False
    percentage: float = 0.0
    minutes: int = 0
    days: int = 0
    progress: tuple[DimensionProgress, ...] = ()
    action_items: tuple[ActionItem, ...] = ()
    reimbursement: Decimal = Decimal("0")
    currency: str = "USD"
    reason: str | None = None


def dimension_progress(dimension: Dimension, actual: int, threshold: int) -> DimensionProgress:
    percentage = 0.0 if threshold <= 0 else min(100.0, actual / threshold * 100)
    return DimensionProgress(
        dimension=dimension,
        actual=actual,
        threshold=threshold,
        percentage=percentage,
        met=actual >= threshold,
    )


def _plural(count: int, noun: str) -> str:
    return f"{count} more {noun}{'' if count == 1 else 's'}"


def action_items_for(
    progress: tuple[DimensionProgress, ...], config: BillingConfig
) -> tuple[ActionItem, ...]:
    items: list[ActionItem] = []
    for step in progress:
        if step.met:
            continue
        if step.dimension == "days":
            items.append(
                ActionItem(
                    priority="high" if step.remaining <= config.near_eligible_units else "medium",
                    dimension="days",
                    message=f"Need {_plural(step.remaining, 'day')} of device readings",
                )
            )
        else:
            items.append(
                ActionItem(
                    priority="high"
                    if step.remaining <= config.minutes_high_priority_gap
                    else "medium",
                    dimension="minutes",
                    message=f"Need {_plural(step.remaining, 'minute')} of clinical time",
                )
            )
    return tuple(items)


def _program_in_effect(program: BillingProgram, period: BillingPeriod) -> str | None:
    """Reason the program cannot bill this month, or None."""
    if not program.is_active:
        return f"Billing program {program.code} is inactive"
    if program.effective_from and program.effective_from > period.last_day:
        return f"Billing program {program.code} starts {program.effective_from.isoformat()}"
    if program.effective_to and program.effective_to < period.first_day:
        return f"Billing program {program.code} ended {program.effective_to.isoformat()}"
    return None


def compute_eligibility(
    *,
    enrollment: Enrollment,
    program: BillingProgram | None,
    period: BillingPeriod,
    minutes: int,
    days: int,
    config: BillingConfig | None = None,
) -> EnrollmentEligibility:
    config = config or BillingConfig()
    base: dict[str, Any] = {
        "enrollment_id": enrollment.id,
        "patient_id": enrollment.patient_id,
        "patient_name": enrollment.patient_name,
        "billing_month": period.month,
        "minutes": minutes,
        "days": days,
    }

    if program is None:
        return EnrollmentEligibility(
            **base,
            status=EligibilityStatus.NOT_APPLICABLE,
            eligible=False,
            currency=config.currency,
            reason="No billing program assigned",
        )

    base.update(program_id=program.id, program_code=program.code, program_name=program.name)

    progress: list[DimensionProgress] = []
    if program.tracks_minutes:
        progress.append(dimension_progress("minutes", minutes, program.threshold_minutes or 0))
    if program.tracks_days:
        progress.append(dimension_progress("days", days, program.threshold_days or 0))
    steps = tuple(progress)

    unavailable = _program_in_effect(program, period)
    if unavailable is not None:
        return EnrollmentEligibility(
            **base,
            status=EligibilityStatus.NOT_ELIGIBLE,
            eligible=False,
            progress=steps,
            currency=program.currency,
            reason=unavailable,
        )

    eligible = all(step.met for step in steps)
    percentage = min((step.percentage for step in steps), default=0.0)
    near_eligible = not eligible and any(
        0 < step.remaining <= config.near_eligible_units for step in steps if not step.met
    )

    if eligible:
        status = EligibilityStatus.ELIGIBLE
    elif percentage >= config.close_percentage:
        status = EligibilityStatus.CLOSE
    else:
        status = EligibilityStatus.NOT_ELIGIBLE

    return EnrollmentEligibility(
        **base,
        status=status,
        eligible=eligible,
        near_eligible=near_eligible,
        percentage=percentage,
        progress=steps,
        action_items=action_items_for(steps, config),
        reimbursement=program.reimbursement if eligible else Decimal("0"),
        currency=program.currency,
    )


class BillingEligibilityCalculator:
    """Gathers minutes and data days for an enrollment and classifies them."""

    def __init__(
        self,
        enrollments: EnrollmentStore,
        observations: ObservationStore,
        time_logs: TimeLogStore,
        config: BillingConfig | None = None,
    ) -> None:
        self.enrollments = enrollments
        self.observations = observations
        self.time_logs = time_logs
        self.config = config or BillingConfig()
        self.logger = logger.bind(component="billing_calculator")

    async def clinical_minutes(self, enrollment_id: str, period: BillingPeriod) -> int:
        logs = await self.time_logs.list_time_logs(enrollment_id, period.start, period.end)
        return sum(
            log.minutes
            for log in logs
            if log.billable and period.start <= log.logged_at < period.end
        )

    async def data_days(
        self, enrollment_id: str, program: BillingProgram, period: BillingPeriod
    ) -> int:
        rows = await self.observations.list_observations(
            enrollment_id, since=period.start, until=period.end
        )
        return len(
            {
                obs.recorded_day
                for obs in rows
                if obs.source in program.day_sources and period.start <= obs.recorded_at < period.end
            }
        )

    async def eligibility_for(
        self, enrollment: Enrollment, period: BillingPeriod
    ) -> EnrollmentEligibility:
        """Eligibility for an already-loaded enrollment; no program yields N/A."""
        program = None
        if enrollment.billing_program_id:
            program = await self.enrollments.get_billing_program(enrollment.billing_program_id)
            if program is None:
                self.logger.warning(
                    "billing_program_missing",
                    enrollment_id=enrollment.id,
                    program_id=enrollment.billing_program_id,
                )

        minutes = await self.clinical_minutes(enrollment.id, period)
        days = await self.data_days(enrollment.id, program, period) if program else 0

        result = compute_eligibility(
            enrollment=enrollment,
            program=program,
            period=period,
            minutes=minutes,
            days=days,
            config=self.config,
        )
        self.logger.debug(
            "eligibility_computed",
            enrollment_id=enrollment.id,
            billing_month=period.month,
            status=result.status.value,
            percentage=result.percentage,
        )
        return result

    async def calculate(self, enrollment_id: str, billing_month: str) -> EnrollmentEligibility:
        """Single-enrollment query; raises MissingBillingProgram when none is set."""
        period = parse_billing_month(billing_month)
        enrollment = await self.enrollments.get_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFound("Enrollment", enrollment_id)
        if not enrollment.billing_program_id:
            raise MissingBillingProgram(enrollment_id)
        return await self.eligibility_for(enrollment, period)

