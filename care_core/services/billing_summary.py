"""
Organization-level billing summary for a billing month.

Key patterns:
- Per-enrollment results are streamed as they complete with a concurrency
  bound, so a very large organization never blocks on one giant call
- The summary is a pure fold over those results; nothing is persisted
- Enrollments without a billing program are reported as N/A and excluded
  from the eligibility rate
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from care_core.config import BillingConfig
from care_core.domain.models import Enrollment, EnrollmentStatus
from care_core.services.billing import (
    BillingEligibilityCalculator,
    BillingPeriod,
    EligibilityStatus,
    EnrollmentEligibility,
    parse_billing_month,
)
from care_core.services.stores import EnrollmentStore, ObservationStore, TimeLogStore

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

EXPORT_COLUMNS: tuple[str, ...] = (
    "billingMonth",
    "enrollmentId",
    "patientId",
    "patientName",
    "programCode",
    "programName",
    "status",
    "eligible",
    "nearEligible",
    "percentage",
    "clinicalMinutes",
    "minutesThreshold",
    "dataDays",
    "daysThreshold",
    "reimbursement",
    "currency",
    "reason",
    "actionItems",
)


def format_money(amount: Decimal) -> str:
    return str(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


def format_rate(numerator: int, denominator: int) -> str:
    """Percentage to one decimal; '0.0' when there is nothing to rate."""
    if denominator <= 0:
        return "0.0"
    rate = Decimal(numerator * 100) / Decimal(denominator)
    return str(rate.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class ProgramBreakdown(BaseModel):
    """Eligible enrollments and reimbursement for one billing program."""

    program_code: str
    program_name: str
    count: int = 0
    total_reimbursement: Decimal = Decimal("0")
    patients: list[dict[str, str]] = Field(default_factory=list)


class BillingSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    billing_month: str
    total_enrollments: int
    eligible_enrollments: int
    not_eligible_enrollments: int
    near_eligible_enrollments: int
    not_applicable_enrollments: int
    eligibility_rate: str
    total_reimbursement: Decimal
    currency: str
    by_program: dict[str, ProgramBreakdown]
    eligible_patients: tuple[EnrollmentEligibility, ...]
    not_eligible_patients: tuple[EnrollmentEligibility, ...]

    def to_dict(self) -> dict[str, Any]:
        """Response shape of the billing summary query."""
        return {
            "organizationId": self.organization_id,
            "billingMonth": self.billing_month,
            "summary": {
                "totalEnrollments": self.total_enrollments,
                "eligibleEnrollments": self.eligible_enrollments,
                "notEligibleEnrollments": self.not_eligible_enrollments,
                "nearEligibleEnrollments": self.near_eligible_enrollments,
                "notApplicableEnrollments": self.not_applicable_enrollments,
                "eligibilityRate": self.eligibility_rate,
                "totalReimbursement": format_money(self.total_reimbursement),
                "currency": self.currency,
            },
            "byProgram": {
                code: {
                    "programName": breakdown.program_name,
                    "count": breakdown.count,
                    "totalReimbursement": format_money(breakdown.total_reimbursement),
                    "patients": breakdown.patients,
                }
                for code, breakdown in self.by_program.items()
            },
            "eligiblePatients": [r.model_dump(mode="json") for r in self.eligible_patients],
            "notEligiblePatients": [r.model_dump(mode="json") for r in self.not_eligible_patients],
        }


def _ordering(result: EnrollmentEligibility) -> tuple[str, str]:
    return (result.patient_name.casefold(), result.enrollment_id)


def summarize(
    organization_id: str,
    billing_month: str,
    results: Iterable[EnrollmentEligibility],
    currency: str = "USD",
) -> BillingSummary:
    ordered = sorted(results, key=_ordering)
    eligible = [r for r in ordered if r.status == EligibilityStatus.ELIGIBLE]
    not_eligible = [r for r in ordered if r.status != EligibilityStatus.ELIGIBLE]
    close = [r for r in ordered if r.status == EligibilityStatus.CLOSE]
    not_applicable = [r for r in ordered if r.status == EligibilityStatus.NOT_APPLICABLE]
    rateable_not_eligible = len(not_eligible) - len(not_applicable)

    by_program: dict[str, ProgramBreakdown] = {}
    for result in eligible:
        code = result.program_code or ""
        breakdown = by_program.setdefault(
            code, ProgramBreakdown(program_code=code, program_name=result.program_name or code)
        )
        breakdown.count += 1
        breakdown.total_reimbursement += result.reimbursement
        breakdown.patients.append(
            {
                "patientId": result.patient_id,
                "patientName": result.patient_name,
                "reimbursement": format_money(result.reimbursement),
            }
        )

    return BillingSummary(
        organization_id=organization_id,
        billing_month=billing_month,
        total_enrollments=len(ordered),
        eligible_enrollments=len(eligible),
        not_eligible_enrollments=rateable_not_eligible,
        near_eligible_enrollments=len(close),
        not_applicable_enrollments=len(not_applicable),
        eligibility_rate=format_rate(len(eligible), len(eligible) + rateable_not_eligible),
        total_reimbursement=sum((r.reimbursement for r in eligible), Decimal("0")),
        currency=currency,
        by_program=by_program,
        eligible_patients=tuple(eligible),
        not_eligible_patients=tuple(not_eligible),
    )


def _threshold_for(result: EnrollmentEligibility, dimension: str) -> str:
    for step in result.progress:
        if step.dimension == dimension:
            return str(step.threshold)
    return ""


def export_rows(summary: BillingSummary) -> list[dict[str, str]]:
    """One row per enrollment, keyed by EXPORT_COLUMNS, eligible first."""
    rows: list[dict[str, str]] = []
    for result in (*summary.eligible_patients, *summary.not_eligible_patients):
        row = {
            "billingMonth": result.billing_month,
            "enrollmentId": result.enrollment_id,
            "patientId": result.patient_id,
            "patientName": result.patient_name,
            "programCode": result.program_code or "",
            "programName": result.program_name or "",
            "status": result.status.value,
            "eligible": "true" if result.eligible else "false",
            "nearEligible": "true" if result.near_eligible else "false",
            "percentage": f"{result.percentage:.1f}",
            "clinicalMinutes": str(result.minutes),
            "minutesThreshold": _threshold_for(result, "minutes"),
            "dataDays": str(result.days),
            "daysThreshold": _threshold_for(result, "days"),
            "reimbursement": format_money(result.reimbursement),
            "currency": result.currency,
            "reason": result.reason or "",
            "actionItems": "; ".join(item.message for item in result.action_items),
        }
        rows.append({column: row[column] for column in EXPORT_COLUMNS})
    return rows


def _billable_in(enrollment: Enrollment, period: BillingPeriod) -> bool:
    if enrollment.status != EnrollmentStatus.ACTIVE:
        return False
    if enrollment.start_date > period.last_day:
        return False
    return enrollment.end_date is None or enrollment.end_date >= period.first_day


class BillingService:
    """Organization billing query: streamed per-enrollment results and the summary."""

    def __init__(
        self,
        enrollments: EnrollmentStore,
        observations: ObservationStore,
        time_logs: TimeLogStore,
        config: BillingConfig | None = None,
    ) -> None:
        self.config = config or BillingConfig()
        self.enrollments = enrollments
        self.calculator = BillingEligibilityCalculator(
            enrollments, observations, time_logs, self.config
        )
        self.logger = logger.bind(component="billing_service")

    async def stream_eligibility(
        self, organization_id: str, billing_month: str
    ) -> AsyncIterator[EnrollmentEligibility]:
        """
        Yield each enrollment's eligibility as soon as it is computed.

        Closing the iterator early cancels the remaining computations.
        """
        period = parse_billing_month(billing_month)
        enrollments = [
            enrollment
            for enrollment in await self.enrollments.list_enrollments(organization_id)
            if _billable_in(enrollment, period)
        ]
        semaphore = asyncio.Semaphore(self.config.max_concurrent_enrollments)

        async def compute(enrollment: Enrollment) -> EnrollmentEligibility:
            async with semaphore:
                return await self.calculator.eligibility_for(enrollment, period)

        tasks = [asyncio.create_task(compute(enrollment)) for enrollment in enrollments]
        self.logger.info(
            "billing_stream_started",
            organization_id=organization_id,
            billing_month=billing_month,
            enrollments=len(tasks),
        )
        try:
            for next_result in asyncio.as_completed(tasks):
                yield await next_result
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def generate_summary(self, organization_id: str, billing_month: str) -> BillingSummary:
        results = [
            result async for result in self.stream_eligibility(organization_id, billing_month)
        ]
        summary = summarize(organization_id, billing_month, results, self.config.currency)
        self.logger.info(
            "billing_summary_generated",
            organization_id=organization_id,
            billing_month=billing_month,
            total_enrollments=summary.total_enrollments,
            eligible_enrollments=summary.eligible_enrollments,
            eligibility_rate=summary.eligibility_rate,
        )
        return summary
