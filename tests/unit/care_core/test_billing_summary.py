"""
Tests for the organization billing summary and export rows.
"""

import time
from contextlib import aclosing
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from adapters.memory.stores import MemoryBackend
from adapters.rtm.catalog import billing_programs
from care_core.config import BillingConfig
from care_core.domain.errors import InvalidBillingMonth
from care_core.domain.models import ClinicalTimeLog, EnrollmentStatus, ObservationSource
from care_core.services.billing import EligibilityStatus, compute_eligibility, parse_billing_month
from care_core.services.billing_summary import (
    EXPORT_COLUMNS,
    BillingService,
    export_rows,
    format_money,
    format_rate,
    summarize,
)
from conftest import ORG_ID, make_enrollment, make_observation


@pytest.fixture
def service(backend: MemoryBackend) -> BillingService:
    return BillingService(backend.enrollments, backend.observations, backend.time_logs)


@pytest.fixture
def january_org(backend: MemoryBackend) -> MemoryBackend:
    """
    One eligible CCM enrollment (22 minutes), one RPM enrollment short on
    days (10 of 16), one without a program, plus enrollments that must be
    left out: inactive, ended before January, and another organization's.
    """
    add = backend.enrollments.add_enrollment
    add(make_enrollment(id="enr-ccm", patient_id="pat-ccm", patient_name="Blake Chen",
                        billing_program_id="CMS_CCM_2025", start_date=date(2024, 12, 1)))
    add(make_enrollment(id="enr-rpm", patient_id="pat-rpm", patient_name="Casey Okafor",
                        billing_program_id="CMS_RPM_2025", start_date=date(2024, 12, 1)))
    add(make_enrollment(id="enr-none", patient_id="pat-none", patient_name="Avery Stone"))
    add(make_enrollment(id="enr-paused", patient_id="pat-paused", billing_program_id="CMS_CCM_2025",
                        status=EnrollmentStatus.INACTIVE))
    add(make_enrollment(id="enr-ended", patient_id="pat-ended", billing_program_id="CMS_CCM_2025",
                        start_date=date(2024, 10, 1), end_date=date(2024, 12, 31)))
    add(make_enrollment(id="enr-other", patient_id="pat-other", organization_id="org-other",
                        billing_program_id="CMS_CCM_2025"))

    for minutes, day in [(12, 3), (10, 17)]:
        backend.time_logs.add(
            ClinicalTimeLog(enrollment_id="enr-ccm", minutes=minutes, logged_at=datetime(2025, 1, day, 15, tzinfo=UTC))
        )
    return backend


async def add_device_days(backend: MemoryBackend, enrollment_id: str, days: int) -> None:
    start = datetime(2025, 1, 1, 8, tzinfo=UTC)
    for day in range(days):
        await backend.observations.append(
            make_observation(
                110 + day,
                start + timedelta(days=day),
                metric_key="blood_glucose",
                enrollment_id=enrollment_id,
                source=ObservationSource.DEVICE,
            )
        )


class TestFormatting:
    @pytest.mark.parametrize(
        "numerator,denominator,expected",
        [(1, 2, "50.0"), (2, 3, "66.7"), (1, 8, "12.5"), (0, 5, "0.0"), (0, 0, "0.0"), (3, 3, "100.0")],
    )
    def test_format_rate(self, numerator: int, denominator: int, expected: str) -> None:
        assert format_rate(numerator, denominator) == expected

    def test_format_money_rounds_half_up(self) -> None:
        assert format_money(Decimal("52.375")) == "52.38"
        assert format_money(Decimal("0")) == "0.00"


class TestSummarize:
    """The summary is a pure fold over per-enrollment results."""

    def test_empty_organization(self) -> None:
        summary = summarize(ORG_ID, "2025-01", [])

        assert summary.total_enrollments == 0
        assert summary.eligibility_rate == "0.0"
        assert summary.to_dict()["summary"]["totalReimbursement"] == "0.00"

    def test_close_enrollments_count_as_not_eligible_and_near(self) -> None:
        ccm = next(p for p in billing_programs() if p.code == "CMS_CCM_2025")
        period = parse_billing_month("2025-01")
        results = [
            compute_eligibility(
                enrollment=make_enrollment(id=f"enr-{minutes}", patient_name=name),
                program=ccm,
                period=period,
                minutes=minutes,
                days=0,
            )
            for name, minutes in [("Zed", 25), ("Amy", 17), ("Bo", 2)]
        ]

        summary = summarize(ORG_ID, "2025-01", results)

        assert summary.eligible_enrollments == 1
        assert summary.not_eligible_enrollments == 2
        assert summary.near_eligible_enrollments == 1
        assert summary.eligibility_rate == "33.3"
        assert [r.patient_name for r in summary.not_eligible_patients] == ["Amy", "Bo"]


class TestBillingService:
    """Organization query over the stores."""

    @pytest.mark.asyncio
    async def test_january_summary(self, january_org: MemoryBackend, service: BillingService) -> None:
        await add_device_days(january_org, "enr-rpm", 10)

        summary = await service.generate_summary(ORG_ID, "2025-01")
        body = summary.to_dict()

        assert body["organizationId"] == ORG_ID
        assert body["billingMonth"] == "2025-01"
        assert body["summary"] == {
            "totalEnrollments": 3,
            "eligibleEnrollments": 1,
            "notEligibleEnrollments": 1,
            "nearEligibleEnrollments": 0,
            "notApplicableEnrollments": 1,
            "eligibilityRate": "50.0",
            "totalReimbursement": "52.37",
            "currency": "USD",
        }
        assert body["byProgram"] == {
            "CMS_CCM_2025": {
                "programName": "CMS Chronic Care Management 2025",
                "count": 1,
                "totalReimbursement": "52.37",
                "patients": [{"patientId": "pat-ccm", "patientName": "Blake Chen", "reimbursement": "52.37"}],
            }
        }
        assert [p["enrollment_id"] for p in body["eligiblePatients"]] == ["enr-ccm"]
        # sorted by patient name; N/A enrollments are listed but not rated
        assert [p["enrollment_id"] for p in body["notEligiblePatients"]] == ["enr-none", "enr-rpm"]
        assert body["notEligiblePatients"][0]["status"] == "N/A"

    @pytest.mark.asyncio
    async def test_rpm_reaching_sixteen_days(self, january_org: MemoryBackend, service: BillingService) -> None:
        await add_device_days(january_org, "enr-rpm", 16)

        summary = await service.generate_summary(ORG_ID, "2025-01")

        assert summary.eligible_enrollments == 2
        assert summary.eligibility_rate == "100.0"
        assert summary.total_reimbursement == Decimal("116.90")

    @pytest.mark.asyncio
    async def test_summary_is_idempotent(self, january_org: MemoryBackend, service: BillingService) -> None:
        await add_device_days(january_org, "enr-rpm", 14)

        first = await service.generate_summary(ORG_ID, "2025-01")
        second = await service.generate_summary(ORG_ID, "2025-01")

        assert first.to_dict() == second.to_dict()
        assert first.near_eligible_enrollments == 1

    @pytest.mark.asyncio
    async def test_stream_yields_every_billable_enrollment(
        self, january_org: MemoryBackend, service: BillingService
    ) -> None:
        seen = {result.enrollment_id async for result in service.stream_eligibility(ORG_ID, "2025-01")}
        assert seen == {"enr-ccm", "enr-rpm", "enr-none"}

    @pytest.mark.asyncio
    async def test_closing_the_stream_early(self, january_org: MemoryBackend, service: BillingService) -> None:
        async with aclosing(service.stream_eligibility(ORG_ID, "2025-01")) as stream:
            async for result in stream:
                assert result.billing_month == "2025-01"
                break

    @pytest.mark.asyncio
    async def test_invalid_month(self, service: BillingService) -> None:
        with pytest.raises(InvalidBillingMonth):
            await service.generate_summary(ORG_ID, "2025-1")

    @pytest.mark.asyncio
    async def test_currency_comes_from_config(self, january_org: MemoryBackend) -> None:
        service = BillingService(
            january_org.enrollments,
            january_org.observations,
            january_org.time_logs,
            BillingConfig(currency="EUR"),
        )
        summary = await service.generate_summary(ORG_ID, "2025-01")
        assert summary.currency == "EUR"

    @pytest.mark.performance
    @pytest.mark.asyncio
    async def test_summary_performance_baseline(self, backend: MemoryBackend, service: BillingService) -> None:
        """Establish a baseline for a mid-sized organization."""
        for i in range(300):
            backend.enrollments.add_enrollment(
                make_enrollment(id=f"enr-{i}", patient_id=f"pat-{i}", billing_program_id="CMS_CCM_2025")
            )
            backend.time_logs.add(
                ClinicalTimeLog(enrollment_id=f"enr-{i}", minutes=i % 30, logged_at=datetime(2025, 1, 10, tzinfo=UTC))
            )

        start = time.perf_counter()
        summary = await service.generate_summary(ORG_ID, "2025-01")
        elapsed = time.perf_counter() - start

        assert summary.total_enrollments == 300
        assert elapsed < 5.0


class TestExportRows:
    @pytest.mark.asyncio
    async def test_rows_follow_export_columns(self, january_org: MemoryBackend, service: BillingService) -> None:
        await add_device_days(january_org, "enr-rpm", 10)
        rows = export_rows(await service.generate_summary(ORG_ID, "2025-01"))

        assert all(list(row) == list(EXPORT_COLUMNS) for row in rows)
        assert [row["enrollmentId"] for row in rows] == ["enr-ccm", "enr-none", "enr-rpm"]

        ccm, none, rpm = rows
        assert ccm["eligible"] == "true"
        assert ccm["clinicalMinutes"] == "22"
        assert ccm["minutesThreshold"] == "20"
        assert ccm["daysThreshold"] == ""
        assert ccm["reimbursement"] == "52.37"
        assert none["status"] == EligibilityStatus.NOT_APPLICABLE.value
        assert none["reason"] == "No billing program assigned"
        assert rpm["status"] == "NOT_ELIGIBLE"
        assert rpm["percentage"] == "62.5"
        assert rpm["dataDays"] == "10"
        assert rpm["actionItems"] == "Need 6 more days of device readings"
