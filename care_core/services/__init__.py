"""
Core services for the application.

This package contains the service implementations: rule evaluation, alert
dedup and dispatch, observation ingestion, rule management and billing
eligibility.
"""

from .stores import Result
from .evaluator import Evaluation, RuleEvaluator
from .alert_engine import AlertEngine, EvaluationReport
from .billing import BillingEligibilityCalculator, EligibilityStatus, EnrollmentEligibility
from .billing_summary import EXPORT_COLUMNS, BillingService, BillingSummary, export_rows
from .ingestion import ObservationIngestor
from .rules import RuleService

__all__ = [
    "Result",
    "Evaluation",
    "RuleEvaluator",
    "AlertEngine",
    "EvaluationReport",
    "BillingEligibilityCalculator",
    "EligibilityStatus",
    "EnrollmentEligibility",
    "EXPORT_COLUMNS",
    "BillingService",
    "BillingSummary",
    "export_rows",
    "ObservationIngestor",
    "RuleService",
]
