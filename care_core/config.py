"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Billing thresholds for the near-eligibility bands live here, not in code
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from care_core.domain.models import Severity

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class AlertingConfig(BaseModel):
    """Rule evaluation and alert dispatch settings."""

    missing_data_scan_interval_seconds: float = Field(
        default=3600.0, gt=0.0, description="Wall-clock tick for missing-data rules"
    )
    dispatch_retry_attempts: int = Field(
        default=3, ge=1, description="Attempts to persist an alert before giving up"
    )
    dispatch_retry_backoff_seconds: float = Field(
        default=0.2, ge=0.0, description="Base delay for exponential persistence backoff"
    )
    notification_min_severity: Severity = Field(
        default=Severity.MEDIUM, description="Lowest severity that notifies a clinician"
    )
    max_concurrent_enrollments: int = Field(
        default=10, gt=0, description="Enrollments evaluated in parallel during a scan"
    )

    # Notifier circuit breaker
    notifier_failure_threshold: int = Field(default=5, gt=0)
    notifier_recovery_seconds: int = Field(default=60, gt=0)


class BillingConfig(BaseModel):
    """Billing eligibility classification settings."""

    close_percentage: float = Field(
        default=80.0, gt=0.0, le=100.0, description="Summary bucket: CLOSE at or above this"
    )
    near_eligible_units: int = Field(
        default=3, ge=0, description="Proactive alert: near-eligible within this many units"
    )
    minutes_high_priority_gap: int = Field(
        default=5, ge=0, description="Minutes gap that makes a clinical-time action high priority"
    )
    currency: str = Field(default="USD", min_length=3, max_length=3)
    max_concurrent_enrollments: int = Field(default=10, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> LogLevel:
        v = val.strip().upper()
        return cast(LogLevel, v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO")

    def _severity(val: str) -> Severity:
        try:
            return Severity(val.strip().lower())
        except ValueError:
            return Severity.MEDIUM

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    alerting_config = AlertingConfig(
        missing_data_scan_interval_seconds=float(
            os.getenv("MISSING_DATA_SCAN_INTERVAL_SECONDS", "3600")
        ),
        dispatch_retry_attempts=int(os.getenv("DISPATCH_RETRY_ATTEMPTS", "3")),
        notification_min_severity=_severity(os.getenv("NOTIFICATION_MIN_SEVERITY", "medium")),
    )

    billing_config = BillingConfig(
        close_percentage=float(os.getenv("BILLING_CLOSE_PERCENTAGE", "80")),
        near_eligible_units=int(os.getenv("BILLING_NEAR_ELIGIBLE_UNITS", "3")),
        currency=os.getenv("BILLING_CURRENCY", "USD"),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        alerting=alerting_config,
        billing=billing_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig) -> None:
    """Apply the configured level and renderer to structlog and stdlib logging."""
    logging.basicConfig(level=getattr(logging, config.level), format="%(message)s")
    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nALERTING")
    print(f"Missing-data scan: every {config.alerting.missing_data_scan_interval_seconds}s")
    print(f"Dispatch retries: {config.alerting.dispatch_retry_attempts}")
    print(f"Notify from severity: {config.alerting.notification_min_severity.value}")

    print("\nBILLING")
    print(f"CLOSE band: >= {config.billing.close_percentage}%")
    print(f"Near-eligible: <= {config.billing.near_eligible_units} units remaining")
    print(f"Currency: {config.billing.currency}")


if __name__ == "__main__":
    print_config_summary()
