"""
Tests for configuration management in `care_core/config.py`.

Covers:
- Environment parsing and debug defaults
- Logging level coercion to the expected Literal
- Alerting and billing settings read from the environment
- get_config cache behavior
- AppConfig validation (debug only allowed in development)
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from care_core.config import (
    AlertingConfig,
    AppConfig,
    BillingConfig,
    LoggingConfig,
    configure_logging,
    get_config,
    load_config_from_env,
)
from care_core.domain.models import Severity

_ENV_VARS = (
    "ENVIRONMENT",
    "LOG_LEVEL",
    "MISSING_DATA_SCAN_INTERVAL_SECONDS",
    "DISPATCH_RETRY_ATTEMPTS",
    "NOTIFICATION_MIN_SEVERITY",
    "BILLING_CLOSE_PERCENTAGE",
    "BILLING_NEAR_ELIGIBLE_UNITS",
    "BILLING_CURRENCY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Start every test from a known environment and an empty config cache."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.mark.parametrize(
    "env_value,expected_env,expected_debug",
    [
        ("dev", "development", True),
        ("development", "development", True),
        ("stage", "staging", False),
        ("staging", "staging", False),
        ("prod", "production", False),
        ("anything-else", "production", False),
    ],
)
def test_environment_parsing_and_debug(
    monkeypatch: pytest.MonkeyPatch, env_value: str, expected_env: str, expected_debug: bool
) -> None:
    monkeypatch.setenv("ENVIRONMENT", env_value)

    cfg = load_config_from_env()
    assert cfg.environment == expected_env
    assert cfg.debug is expected_debug
    assert cfg.logging.format == ("console" if expected_debug else "json")


@pytest.mark.parametrize(
    "raw,expected", [("debug", "DEBUG"), ("Warning", "WARNING"), ("verbose", "INFO")]
)
def test_log_level_coercion(monkeypatch: pytest.MonkeyPatch, raw: str, expected: str) -> None:
    monkeypatch.setenv("LOG_LEVEL", raw)
    assert load_config_from_env().logging.level == expected


def test_defaults_without_environment() -> None:
    cfg = load_config_from_env()

    assert cfg.alerting.missing_data_scan_interval_seconds == 3600.0
    assert cfg.alerting.dispatch_retry_attempts == 3
    assert cfg.alerting.notification_min_severity == Severity.MEDIUM
    assert cfg.billing.close_percentage == 80.0
    assert cfg.billing.near_eligible_units == 3
    assert cfg.billing.currency == "USD"


def test_alerting_and_billing_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MISSING_DATA_SCAN_INTERVAL_SECONDS", "900")
    monkeypatch.setenv("DISPATCH_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("NOTIFICATION_MIN_SEVERITY", "HIGH")
    monkeypatch.setenv("BILLING_CLOSE_PERCENTAGE", "75")
    monkeypatch.setenv("BILLING_NEAR_ELIGIBLE_UNITS", "2")
    monkeypatch.setenv("BILLING_CURRENCY", "EUR")

    cfg = load_config_from_env()

    assert cfg.alerting.missing_data_scan_interval_seconds == 900.0
    assert cfg.alerting.dispatch_retry_attempts == 5
    assert cfg.alerting.notification_min_severity == Severity.HIGH
    assert cfg.billing.close_percentage == 75.0
    assert cfg.billing.near_eligible_units == 2
    assert cfg.billing.currency == "EUR"


def test_unknown_severity_falls_back_to_medium(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFICATION_MIN_SEVERITY", "urgent")
    assert load_config_from_env().alerting.notification_min_severity == Severity.MEDIUM


def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DISPATCH_RETRY_ATTEMPTS", "0")
    with pytest.raises(ValueError):
        load_config_from_env()


def test_get_config_cache() -> None:
    c1 = get_config()
    c2 = get_config()
    assert c1 is c2  # same object due to lru_cache


def test_app_config_debug_only_in_dev_validation() -> None:
    with pytest.raises(ValueError, match="debug mode is only allowed"):
        AppConfig(
            environment="production",
            debug=True,
            alerting=AlertingConfig(),
            billing=BillingConfig(),
            logging=LoggingConfig(),
        )


def test_billing_close_percentage_bounds() -> None:
    with pytest.raises(ValueError):
        BillingConfig(close_percentage=0)
    with pytest.raises(ValueError):
        BillingConfig(close_percentage=120)


def test_configure_logging_accepts_both_formats() -> None:
    configure_logging(LoggingConfig(level="DEBUG", format="console"))
    configure_logging(LoggingConfig(level="INFO", format="json"))
