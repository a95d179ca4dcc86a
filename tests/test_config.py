"""
Tests for configuration loading.
"""

import pytest
from decimal import Decimal

from pydantic import ValidationError

from recurring_ledger.config import (
    EndTimePolicy,
    LedgerSettings,
    SchedulerSettings,
    get_settings,
    validate_all_settings,
)


class TestSchedulerSettings:
    """Scheduler knobs."""

    def test_defaults(self):
        """Test the default tick is one minute with bounded catch-up."""
        settings = SchedulerSettings()
        assert settings.tick_interval_seconds == 60.0
        assert settings.max_occurrences_per_rule == 31
        assert settings.end_time_policy == EndTimePolicy.ANNOTATE

    def test_tick_cannot_exceed_a_minute(self):
        """Test ticks coarser than rule precision are rejected."""
        with pytest.raises(ValidationError):
            SchedulerSettings(tick_interval_seconds=61)

    def test_reads_environment(self, monkeypatch):
        """Test SCHEDULER_* variables override defaults."""
        monkeypatch.setenv("SCHEDULER_MAX_CONCURRENCY", "8")
        monkeypatch.setenv("SCHEDULER_END_TIME_POLICY", "enforce_window")
        settings = SchedulerSettings()
        assert settings.max_concurrency == 8
        assert settings.end_time_policy == EndTimePolicy.ENFORCE_WINDOW


class TestLedgerSettings:
    """Ledger arithmetic settings."""

    def test_quantums(self):
        """Test scales translate into decimal quantums."""
        settings = LedgerSettings(amount_scale=2, rate_scale=6)
        assert settings.amount_quantum == Decimal("0.01")
        assert settings.rate_quantum == Decimal("0.000001")

    def test_rejects_unknown_rounding(self):
        """Test rounding must name a decimal rounding mode."""
        with pytest.raises(ValidationError):
            LedgerSettings(rounding="ROUND_NEAREST")

    def test_rejects_unknown_zone(self):
        """Test the default zone must exist in the tz database."""
        with pytest.raises(ValidationError):
            LedgerSettings(default_timezone="Nowhere/Special")

    def test_base_currency_upper_cased(self):
        """Test the default base currency is normalized."""
        assert LedgerSettings(default_base_currency="eur").default_base_currency == "EUR"


class TestValidateAll:
    """Startup checks."""

    def test_reports_invalid_section(self, monkeypatch):
        """Test a bad environment value is reported instead of raised."""
        get_settings.cache_clear()
        monkeypatch.setenv("SCHEDULER_MAX_CONCURRENCY", "0")
        try:
            results = validate_all_settings()
        finally:
            get_settings.cache_clear()

        assert results["database"] is True
        assert results["scheduler"] is False
        assert "scheduler_error" in results
