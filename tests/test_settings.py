"""
Tests for configuration validation.
"""

from shared.config.settings import Settings


def test_development_defaults_are_valid():
    assert Settings(environment="development").validate_production_config() == []


def test_production_rejects_debug_and_sqlite():
    errors = Settings(
        environment="production", debug=True, database_url="sqlite:///local.db"
    ).validate_production_config()

    assert any("DEBUG" in e for e in errors)
    assert any("SQLite" in e for e in errors)


def test_unknown_leave_policy():
    errors = Settings(leave_fallback_policy="guess").validate_production_config()

    assert any("LEAVE_FALLBACK_POLICY" in e for e in errors)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TAX_RATE_BPS", "2100")
    monkeypatch.setenv("LEAVE_FALLBACK_POLICY", "transfer_to_creator")

    config = Settings()

    assert config.tax_rate_bps == 2100
    assert config.leave_fallback_policy == "transfer_to_creator"


def test_negative_payment_timeout():
    errors = Settings(
        environment="development", payment_processing_timeout_seconds=-1
    ).validate_production_config()

    assert errors == ["PAYMENT_PROCESSING_TIMEOUT_SECONDS must be non-negative"]
