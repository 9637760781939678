import pytest

from fulfillment.config.settings import Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "Fulfillment Jobs"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.worker_poll_interval_ms == 2000
    assert settings.worker_breaker_cooldown_ms == 60000
    assert settings.breaker_failure_threshold == 3
    assert settings.jobs_per_invocation == 10
    assert settings.invocation_error_budget == 3
    assert settings.job_max_attempts == 5


def test_worker_id_defaults_to_host_and_pid():
    """Test that each process gets a distinct lock owner identity."""
    settings = Settings()
    assert settings.worker_id
    assert "-" in settings.worker_id


def test_production_requires_cron_secret():
    """Test that production environment refuses an open cron endpoint."""
    with pytest.raises(ValueError, match="CRON_SECRET must be set"):
        Settings(environment="production", cron_secret=None)


def test_production_allows_cron_secret():
    """Test that production environment starts with a cron secret."""
    settings = Settings(environment="production", cron_secret="s3cret")
    assert settings.environment == "production"


def test_development_allows_missing_secret():
    settings = Settings(environment="development", cron_secret=None)
    assert settings.cron_secret is None


def test_invalid_poll_interval_rejected():
    with pytest.raises(ValueError):
        Settings(worker_poll_interval_ms=0)


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "Fulfillment Jobs"
