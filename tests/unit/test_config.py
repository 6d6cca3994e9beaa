"""
Unit tests for settings loading.
"""

import pytest
from pydantic import ValidationError

from scanflow.core.config import Settings
from scanflow.services.extraction.retry import DEFAULT_RETRY_CONFIG


@pytest.fixture
def clean_env(monkeypatch):
    """Drop variables that would leak into Settings()."""
    for name in (
        "DATABASE_URL",
        "SUPABASE_URL",
        "RETRY_STATUS_CODES",
        "RETRY_MAX_ATTEMPTS",
        "JSON_LOGS",
        "ENVIRONMENT",
        "SENTRY_DSN",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    def test_database_url_uses_asyncpg(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgres://u:p@db.example.com:5432/app")
        settings = Settings(_env_file=None)
        assert settings.database_url == "postgresql+asyncpg://u:p@db.example.com:5432/app"

    def test_supabase_url_trailing_slash(self, clean_env):
        settings = Settings(_env_file=None, supabase_url="https://abc.supabase.co/")
        assert settings.supabase_url == "https://abc.supabase.co"

    def test_json_logs_default_by_environment(self, clean_env):
        assert Settings(_env_file=None, environment="production").use_json_logs is True
        assert Settings(_env_file=None, environment="development").use_json_logs is False
        assert Settings(_env_file=None, environment="production", json_logs=False).use_json_logs is False

    def test_monitoring_enabled_only_with_dsn(self, clean_env):
        assert Settings(_env_file=None).monitoring_enabled is False
        assert Settings(_env_file=None, sentry_dsn="https://k@o0.ingest.sentry.io/1").monitoring_enabled


class TestRetrySettings:
    def test_default_retry_config(self, clean_env):
        config = Settings(_env_file=None).retry_config()
        assert config == DEFAULT_RETRY_CONFIG

    def test_overrides_from_env(self, clean_env):
        clean_env.setenv("RETRY_MAX_ATTEMPTS", "2")
        clean_env.setenv("RETRY_STATUS_CODES", "429, 503")
        config = Settings(_env_file=None).retry_config()
        assert config.max_attempts == 2
        assert config.retryable_status_codes == frozenset({429, 503})

    def test_invalid_status_code(self, clean_env):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, retry_status_codes="429,abc")

    def test_status_code_list_accepted(self, clean_env):
        settings = Settings(_env_file=None, retry_status_codes=[500, 502])
        assert settings.retry_status_code_set == frozenset({500, 502})

    def test_invalid_delay_bounds_rejected(self, clean_env):
        settings = Settings(_env_file=None, retry_initial_delay_ms=5000, retry_max_delay_ms=100)
        with pytest.raises(ValidationError):
            settings.retry_config()
