"""Tests for startup configuration validation"""
import pytest

from engagement import config
from engagement.exceptions import ConfigurationError


class TestConfigValidation:
    """validate_config reads the module-level settings"""

    def test_defaults_are_valid(self, monkeypatch):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "memory")
        monkeypatch.setattr(config, "ENVIRONMENT", "development")
        config.validate_config()

    def test_unknown_storage_backend(self, monkeypatch):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "sqlite")
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_config()
        assert exc_info.value.config_key == "STORAGE_BACKEND"

    def test_postgres_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "postgres")
        monkeypatch.setattr(config, "DATABASE_URL", "")
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_config()
        assert exc_info.value.config_key == "DATABASE_URL"

    def test_invalid_timezone(self, monkeypatch):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "memory")
        monkeypatch.setattr(config, "STREAK_TIMEZONE", "Mars/Olympus_Mons")
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_config()
        assert exc_info.value.config_key == "STREAK_TIMEZONE"

    @pytest.mark.parametrize("key", [
        "REDEMPTION_TOKEN_TTL_DAYS",
        "STREAK_SWEEP_INTERVAL_SECONDS",
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        "EVENT_QUEUE_MAXSIZE",
        "STORAGE_TIMEOUT_SECONDS",
    ])
    def test_non_positive_values_rejected(self, monkeypatch, key):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "memory")
        monkeypatch.setattr(config, key, 0)
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_config()
        assert exc_info.value.config_key == key

    def test_production_requires_signing_secret(self, monkeypatch):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "memory")
        monkeypatch.setattr(config, "ENVIRONMENT", "production")
        monkeypatch.setattr(config, "TOKEN_SIGNING_SECRET", config.DEV_TOKEN_SECRET)
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate_config()
        assert exc_info.value.config_key == "TOKEN_SIGNING_SECRET"

    def test_production_with_secret(self, monkeypatch):
        monkeypatch.setattr(config, "STORAGE_BACKEND", "memory")
        monkeypatch.setattr(config, "ENVIRONMENT", "production")
        monkeypatch.setattr(config, "TOKEN_SIGNING_SECRET", "a-real-secret")
        config.validate_config()
