"""Tests for settings loading and validation."""
import pytest

from config import Settings, load_settings
from utils.exceptions import ConfigurationError


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.max_connections == 10
        assert settings.default_ttl_ms == 300_000
        assert settings.retry_max_attempts == 3
        assert settings.batch_size == 50
        assert settings.circuit_breaker_threshold == 5
        assert settings.circuit_breaker_reset_ms == 60_000
        assert not settings.is_production

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("MAX_CONNECTIONS", "25")
        monkeypatch.setenv("ENVIRONMENT", "production")
        settings = Settings(_env_file=None)
        assert settings.max_connections == 25
        assert settings.is_production

    def test_min_above_max_is_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(_env_file=None, min_connections=5, max_connections=2)
        assert exc_info.value.details["errors"]

    @pytest.mark.parametrize("overrides", [
        {"max_connections": 0},
        {"retry_max_attempts": 0},
        {"retry_initial_delay_ms": 500, "retry_max_delay_ms": 100},
        {"circuit_breaker_threshold": 0},
        {"retry_jitter_ms": -1},
        {"log_level": "VERBOSE"},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ConfigurationError):
            load_settings(_env_file=None, **overrides)

    def test_write_key_falls_back_to_anon_key(self):
        settings = Settings(_env_file=None, supabase_anon_key="anon")
        assert settings.write_key == "anon"
        settings = Settings(_env_file=None, supabase_anon_key="anon", supabase_service_role_key="service")
        assert settings.write_key == "service"

    def test_safe_config_masks_keys(self):
        settings = Settings(_env_file=None, supabase_anon_key="anon", supabase_service_role_key="service")
        safe = settings.get_safe_config()
        assert safe["supabase_anon_key"] == "***"
        assert safe["supabase_service_role_key"] == "***"
        assert safe["max_connections"] == settings.max_connections
