"""Unit tests for application settings."""

import pytest
from pydantic import ValidationError

from carewatch.core.config import Settings, get_settings


class TestSettings:
    """Tests for defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CAREWATCH_SENSITIVITY", raising=False)
        settings = Settings(_env_file=None)
        assert settings.sampling_interval_ms == 500
        assert settings.sensitivity == 50.0
        assert settings.enable_fall_detection is True
        assert settings.enable_motion_tracking is True
        assert settings.motion_history_size == 20
        assert settings.alert_cooldown_seconds == 0.0
        assert settings.store_backend == "memory"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CAREWATCH_SAMPLING_INTERVAL_MS", "250")
        monkeypatch.setenv("CAREWATCH_STORE_BACKEND", "redis")
        settings = Settings(_env_file=None)
        assert settings.sampling_interval_ms == 250
        assert settings.store_backend == "redis"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError, match="Invalid log level"):
            Settings(_env_file=None, log_level="LOUD")

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_log_file_path_rejects_directory(self, tmp_path):
        with pytest.raises(ValidationError, match="directory"):
            Settings(_env_file=None, log_file_path=str(tmp_path))

    def test_redis_url_scheme(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, redis_url="http://localhost:6379")

    def test_default_detection_config_clamps_sensitivity(self):
        config = Settings(_env_file=None, sensitivity=180).default_detection_config()
        assert config.sensitivity == 100.0

    def test_default_detection_config_is_fresh(self):
        settings = Settings(_env_file=None)
        first = settings.default_detection_config()
        first.sensitivity = 10
        assert settings.default_detection_config().sensitivity == 50.0

    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, sampling_interval_ms=0)
