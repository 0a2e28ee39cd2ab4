"""
Tests for src.config module.

Covers:
    - SchedulerSettings defaults and connection_url
    - SchedulerSettings.from_yaml with missing, valid and broken files
    - Environment variable overrides
    - Singleton get_settings / reset_settings behaviour
    - validate_env
"""

import pytest

from src.config import (
    SchedulerSettings,
    get_settings,
    reset_settings,
    validate_env,
)
from src.exceptions import ConfigurationError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singleton():
    """Ensure the settings singleton is cleared before and after each test."""
    reset_settings()
    yield
    reset_settings()


# ===========================================================================
# 1. Defaults
# ===========================================================================


class TestSchedulerSettingsDefaults:
    """Defaults mirror the queue policy of the original deployment."""

    def test_retry_policy(self):
        settings = SchedulerSettings()
        assert settings.max_attempts == 3
        assert settings.backoff_delay_ms == 2000

    def test_history_retention(self):
        settings = SchedulerSettings()
        assert settings.remove_on_complete == 10
        assert settings.remove_on_fail == 50

    def test_one_year_horizon(self):
        assert SchedulerSettings().max_schedule_days == 365

    def test_connection_url_from_host_and_port(self):
        settings = SchedulerSettings(redis_host="cache", redis_port=6380, redis_db=2)
        assert settings.connection_url == "redis://cache:6380/2"

    def test_connection_url_includes_password(self):
        settings = SchedulerSettings(redis_password="s3cret")
        assert settings.connection_url == "redis://:s3cret@localhost:6379/0"

    def test_explicit_url_wins(self):
        settings = SchedulerSettings(redis_url="rediss://managed:6379/0", redis_host="ignored")
        assert settings.connection_url == "rediss://managed:6379/0"


# ===========================================================================
# 2. from_yaml
# ===========================================================================


class TestFromYaml:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = SchedulerSettings.from_yaml(tmp_path / "nope.yaml")
        assert settings == SchedulerSettings()

    def test_reads_scheduler_section(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "scheduler:\n"
            "  redis_host: redis.internal\n"
            "  max_attempts: 5\n"
            "  queue_name: posts\n",
            encoding="utf-8",
        )
        settings = SchedulerSettings.from_yaml(path)
        assert settings.redis_host == "redis.internal"
        assert settings.max_attempts == 5
        assert settings.queue_name == "posts"

    def test_unknown_keys_are_ignored(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("scheduler:\n  not_a_setting: 1\n", encoding="utf-8")
        settings = SchedulerSettings.from_yaml(path)
        assert not hasattr(settings, "not_a_setting")

    def test_broken_yaml_raises_configuration_error(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("scheduler: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            SchedulerSettings.from_yaml(path)

    def test_non_mapping_section_raises(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("scheduler: 42\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            SchedulerSettings.from_yaml(path)


# ===========================================================================
# 3. Environment overrides
# ===========================================================================


class TestEnvOverrides:
    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("scheduler:\n  redis_host: from-yaml\n", encoding="utf-8")
        monkeypatch.setenv("REDIS_HOST", "from-env")
        monkeypatch.setenv("REDIS_PORT", "6390")

        settings = SchedulerSettings.from_yaml(path)
        assert settings.redis_host == "from-env"
        assert settings.redis_port == 6390

    def test_probe_timeout_is_float(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCHEDULER_PROBE_TIMEOUT", "0.25")
        settings = SchedulerSettings.from_yaml(tmp_path / "missing.yaml")
        assert settings.probe_timeout_seconds == 0.25

    def test_invalid_int_raises(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REDIS_PORT", "not-a-port")
        with pytest.raises(ConfigurationError, match="REDIS_PORT"):
            SchedulerSettings.from_yaml(tmp_path / "missing.yaml")


# ===========================================================================
# 4. Singleton
# ===========================================================================


class TestSingleton:
    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_reset_settings_creates_new_instance(self):
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


# ===========================================================================
# 5. validate_env
# ===========================================================================


class TestValidateEnv:
    def test_strict_raises_when_supabase_missing(self):
        with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
            validate_env(strict=True)

    def test_non_strict_reports_status(self):
        status = validate_env(strict=False)
        assert status["SUPABASE_URL"] is False
        assert status["REDIS_HOST"] is False

    def test_passes_when_required_vars_set(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "key")
        status = validate_env(strict=True)
        assert status["SUPABASE_URL"] is True
        assert status["SUPABASE_SERVICE_KEY"] is True
