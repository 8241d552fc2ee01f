"""
Tests for social_publisher.config.

Covers:
    1. QueueConfig defaults, env overrides and validation
    2. TokenConfig defaults and refresh hour validation
    3. DispatchConfig stagger bounds
    4. PlatformCredentials.from_env
    5. Settings defaults and from_yaml
    6. get_settings / reset_settings caching
    7. validate_env
"""

import pytest

from social_publisher.config import (
    DispatchConfig,
    PlatformCredentials,
    QueueConfig,
    Settings,
    TokenConfig,
    get_settings,
    reset_settings,
    validate_env,
)
from social_publisher.exceptions import ConfigurationError


# ===========================================================================
# 1. QueueConfig
# ===========================================================================


class TestQueueConfig:
    """Tests for QueueConfig defaults and environment overrides."""

    def test_defaults(self):
        config = QueueConfig()
        assert config.backend == "redis"
        assert config.max_attempts == 3
        assert config.backoff_base_seconds == 2.0
        assert config.backoff_multiplier == 2.0
        assert config.enqueue_timeout_seconds == 5.0
        assert config.sync_interval_minutes == 10

    def test_env_override_max_attempts(self, monkeypatch):
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "5")
        assert QueueConfig().max_attempts == 5

    def test_env_override_backend_and_url(self, monkeypatch):
        monkeypatch.setenv("QUEUE_BACKEND", "memory")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        config = QueueConfig()
        assert config.backend == "memory"
        assert config.redis_url == "redis://cache:6379/2"

    def test_env_override_invalid_value_raises(self, monkeypatch):
        monkeypatch.setenv("QUEUE_CONCURRENCY", "many")
        with pytest.raises(ConfigurationError, match="QUEUE_CONCURRENCY"):
            QueueConfig()

    def test_unknown_backend_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown queue backend"):
            QueueConfig(backend="kafka")

    @pytest.mark.parametrize("field_name", ["max_attempts", "concurrency"])
    def test_non_positive_limits_raise(self, field_name):
        with pytest.raises(ConfigurationError, match=field_name):
            QueueConfig(**{field_name: 0})

    def test_job_timeout_must_fit_in_lease(self):
        with pytest.raises(ConfigurationError, match="must be below lease_seconds"):
            QueueConfig(job_timeout_seconds=600, lease_seconds=600)

    def test_env_job_timeout_above_lease_raises(self, monkeypatch):
        monkeypatch.setenv("QUEUE_JOB_TIMEOUT", "900")
        with pytest.raises(ConfigurationError, match="job_timeout_seconds"):
            QueueConfig()


# ===========================================================================
# 2. TokenConfig
# ===========================================================================


class TestTokenConfig:
    def test_defaults(self):
        config = TokenConfig()
        assert config.refresh_threshold_hours == 24
        assert config.long_lived_default_days == 60
        assert config.refresh_hour_utc == 2
        assert config.alert_failure_rate == 0.5

    def test_env_override_threshold(self, monkeypatch):
        monkeypatch.setenv("TOKEN_REFRESH_THRESHOLD_HOURS", "48")
        assert TokenConfig().refresh_threshold_hours == 48

    @pytest.mark.parametrize("hour", [-1, 24])
    def test_refresh_hour_out_of_range(self, hour):
        with pytest.raises(ConfigurationError, match="refresh_hour_utc"):
            TokenConfig(refresh_hour_utc=hour)


# ===========================================================================
# 3. DispatchConfig
# ===========================================================================


class TestDispatchConfig:
    def test_default_stagger_window(self):
        config = DispatchConfig()
        assert (config.stagger_min_seconds, config.stagger_max_seconds) == (1.0, 3.0)

    def test_inverted_stagger_raises(self):
        with pytest.raises(ConfigurationError, match="stagger"):
            DispatchConfig(stagger_min_seconds=5.0, stagger_max_seconds=1.0)

    def test_graph_version_env_override(self, monkeypatch):
        monkeypatch.setenv("GRAPH_API_VERSION", "v20.0")
        assert DispatchConfig().graph_api_version == "v20.0"


# ===========================================================================
# 4. PlatformCredentials
# ===========================================================================


class TestPlatformCredentials:
    def test_from_env_reads_values(self, monkeypatch):
        monkeypatch.setenv("FACEBOOK_APP_ID", "fb-id")
        monkeypatch.setenv("TIKTOK_CLIENT_KEY", "tt-key")

        creds = PlatformCredentials.from_env()

        assert creds.facebook_app_id == "fb-id"
        assert creds.tiktok_client_key == "tt-key"
        assert creds.google_client_id is None


# ===========================================================================
# 5. Settings
# ===========================================================================


class TestSettings:
    """Tests for Settings dataclass defaults and from_yaml."""

    def test_defaults(self):
        settings = Settings()
        assert settings.environment == "production"
        assert settings.log_level == "INFO"
        assert not settings.is_development
        assert isinstance(settings.queue, QueueConfig)

    def test_from_yaml_missing_file_returns_defaults(self, tmp_path):
        settings = Settings.from_yaml(tmp_path / "nonexistent.yaml")
        assert isinstance(settings, Settings)
        assert settings.queue.max_attempts == 3

    def test_from_yaml_loads_custom_values(self, tmp_path):
        yaml_content = (
            "environment: development\n"
            "log_dir: /tmp/publisher-logs\n"
            "queue:\n"
            "  backend: memory\n"
            "  max_attempts: 4\n"
            "tokens:\n"
            "  refresh_hour_utc: 5\n"
            "dispatch:\n"
            "  max_polls: 10\n"
        )
        yaml_path = tmp_path / "settings.yaml"
        yaml_path.write_text(yaml_content, encoding="utf-8")

        settings = Settings.from_yaml(yaml_path)

        assert settings.is_development
        assert settings.log_dir == "/tmp/publisher-logs"
        assert settings.queue.backend == "memory"
        assert settings.queue.max_attempts == 4
        # Unspecified values keep their defaults
        assert settings.queue.concurrency == 5
        assert settings.tokens.refresh_hour_utc == 5
        assert settings.dispatch.max_polls == 10

    def test_from_yaml_ignores_unknown_keys(self, tmp_path):
        yaml_path = tmp_path / "settings.yaml"
        yaml_path.write_text("queue:\n  backend: memory\n  flavour: mint\n", encoding="utf-8")

        settings = Settings.from_yaml(yaml_path)

        assert settings.queue.backend == "memory"

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        yaml_path = tmp_path / "settings.yaml"
        yaml_path.write_text("environment: production\nqueue:\n  max_attempts: 4\n", encoding="utf-8")
        monkeypatch.setenv("APP_ENV", "development")
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "6")

        settings = Settings.from_yaml(yaml_path)

        assert settings.environment == "development"
        assert settings.queue.max_attempts == 6

    def test_from_yaml_invalid_yaml_raises(self, tmp_path):
        yaml_path = tmp_path / "bad.yaml"
        yaml_path.write_text("{{{{invalid yaml: [", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="Failed to parse"):
            Settings.from_yaml(yaml_path)

    def test_from_yaml_invalid_value_raises(self, tmp_path):
        yaml_path = tmp_path / "settings.yaml"
        yaml_path.write_text("queue:\n  backend: kafka\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            Settings.from_yaml(yaml_path)


# ===========================================================================
# 6. get_settings / reset_settings
# ===========================================================================


class TestSettingsCache:
    def test_cached_until_reset(self):
        reset_settings()
        try:
            first = get_settings()
            assert get_settings() is first
            reset_settings()
            assert get_settings() is not first
        finally:
            reset_settings()


# ===========================================================================
# 7. validate_env
# ===========================================================================


class TestValidateEnv:
    def test_missing_required_raises(self):
        with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
            validate_env(strict=True, settings=Settings())

    def test_redis_url_required_for_redis_backend(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "key")

        with pytest.raises(ConfigurationError, match="REDIS_URL"):
            validate_env(strict=True, settings=Settings(queue=QueueConfig(backend="redis")))

    def test_memory_backend_does_not_need_redis(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "key")

        status = validate_env(strict=True, settings=Settings(queue=QueueConfig(backend="memory")))

        assert status["SUPABASE_URL"] is True
        assert "REDIS_URL" not in status
        assert status["FACEBOOK_APP_ID"] is False

    def test_non_strict_reports_missing(self):
        status = validate_env(strict=False, settings=Settings())
        assert status["SUPABASE_URL"] is False
        assert status["REDIS_URL"] is False
