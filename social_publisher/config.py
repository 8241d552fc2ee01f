"""
Centralized configuration loader for the social publishing pipeline.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - QueueConfig: Job store backend, attempt budget, backoff and worker limits
    - TokenConfig: Credential refresh lookahead and sweep schedule
    - DispatchConfig: Publisher HTTP timeouts, status polling and stagger
    - PlatformCredentials: OAuth app credentials read from the environment
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Cached accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from social_publisher.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of social_publisher/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)

QUEUE_BACKENDS = ("redis", "memory")


def _apply_env_overrides(
    target: Any, overrides: Dict[str, Tuple[str, Callable[[str], Any]]]
) -> None:
    """Set attributes on *target* from environment variables when present."""
    for env_key, (attr_name, cast_fn) in overrides.items():
        env_val = os.environ.get(env_key)
        if env_val is not None:
            try:
                setattr(target, attr_name, cast_fn(env_val))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc


def _from_section(cls: type, section: Dict[str, Any]) -> Any:
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        logger.warning(
            "[CONFIG] Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown)
        )
    return cls(**{k: v for k, v in section.items() if k in known})


# ===========================================================================
# QUEUE CONFIGURATION
# ===========================================================================


@dataclass
class QueueConfig:
    """
    Publishing queue settings.

    Attempt budget and backoff: 3 attempts, delays of 2 s then 4 s.
    """

    backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "publishing"

    # Retry budget
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_multiplier: float = 2.0

    # Timeouts (seconds)
    enqueue_timeout_seconds: float = 5.0
    job_timeout_seconds: float = 300.0

    # Worker
    concurrency: int = 5
    poll_interval_seconds: float = 1.0
    lease_seconds: float = 600.0
    recover_every_cycles: int = 30
    completed_ttl_seconds: int = 86400

    # Posts sync (minutes)
    sync_interval_minutes: int = 10
    dev_sync_interval_minutes: int = 5

    def __post_init__(self) -> None:
        """Override queue settings from environment variables if set."""
        _apply_env_overrides(self, {
            "QUEUE_BACKEND": ("backend", str),
            "REDIS_URL": ("redis_url", str),
            "QUEUE_KEY_PREFIX": ("key_prefix", str),
            "QUEUE_MAX_ATTEMPTS": ("max_attempts", int),
            "QUEUE_CONCURRENCY": ("concurrency", int),
            "QUEUE_JOB_TIMEOUT": ("job_timeout_seconds", float),
        })
        if self.backend not in QUEUE_BACKENDS:
            raise ConfigurationError(
                f"Unknown queue backend '{self.backend}'. "
                f"Valid backends: {list(QUEUE_BACKENDS)}"
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be >= 1, got {self.max_attempts}"
            )
        if self.concurrency < 1:
            raise ConfigurationError(
                f"concurrency must be >= 1, got {self.concurrency}"
            )
        # A lease that runs out mid-publish lets the job be redelivered
        if self.job_timeout_seconds >= self.lease_seconds:
            raise ConfigurationError(
                f"job_timeout_seconds ({self.job_timeout_seconds:.0f}) must be "
                f"below lease_seconds ({self.lease_seconds:.0f})"
            )


# ===========================================================================
# TOKEN CONFIGURATION
# ===========================================================================


@dataclass
class TokenConfig:
    """Credential lifecycle settings."""

    # Tokens expiring within this window are refreshed proactively
    refresh_threshold_hours: int = 24

    # Used when a long-lived exchange does not report expires_in
    long_lived_default_days: int = 60

    # Pause between profiles during a sweep
    sweep_delay_seconds: float = 1.0

    # Daily sweep at this UTC hour; hourly in development
    refresh_hour_utc: int = 2
    dev_refresh_interval_minutes: int = 60

    # A sweep where more than this share fails is alerted on
    alert_failure_rate: float = 0.5

    http_timeout_seconds: float = 30.0
    refresh_retry_attempts: int = 3

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "TOKEN_REFRESH_THRESHOLD_HOURS": ("refresh_threshold_hours", int),
            "TOKEN_REFRESH_HOUR_UTC": ("refresh_hour_utc", int),
        })
        if not 0 <= self.refresh_hour_utc <= 23:
            raise ConfigurationError(
                f"refresh_hour_utc must be 0-23, got {self.refresh_hour_utc}"
            )


# ===========================================================================
# DISPATCH CONFIGURATION
# ===========================================================================


@dataclass
class DispatchConfig:
    """Publisher HTTP and polling settings."""

    request_timeout_seconds: float = 60.0
    upload_timeout_seconds: float = 300.0

    # Bounded status polling (Instagram containers, TikTok publish status)
    poll_interval_seconds: float = 5.0
    max_polls: int = 60

    # Random delay before short-form video dispatch (REEL / SHORT)
    stagger_min_seconds: float = 1.0
    stagger_max_seconds: float = 3.0

    # Pause between replies when posting a thread
    thread_delay_seconds: float = 1.0

    graph_api_version: str = "v19.0"

    def __post_init__(self) -> None:
        _apply_env_overrides(self, {
            "GRAPH_API_VERSION": ("graph_api_version", str),
        })
        if self.stagger_min_seconds > self.stagger_max_seconds:
            raise ConfigurationError(
                "stagger_min_seconds must not exceed stagger_max_seconds"
            )


# ===========================================================================
# PLATFORM APP CREDENTIALS
# ===========================================================================


@dataclass
class PlatformCredentials:
    """
    OAuth application credentials used by token refreshers.

    Secrets are never read from YAML; they come from the environment only.
    """

    facebook_app_id: Optional[str] = None
    facebook_app_secret: Optional[str] = None
    tiktok_client_key: Optional[str] = None
    tiktok_client_secret: Optional[str] = None
    twitter_client_id: Optional[str] = None
    twitter_client_secret: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PlatformCredentials":
        return cls(
            facebook_app_id=os.environ.get("FACEBOOK_APP_ID"),
            facebook_app_secret=os.environ.get("FACEBOOK_APP_SECRET"),
            tiktok_client_key=os.environ.get("TIKTOK_CLIENT_KEY"),
            tiktok_client_secret=os.environ.get("TIKTOK_CLIENT_SECRET"),
            twitter_client_id=os.environ.get("TWITTER_CLIENT_ID"),
            twitter_client_secret=os.environ.get("TWITTER_CLIENT_SECRET"),
            google_client_id=os.environ.get("GOOGLE_CLIENT_ID"),
            google_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET"),
        )


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    secrets and deployment-specific configuration.
    """

    # "production" or "development"
    environment: str = "production"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    queue: QueueConfig = field(default_factory=QueueConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    platforms: PlatformCredentials = field(default_factory=PlatformCredentials)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or a value is invalid.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        # -----------------------------------------------------------------
        # Nested sections (env overrides applied in each __post_init__)
        # -----------------------------------------------------------------
        queue = _from_section(QueueConfig, data.get("queue") or {})
        tokens = _from_section(TokenConfig, data.get("tokens") or {})
        dispatch = _from_section(DispatchConfig, data.get("dispatch") or {})

        environment = os.environ.get("APP_ENV", data.get("environment", "production"))
        log_level = os.environ.get("LOG_LEVEL", data.get("log_level", "INFO"))

        return cls(
            environment=environment,
            log_level=log_level,
            log_dir=data.get("log_dir", "logs"),
            queue=queue,
            tokens=tokens,
            dispatch=dispatch,
            platforms=PlatformCredentials.from_env(),
        )


# ===========================================================================
# CACHED SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the cached Settings instance.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance. Components receive the
    Settings object explicitly; only the entry point calls this.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """
    Reset the cached Settings instance.

    Useful for testing or when configuration files have been updated
    at runtime.
    """
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the system to function
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Optional: token refresh for a platform is disabled without its app credentials
OPTIONAL_ENV_VARS: List[str] = [
    "FACEBOOK_APP_ID",
    "FACEBOOK_APP_SECRET",
    "TIKTOK_CLIENT_KEY",
    "TIKTOK_CLIENT_SECRET",
    "TWITTER_CLIENT_ID",
    "TWITTER_CLIENT_SECRET",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
]


def validate_env(strict: bool = True, settings: Optional[Settings] = None) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    ``REDIS_URL`` becomes required when the Redis queue backend is selected.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.
        settings: Settings used to decide backend-dependent requirements.
            Defaults to :func:`get_settings`.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    settings = settings or get_settings()
    required = list(REQUIRED_ENV_VARS)
    if settings.queue.backend == "redis":
        required.append("REDIS_URL")

    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in required:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


# ===========================================================================
# PUBLIC API
# ===========================================================================

__all__ = [
    # Config sections
    "QueueConfig",
    "TokenConfig",
    "DispatchConfig",
    "PlatformCredentials",
    "QUEUE_BACKENDS",
    # Settings
    "Settings",
    "get_settings",
    "reset_settings",
    # Environment validation
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    # Constants
    "PROJECT_ROOT",
]
