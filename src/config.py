"""
Centralized configuration loader for the scheduled post publishing service.

Loads settings from a YAML file and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - SchedulerSettings: Redis connection, queue policy and validation limits
    - get_settings(): Singleton accessor for SchedulerSettings
    - reset_settings(): Clear the cached singleton (tests, reloads)
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from src.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of src/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


# ===========================================================================
# SCHEDULER SETTINGS
# ===========================================================================


@dataclass
class SchedulerSettings:
    """
    Settings for the scheduled post pipeline.

    Loaded from the ``scheduler`` section of ``config/settings.yaml`` when
    available, falling back to defaults. Environment variables override
    YAML values for deployment-specific configuration.
    """

    # Redis connection
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_url: Optional[str] = None

    # Queue naming
    queue_name: str = "scheduled posts"
    key_prefix: str = "bull"

    # Startup probe and worker polling (seconds)
    probe_timeout_seconds: float = 2.0
    poll_interval_seconds: float = 1.0

    # Durable queue job policy
    remove_on_complete: int = 10  # completed jobs kept as history
    remove_on_fail: int = 50  # failed jobs kept as history
    max_attempts: int = 3
    backoff_delay_ms: int = 2000

    # Request limits
    max_schedule_days: int = 365
    max_content_length: int = 5000

    # Logging
    log_level: str = "INFO"

    @property
    def connection_url(self) -> str:
        """Redis URL, derived from host/port/db/password unless set explicitly."""
        if self.redis_url:
            return self.redis_url
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "SchedulerSettings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated SchedulerSettings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or an environment override has an invalid value.
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

        section = data.get("scheduler", {}) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(
                f"'scheduler' section in {path} must be a mapping"
            )

        known = {f.name for f in fields(cls)}
        unknown = set(section) - known
        if unknown:
            logger.warning("Ignoring unknown scheduler settings: %s", sorted(unknown))

        settings = cls(**{k: v for k, v in section.items() if k in known})
        settings._apply_env_overrides()
        return settings

    def _apply_env_overrides(self) -> None:
        """Override fields from environment variables if set."""
        env_overrides: Dict[str, tuple] = {
            "REDIS_HOST": ("redis_host", str),
            "REDIS_PORT": ("redis_port", int),
            "REDIS_DB": ("redis_db", int),
            "REDIS_PASSWORD": ("redis_password", str),
            "REDIS_URL": ("redis_url", str),
            "SCHEDULER_QUEUE_NAME": ("queue_name", str),
            "SCHEDULER_PROBE_TIMEOUT": ("probe_timeout_seconds", float),
            "LOG_LEVEL": ("log_level", str),
        }
        for env_key, (attr_name, cast_fn) in env_overrides.items():
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            try:
                setattr(self, attr_name, cast_fn(env_val))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[SchedulerSettings] = None


def get_settings() -> SchedulerSettings:
    """
    Get the global SchedulerSettings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = SchedulerSettings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached SchedulerSettings singleton."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required for the Supabase-backed post store
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Redis is optional: without it the in-memory fallback is used
OPTIONAL_ENV_VARS: List[str] = [
    "REDIS_URL",
    "REDIS_HOST",
    "REDIS_PORT",
    "REDIS_PASSWORD",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
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
    "PROJECT_ROOT",
    "SchedulerSettings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
