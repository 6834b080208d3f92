"""
Centralized configuration loader for the publishing pipeline.

Loads settings from ``config/settings.yaml`` and environment variables,
providing sensible defaults when the file is absent.

Provides:
    - RetrySettings: Backoff parameters for the retry controller
    - PipelineSettings: Global settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for PipelineSettings
    - reset_settings(): Drop the cached singleton (tests, reloads)
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from postflow.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


# ===========================================================================
# RETRY SETTINGS
# ===========================================================================


@dataclass
class RetrySettings:
    """
    Backoff parameters for :class:`~postflow.scheduling.retry.RetryPolicy`.

    Delay for a retryable failure is
    ``min(base_delay_seconds * 2 ** attempt_count, max_delay_seconds)``.
    """

    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0:
            raise ConfigurationError(
                f"retry.base_delay_seconds must be positive, got {self.base_delay_seconds}"
            )
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ConfigurationError(
                "retry.max_delay_seconds must be >= retry.base_delay_seconds"
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"retry.max_attempts must be >= 1, got {self.max_attempts}"
            )


# ===========================================================================
# PIPELINE SETTINGS
# ===========================================================================


@dataclass
class PipelineSettings:
    """
    Global pipeline settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    defaults.  ``POSTFLOW_*`` environment variables override YAML values.
    """

    # Dispatch loop
    worker_count: int = 4
    poll_interval_seconds: float = 15.0
    poll_batch_size: int = 50
    lease_seconds: float = 120.0
    submit_timeout_seconds: float = 60.0

    # Scheduler
    schedule_grace_seconds: float = 30.0

    # Retry controller
    retry: RetrySettings = field(default_factory=RetrySettings)

    # Analytics collector
    analytics_interval_seconds: float = 6 * 3600.0
    analytics_window_days: int = 30
    fetch_timeout_seconds: float = 30.0

    # Reconciliation engine
    reconciliation_interval_seconds: float = 3600.0
    reconciliation_window_days: int = 30
    reconciliation_batch_size: int = 200
    learning_rate: float = 0.05
    max_calibration_step: float = 2.0
    engagement_rate_ceiling: float = 0.10

    # Metric push webhook
    webhook_secret: str = ""
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    lifecycle_log_enabled: bool = True

    def __post_init__(self) -> None:
        positive = (
            "worker_count",
            "poll_interval_seconds",
            "poll_batch_size",
            "lease_seconds",
            "submit_timeout_seconds",
            "analytics_interval_seconds",
            "analytics_window_days",
            "fetch_timeout_seconds",
            "reconciliation_interval_seconds",
            "reconciliation_window_days",
            "reconciliation_batch_size",
            "learning_rate",
            "max_calibration_step",
            "engagement_rate_ceiling",
        )
        for name in positive:
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.schedule_grace_seconds < 0:
            raise ConfigurationError("schedule_grace_seconds cannot be negative")

    # -----------------------------------------------------------------
    # LOADING
    # -----------------------------------------------------------------

    @classmethod
    def env_overrides(cls) -> Dict[str, Tuple[str, Callable[[str], Any]]]:
        """Map of ``POSTFLOW_*`` variables to settings attributes."""
        casts: Dict[str, Callable[[str], Any]] = {
            "worker_count": int,
            "poll_interval_seconds": float,
            "poll_batch_size": int,
            "lease_seconds": float,
            "submit_timeout_seconds": float,
            "schedule_grace_seconds": float,
            "analytics_interval_seconds": float,
            "analytics_window_days": int,
            "fetch_timeout_seconds": float,
            "reconciliation_interval_seconds": float,
            "reconciliation_window_days": int,
            "reconciliation_batch_size": int,
            "learning_rate": float,
            "max_calibration_step": float,
            "engagement_rate_ceiling": float,
            "webhook_secret": str,
            "webhook_host": str,
            "webhook_port": int,
            "log_level": str,
            "log_dir": str,
            "lifecycle_log_enabled": _as_bool,
        }
        return {f"POSTFLOW_{name.upper()}": (name, cast) for name, cast in casts.items()}

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "PipelineSettings":
        """
        Load settings from a YAML file, then apply env overrides.

        If the file does not exist, defaults are used.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated PipelineSettings instance.

        Raises:
            ConfigurationError: If the YAML cannot be parsed or a value is
                invalid.
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

        retry_data = data.pop("retry", {}) or {}
        retry_fields = {f.name for f in fields(RetrySettings)}
        unknown_retry = set(retry_data) - retry_fields
        if unknown_retry:
            logger.warning("Ignoring unknown retry settings: %s", sorted(unknown_retry))

        # Retry env overrides
        retry_env = {
            "POSTFLOW_RETRY_BASE_DELAY_SECONDS": ("base_delay_seconds", float),
            "POSTFLOW_RETRY_MAX_DELAY_SECONDS": ("max_delay_seconds", float),
            "POSTFLOW_RETRY_MAX_ATTEMPTS": ("max_attempts", int),
        }
        retry_kwargs = {k: v for k, v in retry_data.items() if k in retry_fields}
        retry_kwargs.update(cls._read_env(retry_env))

        known = {f.name for f in fields(cls) if f.init}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown settings: %s", sorted(unknown))
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs.update(cls._read_env(cls.env_overrides()))

        try:
            return cls(retry=RetrySettings(**retry_kwargs), **kwargs)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid settings: {exc}") from exc

    @staticmethod
    def _read_env(
        mapping: Dict[str, Tuple[str, Callable[[str], Any]]]
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for env_key, (attr_name, cast_fn) in mapping.items():
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            try:
                values[attr_name] = cast_fn(env_val)
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc
        return values


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[PipelineSettings] = None


def get_settings() -> PipelineSettings:
    """
    Get the global PipelineSettings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = PipelineSettings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Reset the cached settings singleton."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

OPTIONAL_ENV_VARS: List[str] = [
    "LINKEDIN_EMAIL",
    "TWITTER_BEARER_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "POSTFLOW_WEBHOOK_SECRET",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing.

    Returns:
        Dict mapping every known variable name to whether it is set.
    """
    status = {name: bool(os.environ.get(name)) for name in REQUIRED_ENV_VARS + OPTIONAL_ENV_VARS}

    missing = [name for name in REQUIRED_ENV_VARS if not status[name]]
    if missing and strict:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
    for name in OPTIONAL_ENV_VARS:
        if not status[name]:
            logger.info("Optional environment variable %s is not set", name)
    return status


__all__ = [
    "RetrySettings",
    "PipelineSettings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
