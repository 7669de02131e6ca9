"""
Centralized configuration for the notification pipeline.

Settings come from environment variables (loaded from .env / .env.local by
main.py). Each getter falls back to the documented default.
"""

import os
from dataclasses import dataclass
from datetime import timedelta


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def is_dev_mode() -> bool:
    """Check if running in development mode (--dev flag or DEV_MODE env)."""
    return os.getenv("DEV_MODE", "").lower() in ("true", "1", "yes")


def get_api_port() -> int:
    """Get API server port from env or default."""
    return _int_env("API_PORT", 8000)


def get_sentry_dsn() -> str | None:
    return os.environ.get("SENTRY_DSN") or None


@dataclass(frozen=True)
class PipelineSettings:
    """Tunables for the processing pipeline."""

    scheduler_interval_seconds: int = 60
    scheduler_batch_size: int = 100
    aggregation_interval_seconds: int = 300
    dedup_window: timedelta = timedelta(hours=1)
    max_retries: int = 3
    max_backoff_seconds: int = 300
    delivery_timeout_seconds: float = 10.0
    workers_per_topic: int = 2


def get_pipeline_settings() -> PipelineSettings:
    """Build pipeline settings from environment variables."""
    return PipelineSettings(
        scheduler_interval_seconds=_int_env("SCHEDULER_INTERVAL_SECONDS", 60),
        scheduler_batch_size=_int_env("SCHEDULER_BATCH_SIZE", 100),
        aggregation_interval_seconds=_int_env("AGGREGATION_INTERVAL_SECONDS", 300),
        dedup_window=timedelta(seconds=_int_env("DEDUP_WINDOW_SECONDS", 3600)),
        max_retries=_int_env("MAX_DELIVERY_RETRIES", 3),
        max_backoff_seconds=_int_env("MAX_BACKOFF_SECONDS", 300),
        delivery_timeout_seconds=_float_env("DELIVERY_TIMEOUT_SECONDS", 10.0),
        workers_per_topic=_int_env("WORKERS_PER_TOPIC", 2),
    )


# Channel transports
# Format: (name, description)
CHANNEL_ENV_VARS = [
    ("SENDGRID_API_KEY", "SendGrid API key for email delivery"),
    ("SMS_GATEWAY_URL", "HTTP endpoint of the SMS gateway"),
    ("PUSH_GATEWAY_URL", "HTTP endpoint of the push gateway"),
]


def check_channel_env_vars() -> list[str]:
    """
    Check which channel transports are unconfigured.

    Returns:
        List of warning messages (empty when every channel is configured)
    """
    warnings = []
    for name, description in CHANNEL_ENV_VARS:
        if not os.environ.get(name):
            warnings.append(f"  ⚠ {name}: Not set ({description})")
    return warnings
