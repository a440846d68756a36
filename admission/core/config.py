"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Rate limiting tables (rules, policy overrides, path lists) can be supplied
as JSON through the RATE_LIMIT_* variables. They are read once at startup and
turned into an immutable AdmissionConfig (see admission.core.rules).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ first
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=False)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) populates values from environment variables, but
    static type checkers treat required fields as constructor arguments.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_redis_settings() -> "RedisSettings":
    return RedisSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    version: str = Field(
        "0.1.0",
        description="Service version reported by the status endpoint",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field(
        "json",
        description="Log line format",
    )
    output: Literal["stdout", "file"] = Field(
        "stdout",
        description="Where log records are written",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file",
    )
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to accept and propagate the request id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Connection settings for the shared counter store."""

    url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL (use rediss:// over untrusted networks)",
    )
    key_prefix: str = Field(
        "",
        description="Optional namespace prepended to every counter key",
    )
    socket_timeout_ms: int = Field(
        250,
        description="Socket connect/read timeout for Redis round trips",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Admission control configuration.

    ``rules`` replaces the built-in route table when set; ``policies`` is
    merged over the built-in registry by name. Both are JSON in the
    environment, e.g.::

        RATE_LIMIT_POLICIES='{"api": {"window_ms": 60000, "max_requests": 500}}'
    """

    enabled: bool = Field(True, description="Globally enable admission control")
    store: Literal["redis", "memory"] = Field(
        "redis",
        description="Counter store backend; memory is per-process (dev/test only)",
    )
    algorithm: Literal["fixed_window", "sliding_window"] = Field(
        "fixed_window",
        description="Counting algorithm used by the limiter engine",
    )
    store_timeout_ms: int = Field(
        250,
        description="Upper bound on a counter store round trip before failing open",
        ge=1,
    )
    trusted_proxy_count: int = Field(
        0,
        description=(
            "Number of trusted reverse proxies appending to X-Forwarded-For. "
            "0 trusts the first hop."
        ),
        ge=0,
    )
    penalty_enabled: bool = Field(
        False,
        description="Shrink budgets of client IPs that keep exceeding their limits",
    )
    penalty_ttl_ms: int = Field(
        24 * 60 * 60 * 1000,
        description="How long recorded violations are remembered",
        ge=1,
    )
    penalty_max_multiplier: int = Field(
        16,
        description="Upper bound on the budget divisor (2 ** violations)",
        ge=1,
    )
    limited_prefix: str = Field(
        "/api/",
        description="Only paths under this prefix are rate limited",
    )
    excluded_paths: list[str] | None = Field(
        None,
        description="Path prefixes that bypass admission control entirely",
    )
    strict_paths: list[str] | None = Field(
        None,
        description="Path prefixes governed by the strict policy",
    )
    user_limit_excluded_paths: list[str] | None = Field(
        None,
        description="Path prefixes that are never limited per user (e.g. webhooks)",
    )
    whitelisted_ips: list[str] = Field(
        default_factory=list,
        description="Client IPs that are never rate limited",
    )
    rules: list[dict[str, Any]] | None = Field(
        None,
        description="Ordered route rule table (replaces the built-in table)",
    )
    policies: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Policy definitions merged over the built-in registry",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Nested settings are created via default_factory so env loading works.
settings = Settings()
