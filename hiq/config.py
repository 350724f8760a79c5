from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hiq.logging import get_logger

logger = get_logger(__name__)


# Consumer mailbox providers refused for access requests
DEFAULT_GENERIC_EMAIL_DOMAINS = (
    "gmail.com",
    "googlemail.com",
    "hotmail.com",
    "hotmail.co.uk",
    "outlook.com",
    "yahoo.com",
    "yahoo.co.uk",
    "icloud.com",
    "live.com",
    "msn.com",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the interview access backend."""

    # Storage and identity provider
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process fallbacks for tests.",
    )
    firebase_credentials_path: str | None = env_field(
        None, "FIREBASE_CREDENTIALS_PATH", description="Service account JSON file"
    )
    firebase_credentials_json: str | None = env_field(
        None, "FIREBASE_CREDENTIALS_JSON", description="Inline service account JSON"
    )
    firebase_project_id: str | None = env_field(None, "FIREBASE_PROJECT_ID")
    redis_url: str | None = env_field(None, "REDIS_URL")

    # Administration
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    default_admin_capabilities: list[str] = env_field(
        ["manage_users"],
        "DEFAULT_ADMIN_CAPABILITIES",
        description="Capabilities granted by scripts/bootstrap_admin.py (comma separated)",
    )
    generic_email_domains: list[str] = env_field(
        list(DEFAULT_GENERIC_EMAIL_DOMAINS), "GENERIC_EMAIL_DOMAINS"
    )

    # Token and session lifetimes
    registration_token_ttl_hours: int = env_field(24, "REGISTRATION_TOKEN_TTL_HOURS")
    registration_max_attempts: int = env_field(5, "REGISTRATION_MAX_ATTEMPTS")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    inactivity_warning_minutes: int = env_field(120, "INACTIVITY_WARNING_MINUTES")

    # Interview access window relative to the scheduled start
    interview_early_access_minutes: int = env_field(15, "INTERVIEW_EARLY_ACCESS_MINUTES")
    interview_late_access_minutes: int = env_field(60, "INTERVIEW_LATE_ACCESS_MINUTES")

    # Background maintenance
    sweep_interval_seconds: int = env_field(900, "SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = env_field(
        500, "SWEEP_BATCH_SIZE", description="Documents per batched write (Firestore caps at 500)"
    )

    # Rate limits for unauthenticated endpoints
    access_request_rate_limit_per_hour: int = env_field(
        10, "ACCESS_REQUEST_RATE_LIMIT_PER_HOUR"
    )
    registration_rate_limit_per_15m: int = env_field(5, "REGISTRATION_RATE_LIMIT_PER_15M")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    resend_api_key: str | None = env_field(
        None, "RESEND_API_KEY", description="Use the Resend HTTP API instead of SMTP"
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("HireIQ", "EMAIL_FROM_NAME")

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    # HTTP
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "default_admin_capabilities",
        "generic_email_domains",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("generic_email_domains")
    @classmethod
    def _lower_domains(cls, value: list[str]) -> list[str]:
        return [domain.lower() for domain in value]

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator(
        "registration_token_ttl_hours",
        "registration_max_attempts",
        "session_ttl_hours",
        "inactivity_warning_minutes",
        "sweep_interval_seconds",
        "sweep_batch_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("interview_early_access_minutes", "interview_late_access_minutes")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("access window bounds cannot be negative")
        return value

    @field_validator("sweep_batch_size")
    @classmethod
    def _cap_batch_size(cls, value: int) -> int:
        if value > 500:
            logger.warning("sweep_batch_size_capped", requested=value, applied=500)
            return 500
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
