from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stoneridge.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the marketplace auth and negotiation core.

    Immutable once built; every service receives the same instance at
    construction instead of reading the environment itself.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/stoneridge", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: recording notifier, generated JWT secret allowed.",
    )
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")

    # Token service
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("stoneridge-marketplace", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Credential ledger
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lock_duration_minutes: int = env_field(30, "LOCK_DURATION_MINUTES")

    # Device trust
    max_trusted_devices: int = env_field(5, "MAX_TRUSTED_DEVICES")
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS")

    # Account lifecycle tokens
    email_verification_expiry_hours: int = env_field(24, "EMAIL_VERIFICATION_EXPIRY_HOURS")
    password_reset_expiry_minutes: int = env_field(60, "PASSWORD_RESET_EXPIRY_MINUTES")

    # Negotiation
    default_offer_validity_hours: int = env_field(24, "DEFAULT_OFFER_VALIDITY_HOURS")
    offer_sweep_enabled: bool = env_field(True, "OFFER_SWEEP_ENABLED")
    offer_sweep_interval_seconds: int = env_field(60 * 60, "OFFER_SWEEP_INTERVAL_SECONDS")

    # Email notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StoneRidge Marketplace", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore", frozen=True)

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_failed_attempts",
        "lock_duration_minutes",
        "max_trusted_devices",
        "trusted_device_ttl_days",
        "email_verification_expiry_hours",
        "password_reset_expiry_minutes",
        "default_offer_validity_hours",
        "offer_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Per-process secret: tokens do not survive a restart in test mode
        logger.warning("jwt_secret_generated", reason="test_mode")
        object.__setattr__(self, "jwt_secret", secrets.token_urlsafe(48))
        return self


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
