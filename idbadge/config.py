from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idbadge.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Key-value store implementations the runtime can wire up."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("idbadge", "REDIS_KEY_PREFIX")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for memory store persistence; unset keeps state in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Badge signing
    badge_secret: str = env_field(None, "BADGE_SECRET", validate_default=True)
    badge_issuer: str = env_field("idbadge", "BADGE_ISSUER")
    badge_audience: str = env_field("idbadge-clients", "BADGE_AUDIENCE")
    badge_ttl_minutes: int = env_field(180, "BADGE_TTL_MINUTES")
    partial_badge_ttl_minutes: int = env_field(15, "PARTIAL_BADGE_TTL_MINUTES")
    secure_cookies: bool = env_field(True, "SECURE_COOKIES")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets and backup codes; defaults to BADGE_SECRET",
    )

    # Outbound email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("idbadge", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Outbound SMS
    sms_gateway_url: str | None = env_field(
        None, "SMS_GATEWAY_URL", description="HTTP endpoint accepting {to, body}; unset logs instead"
    )
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")

    # Limited actions: (limit, window) per kind
    failed_login_limit: int = env_field(10, "FAILED_LOGIN_LIMIT")
    failed_login_window_seconds: int = env_field(60 * 60, "FAILED_LOGIN_WINDOW_SECONDS")
    account_invitation_limit: int = env_field(12, "ACCOUNT_INVITATION_LIMIT")
    account_invitation_window_seconds: int = env_field(
        24 * 60 * 60, "ACCOUNT_INVITATION_WINDOW_SECONDS"
    )
    enable_sms_mfa_limit: int = env_field(8, "ENABLE_SMS_MFA_LIMIT")
    enable_sms_mfa_window_seconds: int = env_field(
        24 * 60 * 60, "ENABLE_SMS_MFA_WINDOW_SECONDS"
    )
    activation_email_limit: int = env_field(5, "ACTIVATION_EMAIL_LIMIT")
    activation_email_window_seconds: int = env_field(
        24 * 60 * 60, "ACTIVATION_EMAIL_WINDOW_SECONDS"
    )
    registration_ip_limit: int = env_field(10, "REGISTRATION_IP_LIMIT")
    registration_ip_window_seconds: int = env_field(
        24 * 60 * 60, "REGISTRATION_IP_WINDOW_SECONDS"
    )
    forgot_password_ip_limit: int = env_field(20, "FORGOT_PASSWORD_IP_LIMIT")
    forgot_password_ip_window_seconds: int = env_field(
        24 * 60 * 60, "FORGOT_PASSWORD_IP_WINDOW_SECONDS"
    )

    # Lifetimes
    lockout_minutes: int = env_field(60, "LOCKOUT_MINUTES")
    trusted_device_days: int = env_field(14, "TRUSTED_DEVICE_DAYS")
    totp_used_code_seconds: int = env_field(180, "TOTP_USED_CODE_SECONDS")
    sms_login_challenge_seconds: int = env_field(180, "SMS_LOGIN_CHALLENGE_SECONDS")
    sms_enroll_challenge_seconds: int = env_field(300, "SMS_ENROLL_CHALLENGE_SECONDS")
    mfa_enrollment_minutes: int = env_field(15, "MFA_ENROLLMENT_MINUTES")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    email_verification_hours: int = env_field(24, "EMAIL_VERIFICATION_HOURS")
    reset_password_hours: int = env_field(24, "RESET_PASSWORD_HOURS")
    invitation_days: int = env_field(5, "INVITATION_DAYS")

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

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("badge_secret", mode="before")
    @classmethod
    def _ensure_badge_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("BADGE_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so badges survive restarts when a root is configured
        fs_root = os.getenv("SHARED_FS_ROOT")
        if not fs_root:
            logger.warning(
                "badge_secret_ephemeral",
                message="BADGE_SECRET unset and no SHARED_FS_ROOT; badges will not survive a restart",
            )
            return secrets.token_urlsafe(64)
        secret_path = Path(fs_root) / ".badge_secret"
        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        generated = secrets.token_urlsafe(64)
        try:
            secret_path.parent.mkdir(parents=True, exist_ok=True)
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error("badge_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist badge secret; set BADGE_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
