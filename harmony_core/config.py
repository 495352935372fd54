from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from harmony_core.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32
_MIN_SITE_KEY_LENGTH = 24
_DEFAULT_SITE_KEY = "harmony-site-secret-key-change-me"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and entitlement core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/harmony", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; never enable in production.",
    )

    # Tokens
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("harmony", "JWT_ISSUER")
    jwt_audience: str = env_field("harmony-app", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(900, "JWT_ACCESS_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        60 * 60 * 24 * 30, "JWT_REFRESH_TTL_SECONDS"
    )

    # Lockout and registration throttling
    failed_auth_max: int = env_field(7, "FAILED_AUTH_MAX")
    auth_block_seconds: int = env_field(180, "AUTH_BLOCK_SECONDS")
    registrations_per_ip_per_hour: int = env_field(5, "REGISTRATIONS_PER_IP_PER_HOUR")
    registration_sweep_interval_seconds: int = env_field(
        300, "REGISTRATION_SWEEP_INTERVAL_SECONDS"
    )
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")
    name_change_interval_days: int = env_field(14, "NAME_CHANGE_INTERVAL_DAYS")

    # Payment gateway
    yookassa_shop_id: str | None = env_field(None, "YOOKASSA_SHOP_ID")
    yookassa_secret_key: str | None = env_field(None, "YOOKASSA_SECRET_KEY")
    yookassa_api_url: str = env_field("https://api.yookassa.ru/v3", "YOOKASSA_API_URL")
    payment_gateway_timeout_seconds: float = env_field(
        10.0, "PAYMENT_GATEWAY_TIMEOUT_SECONDS"
    )
    demo_payments_enabled: bool = env_field(
        False,
        "DEMO_PAYMENTS_ENABLED",
        description="Allow granting plans without a gateway payment (staging only).",
    )
    site_api_key: str = env_field(_DEFAULT_SITE_KEY, "SITE_API_KEY")
    subscription_site_url: str = env_field(
        "https://harmony.app/premium", "SUBSCRIPTION_SITE_URL"
    )

    # Store receipts and federated login
    apple_shared_secret: str | None = env_field(None, "APPLE_SHARED_SECRET")
    apple_client_id: str | None = env_field(None, "APPLE_CLIENT_ID")
    apple_verify_url: str = env_field(
        "https://buy.itunes.apple.com/verifyReceipt", "APPLE_VERIFY_URL"
    )
    apple_sandbox_verify_url: str = env_field(
        "https://sandbox.itunes.apple.com/verifyReceipt", "APPLE_SANDBOX_VERIFY_URL"
    )
    google_application_credentials: str | None = env_field(
        None, "GOOGLE_APPLICATION_CREDENTIALS"
    )
    android_package_name: str | None = env_field(None, "ANDROID_PACKAGE_NAME")
    receipt_verify_timeout_seconds: float = env_field(
        15.0, "RECEIPT_VERIFY_TIMEOUT_SECONDS"
    )

    # Mail collaborator
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Harmony", "EMAIL_FROM_NAME")

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

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning("jwt_secret_generated_ephemeral", field=info.field_name)
        return secrets.token_urlsafe(64)

    @field_validator("yookassa_shop_id", "yookassa_secret_key", "apple_shared_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @model_validator(mode="after")
    def _check_site_key(self) -> "Settings":
        weak = (
            self.site_api_key == _DEFAULT_SITE_KEY
            or len(self.site_api_key) < _MIN_SITE_KEY_LENGTH
        )
        if not weak:
            return self
        if not self.test_mode:
            raise ValueError(
                f"SITE_API_KEY must be set to a non-default value of at least "
                f"{_MIN_SITE_KEY_LENGTH} characters"
            )
        logger.warning("site_api_key_weak")
        return self

    @property
    def gateway_configured(self) -> bool:
        return bool(self.yookassa_shop_id and self.yookassa_secret_key)


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
