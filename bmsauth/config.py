from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bmsauth.logging import get_logger

logger = get_logger(__name__)


class TransportKind(str, Enum):
    """How an authenticated principal is carried between requests."""

    SESSION = "session"
    BEARER = "bearer"


class MfaMode(str, Enum):
    """Second-factor implementations.

    TOTP is the supported mode. OUT_OF_BAND generates a random code per login
    and writes it to the log instead of delivering it; it exists for local
    demos of the admin flow and must not be enabled in production.
    """

    TOTP = "totp"
    OUT_OF_BAND = "out_of_band"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its HTTP surface."""

    auth_secret: str = env_field(
        None,
        "AUTH_SECRET",
        description="HMAC key for bearer tokens; required, no default",
        validate_default=True,
    )
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; derived from AUTH_SECRET when unset",
    )
    auth_transport: TransportKind = env_field(TransportKind.SESSION, "AUTH_TRANSPORT")
    session_ttl_minutes: int = env_field(60, "SESSION_TTL_MINUTES", ge=1)
    token_ttl_minutes: int = env_field(60 * 24 * 7, "TOKEN_TTL_MINUTES", ge=1)
    jwt_issuer: str = env_field("bmsauth", "JWT_ISSUER")
    jwt_audience: str = env_field("bms-clients", "JWT_AUDIENCE")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Second factor
    mfa_mode: MfaMode = env_field(MfaMode.TOTP, "MFA_MODE")
    mfa_issuer: str = env_field("BMS", "MFA_ISSUER")
    mfa_window_steps: int = env_field(1, "MFA_WINDOW_STEPS", ge=0, le=2)
    mfa_ticket_ttl_seconds: int = env_field(300, "MFA_TICKET_TTL_SECONDS", ge=30)
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", ge=1)
    mfa_roles: list[str] = env_field(
        ["system_admin"],
        "MFA_ROLES",
        description="Roles that must pass a second factor at login (comma separated)",
    )
    honor_enrolled_mfa: bool = env_field(
        False,
        "HONOR_ENROLLED_MFA",
        description="Also challenge principals outside MFA_ROLES who enrolled voluntarily",
    )

    # Throttling
    login_max_failures: int = env_field(5, "LOGIN_MAX_FAILURES", ge=1)
    login_window_seconds: int = env_field(900, "LOGIN_WINDOW_SECONDS", ge=1)

    # Password hashing
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)

    # Storage
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON snapshot file for the credential store; in-memory only when unset",
    )
    seed_demo_users: bool = env_field(False, "SEED_DEMO_USERS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Logging; bmsauth.logging applies these when it is first imported
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

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

    @field_validator("auth_secret", mode="before")
    @classmethod
    def _require_auth_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError(
                "AUTH_SECRET must be set; there is no default signing secret"
            )
        if len(value) < 32:
            raise ValueError("AUTH_SECRET must be at least 32 characters")
        return value

    @field_validator("mfa_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return list(value or [])

    @field_validator("auth_transport", mode="before")
    @classmethod
    def _validate_transport(cls, value: Any) -> TransportKind:
        return TransportKind(str(getattr(value, "value", value)).lower())

    @field_validator("mfa_mode", mode="before")
    @classmethod
    def _validate_mfa_mode(cls, value: Any) -> MfaMode:
        mode = MfaMode(str(getattr(value, "value", value)).lower())
        if mode is MfaMode.OUT_OF_BAND:
            logger.warning(
                "mfa_out_of_band_mode_enabled",
                message="one-time codes are written to the log; demo use only",
            )
        return mode


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
