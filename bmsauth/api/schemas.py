from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bmsauth.logging import get_correlation_id
from bmsauth.storage.models import normalize_identifier

MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "invalid_credentials",
    "mfa_required",
    "invalid_mfa_code",
    "no_pending_mfa",
    "invalid_token",
    "expired_token",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,64}$")


def _validate_email(value: str) -> str:
    normalized = normalize_identifier(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_identifier(value: str) -> str:
    """Email addresses or plain usernames, as the bookstore accepted both."""
    if not isinstance(value, str):
        raise ValueError("identifier must be a string")
    cleaned = normalize_identifier(value)
    if "@" in cleaned:
        return _validate_email(cleaned)
    if not _USERNAME_PATTERN.match(cleaned):
        raise ValueError(
            "username must be 3-64 characters of letters, digits, '.', '_' or '-'"
        )
    return cleaned


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    identifier: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        return _validate_identifier(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    mfa_code: Optional[str] = Field(default=None, max_length=10)


class MfaVerifyRequest(BaseModel):
    mfa_ticket: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., max_length=10)


class MfaConfirmRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=64)
    code: str = Field(..., max_length=10)


class MfaDisableRequest(BaseModel):
    code: str = Field(..., max_length=10)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=32)


class PrincipalResponse(BaseModel):
    id: str
    identifier: str
    role: str
    mfa_enabled: bool = False
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    status: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    transport: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    mfa_required: bool = False
    mfa_ticket: Optional[str] = None
    mfa_ticket_expires_at: Optional[datetime] = None


class MeResponse(BaseModel):
    id: str
    identifier: str
    role: str
    transport: str
    expires_at: Optional[datetime] = None


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str = Field(..., description="SVG data URI of the provisioning QR code")


class UserListResponse(BaseModel):
    items: List[PrincipalResponse]
