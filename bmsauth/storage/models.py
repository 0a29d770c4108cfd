from __future__ import annotations

import secrets
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_identifier(identifier: str) -> str:
    """Canonical form used for lookups and uniqueness.

    Compatibility forms are folded with NFKC (fullwidth letters match their
    ASCII form). Email-like identifiers are case-insensitive; usernames are
    matched exactly.
    """
    cleaned = unicodedata.normalize("NFKC", identifier or "").strip()
    if "@" in cleaned:
        return cleaned.lower()
    return cleaned


@dataclass
class Principal:
    id: str
    identifier: str
    password_hash: str
    role: str
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    pending_code: Optional[str] = None
    pending_code_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, identifier: str, password_hash: str, role: str) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            identifier=normalize_identifier(identifier),
            password_hash=password_hash,
            role=role,
        )

    def public_view(self) -> dict:
        """Fields that may leave the server."""
        return {
            "id": self.id,
            "identifier": self.identifier,
            "role": self.role,
            "mfa_enabled": self.mfa_enabled,
            "created_at": self.created_at,
        }


@dataclass
class SessionRecord:
    id: str
    user_id: str
    identifier: str
    role: str
    created_at: datetime
    expires_at: datetime
    mfa_verified: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        identifier: str,
        role: str,
        *,
        now: datetime,
        ttl_minutes: int = 60,
        mfa_verified: bool = True,
    ) -> "SessionRecord":
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            identifier=identifier,
            role=role,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            mfa_verified=mfa_verified,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PendingMfaTicket:
    """Marker that the password step passed and a second factor is owed."""

    id: str
    user_id: str
    expires_at: datetime
    attempts: int = 0

    @classmethod
    def new(cls, user_id: str, *, now: datetime, ttl_seconds: int) -> "PendingMfaTicket":
        return cls(
            id=secrets.token_urlsafe(24),
            user_id=user_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
