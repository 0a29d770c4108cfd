from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from bmsauth.config import TransportKind
from bmsauth.logging import get_logger
from bmsauth.service.errors import ExpiredToken, InvalidToken
from bmsauth.storage.models import Principal, SessionRecord
from bmsauth.storage.store import CredentialStore

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """The authenticated principal attached to a request."""

    user_id: str
    identifier: str
    role: str
    kind: TransportKind
    credential_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class IssuedCredential:
    credential: str
    kind: TransportKind
    expires_at: datetime


class AuthTransport(Protocol):
    kind: TransportKind

    def issue(self, principal: Principal) -> IssuedCredential: ...

    def resolve(self, credential: Optional[str]) -> Optional[AuthContext]: ...

    def revoke(self, credential: Optional[str]) -> None: ...


def _utc(clock: Callable[[], float]) -> datetime:
    return datetime.fromtimestamp(clock(), tz=timezone.utc)


class SessionTransport:
    """Server-side sessions kept in the credential store.

    Lifetime is absolute from creation; activity does not extend it.
    """

    kind = TransportKind.SESSION

    def __init__(
        self,
        store: CredentialStore,
        *,
        ttl_minutes: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    def issue(self, principal: Principal) -> IssuedCredential:
        record = SessionRecord.new(
            principal.id,
            principal.identifier,
            principal.role,
            now=_utc(self._clock),
            ttl_minutes=self.ttl_minutes,
        )
        self.store.create_session(record)
        logger.info("session_created", user_id=principal.id)
        return IssuedCredential(record.id, self.kind, record.expires_at)

    def get(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        record = self.store.get_session(session_id)
        if record is None:
            return None
        if record.is_expired(_utc(self._clock)):
            self.store.delete_session(session_id)
            logger.info("session_expired", user_id=record.user_id)
            return None
        return record

    def destroy(self, session_id: Optional[str]) -> None:
        if session_id:
            self.store.delete_session(session_id)

    def resolve(self, credential: Optional[str]) -> Optional[AuthContext]:
        record = self.get(credential)
        if record is None or not record.mfa_verified:
            return None
        # role changes apply to live sessions
        principal = self.store.find_by_id(record.user_id)
        if principal is None:
            self.store.delete_session(record.id)
            return None
        return AuthContext(
            user_id=principal.id,
            identifier=principal.identifier,
            role=principal.role,
            kind=self.kind,
            credential_id=record.id,
            expires_at=record.expires_at,
        )

    def revoke(self, credential: Optional[str]) -> None:
        self.destroy(credential)


class BearerTransport:
    """Stateless HS256 tokens.

    The role claim is a snapshot taken at issuance. Changing a principal's
    role does not affect tokens already handed out; they keep the old role
    until they expire. ``revoke`` cannot do anything server-side.
    """

    kind = TransportKind.BEARER

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "bmsauth",
        audience: str = "bms-clients",
        ttl_minutes: int = 60 * 24 * 7,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("bearer transport requires a signing secret")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, principal: Principal) -> IssuedCredential:
        now = int(self._clock())
        expires = now + self.ttl_minutes * 60
        token = self.encode(
            {
                "sub": principal.id,
                "identifier": principal.identifier,
                "role": principal.role,
                "iat": now,
                "exp": expires,
                "iss": self.issuer,
                "aud": self.audience,
                "jti": secrets.token_urlsafe(16),
            }
        )
        logger.info("bearer_token_issued", user_id=principal.id)
        return IssuedCredential(
            token, self.kind, datetime.fromtimestamp(expires, tz=timezone.utc)
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token or raise ``InvalidToken``/``ExpiredToken``."""
        if not token or not isinstance(token, str):
            raise InvalidToken("missing token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("malformed token") from None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidToken("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise InvalidToken("unsupported token algorithm")
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode()):
            raise InvalidToken("bad token signature")
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidToken("malformed token payload") from None
        if not isinstance(claims, dict):
            raise InvalidToken("malformed token payload")
        if claims.get("iss") != self.issuer:
            raise InvalidToken("wrong token issuer")
        aud = claims.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise InvalidToken("wrong token audience")
        if not claims.get("sub") or not claims.get("role"):
            raise InvalidToken("token is missing required claims")
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("token has no usable expiry") from None
        if exp_ts <= self._clock():
            raise ExpiredToken("token expired")
        return claims

    def resolve(self, credential: Optional[str]) -> Optional[AuthContext]:
        if not credential:
            return None
        try:
            claims = self.verify(credential)
        except InvalidToken as exc:
            logger.info("token_rejected", reason=exc.message, error_code=exc.error_code)
            return None
        return AuthContext(
            user_id=claims["sub"],
            identifier=claims.get("identifier", ""),
            role=claims["role"],
            kind=self.kind,
            credential_id=claims.get("jti"),
            expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
        )

    def revoke(self, credential: Optional[str]) -> None:
        logger.info("bearer_revoke_noop", detail="client must discard the token")
