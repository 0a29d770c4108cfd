from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from bmsauth.config import MfaMode
from bmsauth.logging import get_logger
from bmsauth.service.errors import (
    InvalidCredentials,
    InvalidMfaCode,
    MfaRequired,
    NoPendingMfa,
    NotFoundError,
    ServerError,
    ServiceError,
    TooManyAttempts,
    Unauthenticated,
    ValidationError,
)
from bmsauth.service.gate import require_action
from bmsauth.service.mfa import MfaEngine, MfaEnrollment
from bmsauth.service.passwords import PasswordVerifier
from bmsauth.service.policy import AccessPolicy, Role
from bmsauth.service.throttle import LoginThrottle
from bmsauth.service.transport import AuthContext, AuthTransport, IssuedCredential
from bmsauth.storage.errors import ConstraintViolation
from bmsauth.storage.models import PendingMfaTicket, Principal, normalize_identifier
from bmsauth.storage.store import CredentialStore

logger = get_logger(__name__)


class LoginState(str, Enum):
    """Where a login attempt stands.

    PASSWORD_PENDING only exists while ``login`` is checking the password;
    results report one of the other three.
    """

    ANONYMOUS = "anonymous"
    PASSWORD_PENDING = "password_pending"
    MFA_PENDING = "mfa_pending"
    AUTHENTICATED = "authenticated"


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_MFA_CODE = "invalid_mfa_code"
    NO_PENDING_MFA = "no_pending_mfa"


@dataclass
class LoginResult:
    status: LoginStatus
    principal: Optional[Principal] = None
    credential: Optional[IssuedCredential] = None
    ticket: Optional[str] = None
    ticket_expires_at: Optional[datetime] = None

    @property
    def state(self) -> LoginState:
        if self.status is LoginStatus.AUTHENTICATED:
            return LoginState.AUTHENTICATED
        if self.ticket:
            return LoginState.MFA_PENDING
        return LoginState.ANONYMOUS

    def raise_for_status(self) -> "LoginResult":
        """Return self when authenticated, otherwise raise the matching error."""
        if self.status is LoginStatus.AUTHENTICATED:
            return self
        if self.status is LoginStatus.MFA_REQUIRED:
            raise MfaRequired(
                "second factor required",
                detail={"mfa_ticket": self.ticket},
            )
        if self.status is LoginStatus.INVALID_MFA_CODE:
            raise InvalidMfaCode("invalid verification code")
        if self.status is LoginStatus.NO_PENDING_MFA:
            raise NoPendingMfa("no pending verification; log in again")
        raise InvalidCredentials("invalid credentials")


class AuthService:
    """Password login, second-factor challenge and credential issuance.

    Transport agnostic: whatever ``AuthTransport`` is injected decides
    whether a successful login yields a session id or a signed token.
    Pending MFA tickets live in memory, one per login attempt.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        hasher: PasswordVerifier,
        mfa: MfaEngine,
        transport: AuthTransport,
        throttle: LoginThrottle,
        policy: AccessPolicy,
        mfa_ticket_ttl_seconds: int = 300,
        mfa_max_attempts: int = 5,
        password_min_length: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.mfa = mfa
        self.transport = transport
        self.throttle = throttle
        self.policy = policy
        self.mfa_ticket_ttl_seconds = mfa_ticket_ttl_seconds
        self.mfa_max_attempts = mfa_max_attempts
        self.password_min_length = password_min_length
        self._clock = clock
        self._state_lock = threading.Lock()
        self._tickets: Dict[str, PendingMfaTicket] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @contextlib.contextmanager
    def _internal_errors(self, operation: str) -> Iterator[None]:
        """Let taxonomy errors through; anything else becomes a generic ServerError."""
        try:
            yield
        except (ServiceError, ConstraintViolation):
            raise
        except Exception as exc:
            self.logger.error(
                "auth_internal_error",
                operation=operation,
                error=str(exc),
                exc_info=True,
            )
            raise ServerError("internal server error") from exc

    # registration
    def register(
        self, identifier: str, password: str, role: str | Role | None = None
    ) -> Principal:
        with self._internal_errors("register"):
            key = normalize_identifier(identifier)
            if not key:
                raise ValidationError("identifier is required", detail={"field": "identifier"})
            if not password or len(password) < self.password_min_length:
                raise ValidationError(
                    f"password must be at least {self.password_min_length} characters",
                    detail={"field": "password"},
                )
            try:
                assigned = Role.parse(role) if role is not None else Role.lowest()
            except ValueError as exc:
                raise ValidationError(str(exc), detail={"field": "role"}) from exc
            principal = self.store.create(key, self.hasher.hash(password), assigned.value)
            self.logger.info("user_registered", user_id=principal.id, role=principal.role)
            return principal

    # login
    def login(
        self,
        identifier: str,
        password: str,
        *,
        mfa_code: Optional[str] = None,
        client_addr: Optional[str] = None,
    ) -> LoginResult:
        with self._internal_errors("login"):
            key = normalize_identifier(identifier)
            keys = self.throttle.keys_for(key, client_addr)
            self.throttle.acquire(keys)

            principal = self.store.find_by_identifier(key) if key else None
            if principal is None:
                self.hasher.verify_dummy(password)
                verified = False
            else:
                verified = self.hasher.verify(password, principal.password_hash)
            if not verified:
                self.logger.info(
                    "login_failed",
                    user_id=principal.id if principal else None,
                    client_addr=client_addr,
                )
                return LoginResult(LoginStatus.INVALID_CREDENTIALS)

            self.throttle.reset(keys)
            self._maybe_rehash(principal, password)

            if not self._needs_second_factor(principal):
                return self._authenticate(principal)
            if mfa_code is not None and self.mfa.mode is MfaMode.TOTP:
                return self._verify_inline_code(principal, mfa_code)
            return self._challenge(principal)

    def _maybe_rehash(self, principal: Principal, password: str) -> None:
        if self.hasher.needs_rehash(principal.password_hash):
            self.store.set_password_hash(principal.id, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=principal.id)

    def _needs_second_factor(self, principal: Principal) -> bool:
        if not self.policy.wants_second_factor(principal.role, principal.mfa_enabled):
            return False
        if self.mfa.mode is MfaMode.TOTP and not (
            principal.mfa_enabled and principal.mfa_secret
        ):
            # nothing to check a TOTP code against
            self.logger.warning(
                "mfa_enrollment_missing", user_id=principal.id, role=principal.role
            )
            return False
        return True

    def _verify_inline_code(self, principal: Principal, code: str) -> LoginResult:
        mfa_keys = self._mfa_keys(principal.id)
        self.throttle.acquire(mfa_keys)
        if self.mfa.verify(principal, code):
            self.throttle.reset(mfa_keys)
            return self._authenticate(principal)
        self.logger.info("mfa_verify_failed", user_id=principal.id, inline=True)
        return LoginResult(LoginStatus.INVALID_MFA_CODE)

    def _challenge(self, principal: Principal) -> LoginResult:
        now = self._now()
        ticket = PendingMfaTicket.new(
            principal.id, now=now, ttl_seconds=self.mfa_ticket_ttl_seconds
        )
        with self._state_lock:
            self._purge_expired_tickets(now)
            self._tickets[ticket.id] = ticket
        if self.mfa.mode is MfaMode.OUT_OF_BAND:
            self.mfa.issue_out_of_band_code(principal)
        self.logger.info(
            "mfa_challenge_issued", user_id=principal.id, mode=self.mfa.mode.value
        )
        return LoginResult(
            LoginStatus.MFA_REQUIRED,
            principal=principal,
            ticket=ticket.id,
            ticket_expires_at=ticket.expires_at,
        )

    def _authenticate(self, principal: Principal) -> LoginResult:
        issued = self.transport.issue(principal)
        self.logger.info(
            "login_succeeded",
            user_id=principal.id,
            role=principal.role,
            transport=issued.kind.value,
        )
        return LoginResult(LoginStatus.AUTHENTICATED, principal=principal, credential=issued)

    @staticmethod
    def _mfa_keys(user_id: str) -> list[str]:
        return [f"mfa:{user_id}"]

    def _purge_expired_tickets(self, now: datetime) -> int:
        # caller holds _state_lock
        stale = [tid for tid, t in self._tickets.items() if t.is_expired(now)]
        for tid in stale:
            self._tickets.pop(tid, None)
        return len(stale)

    def cleanup_expired_tickets(self) -> int:
        with self._state_lock:
            return self._purge_expired_tickets(self._now())

    def pending_ticket_count(self) -> int:
        with self._state_lock:
            return len(self._tickets)

    def verify_mfa(self, ticket: Optional[str], code: Optional[str]) -> LoginResult:
        with self._internal_errors("verify_mfa"):
            now = self._now()
            with self._state_lock:
                pending = self._tickets.get(ticket) if ticket else None
                if pending is not None and pending.is_expired(now):
                    self._tickets.pop(pending.id, None)
                    self.logger.info("mfa_ticket_expired", user_id=pending.user_id)
                    pending = None
            if pending is None:
                return LoginResult(LoginStatus.NO_PENDING_MFA)

            mfa_keys = self._mfa_keys(pending.user_id)
            self.throttle.acquire(mfa_keys)
            principal = self.store.find_by_id(pending.user_id)
            if principal is None:
                with self._state_lock:
                    self._tickets.pop(pending.id, None)
                return LoginResult(LoginStatus.NO_PENDING_MFA)

            if self.mfa.verify(principal, code or ""):
                with self._state_lock:
                    consumed = self._tickets.pop(pending.id, None)
                if consumed is None:
                    # a concurrent request already finished this challenge
                    return LoginResult(LoginStatus.NO_PENDING_MFA)
                self.throttle.reset(mfa_keys)
                return self._authenticate(principal)

            with self._state_lock:
                pending.attempts += 1
                exhausted = pending.attempts >= self.mfa_max_attempts
                if exhausted:
                    self._tickets.pop(pending.id, None)
            self.logger.info(
                "mfa_verify_failed", user_id=principal.id, attempts=pending.attempts
            )
            if exhausted:
                self.logger.warning("mfa_ticket_exhausted", user_id=principal.id)
                raise TooManyAttempts("too many invalid codes; log in again")
            return LoginResult(
                LoginStatus.INVALID_MFA_CODE,
                principal=principal,
                ticket=pending.id,
                ticket_expires_at=pending.expires_at,
            )

    # sessions
    def logout(self, credential: Optional[str]) -> None:
        with self._internal_errors("logout"):
            self.transport.revoke(credential)
            self.logger.info("logout", transport=self.transport.kind.value)

    def current_principal(self, credential: Optional[str]) -> Optional[AuthContext]:
        with self._internal_errors("current_principal"):
            return self.transport.resolve(credential)

    # enrollment
    def _load(self, ctx: Optional[AuthContext]) -> Principal:
        if ctx is None:
            raise Unauthenticated("authentication required")
        principal = self.store.find_by_id(ctx.user_id)
        if principal is None:
            raise Unauthenticated("principal no longer exists")
        return principal

    def enroll_mfa(self, ctx: Optional[AuthContext]) -> MfaEnrollment:
        with self._internal_errors("enroll_mfa"):
            return self.mfa.enroll(self._load(ctx))

    def confirm_mfa(self, ctx: Optional[AuthContext], secret: str, code: str) -> None:
        with self._internal_errors("confirm_mfa"):
            principal = self._load(ctx)
            mfa_keys = self._mfa_keys(principal.id)
            self.throttle.acquire(mfa_keys)
            if not self.mfa.confirm_enrollment(principal, secret, code):
                raise InvalidMfaCode("invalid verification code")
            self.throttle.reset(mfa_keys)

    def disable_mfa(self, ctx: Optional[AuthContext], code: str) -> None:
        """Turn MFA off after proving possession of the current secret."""
        with self._internal_errors("disable_mfa"):
            principal = self._load(ctx)
            if not principal.mfa_enabled:
                raise ValidationError("mfa is not enabled")
            mfa_keys = self._mfa_keys(principal.id)
            self.throttle.acquire(mfa_keys)
            if not self.mfa.verify_login(principal, code):
                raise InvalidMfaCode("invalid verification code")
            self.throttle.reset(mfa_keys)
            self.mfa.disable(principal)

    # administration
    def list_principals(self, actor: Optional[AuthContext]) -> List[Principal]:
        with self._internal_errors("list_principals"):
            require_action(actor, "users:list", self.policy)
            return self.store.list_principals()

    def change_role(
        self, actor: Optional[AuthContext], user_id: str, role: str | Role
    ) -> Principal:
        with self._internal_errors("change_role"):
            ctx = require_action(actor, "users:update_role", self.policy)
            try:
                new_role = Role.parse(role)
            except ValueError as exc:
                raise ValidationError(str(exc), detail={"field": "role"}) from exc
            updated = self.store.update_role(user_id, new_role.value)
            if updated is None:
                raise NotFoundError("user not found", detail={"user_id": user_id})
            self.logger.info(
                "role_changed", actor_id=ctx.user_id, user_id=user_id, role=new_role.value
            )
            return updated
