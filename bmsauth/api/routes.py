from __future__ import annotations

import asyncio
from typing import Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from bmsauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    MfaConfirmRequest,
    MfaDisableRequest,
    MfaSetupResponse,
    MfaVerifyRequest,
    PrincipalResponse,
    RegisterRequest,
    RoleUpdateRequest,
    UserListResponse,
)
from bmsauth.config import TransportKind
from bmsauth.logging import get_logger
from bmsauth.service.auth import LoginResult, LoginStatus
from bmsauth.service.gate import require_action, require_authenticated
from bmsauth.service.runtime import get_runtime
from bmsauth.service.transport import AuthContext, IssuedCredential
from bmsauth.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _request_credential(
    authorization: Optional[str] = Header(None),
    session_header: Optional[str] = Header(
        None, alias="session_id", convert_underscores=False
    ),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> Optional[str]:
    """Pick the credential the configured transport understands."""
    runtime = get_runtime()
    if runtime.transport.kind is TransportKind.BEARER:
        return _extract_bearer(authorization)
    return session_header or session_cookie


def current_principal(
    credential: Optional[str] = Depends(_request_credential),
) -> Optional[AuthContext]:
    if not credential:
        return None
    return get_runtime().auth.current_principal(credential)


def authenticated(
    principal: Optional[AuthContext] = Depends(current_principal),
) -> AuthContext:
    return require_authenticated(principal)


def allow(action: str) -> Callable[..., AuthContext]:
    """Dependency factory gating a route on a named policy action."""

    def _dependency(
        principal: Optional[AuthContext] = Depends(current_principal),
    ) -> AuthContext:
        return require_action(principal, action, get_runtime().policy)

    return _dependency


def _client_addr(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_session_cookie(response: Response, issued: IssuedCredential) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        issued.credential,
        httponly=True,
        secure=get_runtime().settings.session_cookie_secure,
        samesite="lax",
        expires=issued.expires_at,
        path="/",
    )


def _principal_payload(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(**principal.public_view())


def _login_envelope(result: LoginResult, response: Response) -> Envelope:
    """Translate a login outcome into an envelope, raising for failures."""
    if result.status is LoginStatus.MFA_REQUIRED:
        return Envelope(
            status="ok",
            data=AuthResponse(
                status=result.status.value,
                mfa_required=True,
                mfa_ticket=result.ticket,
                mfa_ticket_expires_at=result.ticket_expires_at,
            ),
        )
    result.raise_for_status()
    issued = result.credential
    principal = result.principal
    data = AuthResponse(
        status=result.status.value,
        user_id=principal.id,
        role=principal.role,
        transport=issued.kind.value,
    )
    if issued.kind is TransportKind.SESSION:
        _apply_session_cookie(response, issued)
        data.session_expires_at = issued.expires_at
    else:
        data.access_token = issued.credential
        data.token_type = "bearer"
        data.session_expires_at = issued.expires_at
    return Envelope(status="ok", data=data)


@router.get("/health", response_model=Envelope, tags=["system"])
async def health():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"status": "healthy", "transport": runtime.transport.kind.value},
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a principal with the lowest role. Does not log in."""
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    principal = await asyncio.to_thread(
        runtime.auth.register, body.identifier, body.password
    )
    return Envelope(status="ok", data=_principal_payload(principal))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check identifier and password.

    Responds with a session cookie or bearer token, or with an ``mfa_ticket``
    to submit to ``/auth/login/mfa`` when the account owes a second factor.

    Raises:
        401: invalid credentials or inline MFA code
        429: throttled
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.login,
        body.identifier,
        body.password,
        mfa_code=body.mfa_code,
        client_addr=_client_addr(request),
    )
    return _login_envelope(result, response)


@router.post("/auth/login/mfa", response_model=Envelope, tags=["auth"])
async def login_mfa(body: MfaVerifyRequest, response: Response):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.verify_mfa, body.mfa_ticket, body.code)
    return _login_envelope(result, response)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    credential: Optional[str] = Depends(_request_credential),
):
    runtime = get_runtime()
    if credential:
        runtime.auth.logout(credential)
    response.delete_cookie(SESSION_COOKIE, path="/", samesite="lax")
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(authenticated)):
    return Envelope(
        status="ok",
        data=MeResponse(
            id=principal.user_id,
            identifier=principal.identifier,
            role=principal.role,
            transport=principal.kind.value,
            expires_at=principal.expires_at,
        ),
    )


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(authenticated)):
    """Propose a TOTP secret; nothing is stored until /auth/mfa/confirm."""
    enrollment = await asyncio.to_thread(get_runtime().auth.enroll_mfa, principal)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.provisioning_uri,
            qr_code=enrollment.qr_data_uri,
        ),
    )


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_confirm(
    body: MfaConfirmRequest, principal: AuthContext = Depends(authenticated)
):
    await asyncio.to_thread(get_runtime().auth.confirm_mfa, principal, body.secret, body.code)
    return Envelope(status="ok", data={"mfa_enabled": True})


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaDisableRequest, principal: AuthContext = Depends(authenticated)
):
    await asyncio.to_thread(get_runtime().auth.disable_mfa, principal, body.code)
    return Envelope(status="ok", data={"mfa_enabled": False})


@router.get("/users", response_model=Envelope, tags=["admin"])
async def list_users(principal: AuthContext = Depends(allow("users:list"))):
    principals = get_runtime().auth.list_principals(principal)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[_principal_payload(p) for p in principals]),
    )


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    user_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(allow("users:update_role")),
):
    updated = get_runtime().auth.change_role(principal, user_id, body.role)
    return Envelope(status="ok", data=_principal_payload(updated))
