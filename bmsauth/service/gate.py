"""Authorization checks run before a protected operation."""

from __future__ import annotations

from typing import Iterable, Optional

from bmsauth.logging import get_logger
from bmsauth.service.errors import Forbidden, Unauthenticated
from bmsauth.service.policy import AccessPolicy, Role
from bmsauth.service.transport import AuthContext

logger = get_logger(__name__)


def require_authenticated(principal: Optional[AuthContext]) -> AuthContext:
    if principal is None:
        raise Unauthenticated("authentication required")
    return principal


def require_role(
    principal: Optional[AuthContext], allowed_roles: Iterable[str | Role]
) -> AuthContext:
    """Exact-match membership test; a higher rank does not imply access."""
    ctx = require_authenticated(principal)
    allowed = {Role.parse(r) for r in allowed_roles}
    try:
        role = Role.parse(ctx.role)
    except ValueError:
        role = None
    if role not in allowed:
        logger.info(
            "access_denied",
            user_id=ctx.user_id,
            role=ctx.role,
            allowed=sorted(r.value for r in allowed),
        )
        raise Forbidden("insufficient role")
    return ctx


def require_action(
    principal: Optional[AuthContext], action: str, policy: AccessPolicy
) -> AuthContext:
    return require_role(principal, policy.allowed_roles(action))
