"""Roles and the declarative tables the gate and login flow consult.

Handlers never compare role literals; they name an action and the
``AccessPolicy`` decides which roles may perform it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping


class Role(str, Enum):
    """Closed role set, declared from least to most privileged."""

    CUSTOMER = "customer"
    SALES_CLERK = "sales_clerk"
    STORE_OWNER = "store_owner"
    SYSTEM_ADMIN = "system_admin"

    @property
    def rank(self) -> int:
        return list(Role).index(self)

    @classmethod
    def lowest(cls) -> "Role":
        return min(cls, key=lambda role: role.rank)

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown role: {value!r}") from None


STAFF_ROLES = frozenset({Role.SALES_CLERK, Role.STORE_OWNER, Role.SYSTEM_ADMIN})

# Actions exposed by the bookstore backend and the roles allowed to run them.
# Inventory and supplier actions are listed so the CRUD layer consults the
# same table as the auth routes.
DEFAULT_ROUTE_POLICY: dict[str, frozenset[Role]] = {
    "users:list": frozenset({Role.SYSTEM_ADMIN}),
    "users:update_role": frozenset({Role.SYSTEM_ADMIN}),
    "books:read": STAFF_ROLES,
    "books:write": STAFF_ROLES,
    "suppliers:read": STAFF_ROLES,
    "suppliers:sync": frozenset({Role.STORE_OWNER, Role.SYSTEM_ADMIN}),
    "cart:use": frozenset(Role),
    "orders:own": frozenset(Role),
    "orders:all": frozenset({Role.STORE_OWNER, Role.SYSTEM_ADMIN}),
}


@dataclass(frozen=True)
class AccessPolicy:
    mfa_roles: frozenset[Role] = frozenset({Role.SYSTEM_ADMIN})
    honor_enrolled_mfa: bool = False
    routes: Mapping[str, frozenset[Role]] = field(
        default_factory=lambda: dict(DEFAULT_ROUTE_POLICY)
    )

    @classmethod
    def build(
        cls,
        *,
        mfa_roles: Iterable[str | Role],
        honor_enrolled_mfa: bool = False,
        routes: Mapping[str, Iterable[str | Role]] | None = None,
    ) -> "AccessPolicy":
        table = dict(DEFAULT_ROUTE_POLICY)
        for action, roles in (routes or {}).items():
            table[action] = frozenset(Role.parse(r) for r in roles)
        return cls(
            mfa_roles=frozenset(Role.parse(r) for r in mfa_roles),
            honor_enrolled_mfa=honor_enrolled_mfa,
            routes=table,
        )

    def allowed_roles(self, action: str) -> frozenset[Role]:
        # Undeclared actions are a wiring bug, not a denial.
        return self.routes[action]

    def role_requires_mfa(self, role: str | Role) -> bool:
        return Role.parse(role) in self.mfa_roles

    def wants_second_factor(self, role: str | Role, mfa_enabled: bool) -> bool:
        """Whether a principal with this role and enrollment must pass a second factor."""
        if self.role_requires_mfa(role):
            return True
        return self.honor_enrolled_mfa and mfa_enabled
