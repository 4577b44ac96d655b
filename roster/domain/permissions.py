from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from roster.domain.models import DEFAULT_ROLE_ASSIGNMENT, Identity, Role, RoleAssignment

ROLE_RANK: dict[Role, int] = {
    Role.EMPLOYEE: 0,
    Role.MANAGER: 1,
    Role.ADMIN: 2,
}


class AccessDecision(StrEnum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    PENDING = "PENDING"


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class Unresolved:
    identity: Identity


@dataclass(frozen=True)
class Resolved:
    identity: Identity
    roles: frozenset[RoleAssignment] = field(default_factory=lambda: frozenset({DEFAULT_ROLE_ASSIGNMENT}))


AuthorizationState = Anonymous | Unresolved | Resolved

ANONYMOUS = Anonymous()


@dataclass(frozen=True)
class RouteRule:
    path: str
    title: str
    required: Role | None = None


ROUTES: tuple[RouteRule, ...] = (
    RouteRule("/", "Dashboard"),
    RouteRule("/employees", "Employees", Role.MANAGER),
    RouteRule("/employees/{id}", "Employee Detail", Role.MANAGER),
    RouteRule("/departments", "Departments", Role.MANAGER),
    RouteRule("/profile", "Profile"),
    RouteRule("/settings", "Settings", Role.ADMIN),
    RouteRule("/users", "User Management", Role.ADMIN),
)

LOGIN_PATH = "/auth/login"


def role_satisfies(held: Role, required: Role) -> bool:
    return ROLE_RANK[held] >= ROLE_RANK[required]


def normalize_assignments(assignments: Iterable[RoleAssignment]) -> frozenset[RoleAssignment]:
    """Collapse stored assignments into the resolved set, never returning it empty."""
    normalized = frozenset(assignments)
    if not normalized:
        return frozenset({DEFAULT_ROLE_ASSIGNMENT})
    return normalized


def decide(required: Role | None, state: AuthorizationState) -> AccessDecision:
    if isinstance(state, Unresolved):
        return AccessDecision.PENDING
    if not isinstance(state, Resolved):
        return AccessDecision.DENY
    if required is None:
        return AccessDecision.ALLOW
    if any(role_satisfies(item.role, required) for item in state.roles):
        return AccessDecision.ALLOW
    return AccessDecision.DENY


def highest_role(state: AuthorizationState) -> Role | None:
    if not isinstance(state, Resolved):
        return None
    return max((item.role for item in state.roles), key=ROLE_RANK.__getitem__)


def department_scope(state: AuthorizationState) -> frozenset[str] | None:
    """Departments a resolved user may see in the roster.

    ``None`` means unrestricted: an admin assignment, or a manager
    assignment that is not tied to a department. Employees and unresolved
    states get an empty scope.
    """
    if not isinstance(state, Resolved):
        return frozenset()
    if any(item.role == Role.ADMIN for item in state.roles):
        return None
    if any(item.role == Role.MANAGER and item.department_id is None for item in state.roles):
        return None
    return frozenset(
        item.department_id
        for item in state.roles
        if item.role == Role.MANAGER and item.department_id is not None
    )


def find_route(path: str) -> RouteRule | None:
    for rule in ROUTES:
        if rule.path == path:
            return rule
    return None


def route_decision(path: str, state: AuthorizationState) -> AccessDecision:
    rule = find_route(path)
    if rule is None:
        return AccessDecision.DENY
    return decide(rule.required, state)


def visible_routes(state: AuthorizationState) -> list[RouteRule]:
    return [rule for rule in ROUTES if "{" not in rule.path and decide(rule.required, state) == AccessDecision.ALLOW]
