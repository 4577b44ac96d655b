from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from roster.domain.models import (
    EmployeeCreate,
    EmployeeRead,
    EmployeeUpdate,
    Identity,
    RoleAssignment,
    SortDirection,
)
from roster.domain.state_machine import AuthEvent


@dataclass(frozen=True)
class RosterFilter:
    search_text: str = ""
    department_ids: frozenset[str] | None = None


@dataclass(frozen=True)
class RosterSort:
    column: str = "name"
    direction: SortDirection = SortDirection.ASC


@dataclass(frozen=True)
class RosterPage:
    rows: tuple[EmployeeRead, ...]
    total_count: int


class RoleSource(Protocol):
    async def fetch_role_assignments(self, user_id: str) -> list[RoleAssignment]: ...


class RosterStore(RoleSource, Protocol):
    async def query(
        self,
        criteria: RosterFilter,
        order: RosterSort,
        offset: int,
        limit: int,
    ) -> RosterPage: ...

    async def insert(self, record: EmployeeCreate) -> str: ...

    async def update_by_id(self, employee_id: str, partial: EmployeeUpdate) -> None: ...

    async def delete_by_id(self, employee_id: str) -> None: ...

    async def delete_by_ids(self, ids: list[str]) -> None: ...

    async def update_by_ids(self, ids: list[str], partial: EmployeeUpdate) -> None: ...

    def bind_session(self, scope: frozenset[str] | None, actor_id: str | None) -> None: ...


AuthListener = Callable[[AuthEvent, Identity | None], None]


class IdentityProvider(Protocol):
    def subscribe(self, listener: AuthListener) -> Callable[[], None]: ...

    def current_identity(self) -> Identity | None: ...

    async def resolve_roles(self, identity_id: str) -> list[RoleAssignment]: ...


class AuthEventEmitter:
    """Listener bookkeeping shared by identity provider implementations."""

    def __init__(self) -> None:
        self._listeners: list[AuthListener] = []
        self._identity: Identity | None = None

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def current_identity(self) -> Identity | None:
        return self._identity

    def emit(self, event: AuthEvent, identity: Identity | None) -> None:
        self._identity = identity if event != AuthEvent.SIGNED_OUT else None
        for listener in list(self._listeners):
            listener(event, self._identity)
