from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from roster.domain.errors import Outcome
from roster.domain.models import EmployeeCreate, EmployeeRead, EmployeeStatus, EmployeeUpdate, Role, SortDirection
from roster.domain.permissions import (
    LOGIN_PATH,
    AccessDecision,
    Anonymous,
    AuthorizationState,
    Resolved,
    RouteRule,
    decide,
    department_scope,
    highest_role,
    route_decision,
    visible_routes,
)
from roster.domain.state_machine import MutationState
from roster.services.mutation_coordinator import MutationCoordinator
from roster.services.roster_query import RosterQuery, RosterQueryEngine
from roster.services.session_store import SessionStore
from roster.services.store import IdentityProvider, RosterStore

logger = logging.getLogger(__name__)

ROSTER_REQUIRED_ROLE = Role.MANAGER


class RosterConsole:
    """Session-scoped facade handed to the presentation layer.

    Wires the session store, query engine and mutation coordinator together
    and gates every roster operation on the current authorization state.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: RosterStore,
        *,
        page_size: int | None = None,
        session: SessionStore | None = None,
    ) -> None:
        self.session = session or SessionStore(provider)
        self._store = store
        self._store.bind_session(frozenset(), None)
        self.engine = RosterQueryEngine(store, page_size=page_size, department_ids=frozenset())
        self.mutations = MutationCoordinator(store, self.engine)
        self._scope_task: asyncio.Task[Outcome] | None = None
        self._unsubscribe = self.session.on_change(self._on_auth_change)

    @property
    def auth_state(self) -> AuthorizationState:
        return self.session.current()

    @property
    def rows(self) -> tuple[EmployeeRead, ...]:
        return self.engine.rows

    @property
    def total_count(self) -> int:
        return self.engine.total_count

    @property
    def query(self) -> RosterQuery:
        return self.engine.query

    @property
    def selection(self) -> frozenset[str]:
        return self.engine.selection

    @property
    def mutation_state(self) -> MutationState:
        return self.mutations.state

    def can_access(self, path: str) -> AccessDecision:
        return route_decision(path, self.auth_state)

    def redirect_for(self, path: str) -> str | None:
        """Login path when ``path`` needs a signed-in user and there is none."""
        if isinstance(self.auth_state, Anonymous) and self.can_access(path) == AccessDecision.DENY:
            return LOGIN_PATH
        return None

    @property
    def role(self) -> Role | None:
        """Highest role held by the signed-in user, for labelling the session."""
        return highest_role(self.auth_state)

    def navigation(self) -> list[RouteRule]:
        return visible_routes(self.auth_state)

    async def settled(self) -> None:
        while True:
            await self.session.settled()
            task = self._scope_task
            if task is None or task.done():
                return
            await asyncio.wait({task})

    async def set_filter(self, text: str) -> Outcome:
        return await self._gated(lambda: self.engine.set_filter(text))

    async def set_sort(self, column: str, direction: SortDirection = SortDirection.ASC) -> Outcome:
        return await self._gated(lambda: self.engine.set_sort(column, direction))

    async def toggle_sort(self, column: str) -> Outcome:
        return await self._gated(lambda: self.engine.toggle_sort(column))

    async def set_page(self, page: int) -> Outcome:
        return await self._gated(lambda: self.engine.set_page(page))

    async def refresh(self) -> Outcome:
        return await self._gated(self.engine.refresh)

    def select(self, employee_id: str, selected: bool = True) -> bool:
        return self.engine.select(employee_id, selected)

    def select_all(self, selected: bool) -> None:
        self.engine.select_all(selected)

    async def create(self, data: Mapping[str, Any] | EmployeeCreate) -> Outcome:
        return await self._gated(lambda: self.mutations.create(data))

    async def update(self, employee_id: str, data: Mapping[str, Any] | EmployeeUpdate) -> Outcome:
        return await self._gated(lambda: self.mutations.update(employee_id, data))

    async def delete(self, employee_id: str) -> Outcome:
        return await self._gated(lambda: self.mutations.delete(employee_id))

    async def bulk_delete(self, ids: Iterable[str] | None = None) -> Outcome:
        return await self._gated(lambda: self.mutations.bulk_delete(ids))

    async def bulk_set_status(self, ids: Iterable[str] | None, status: EmployeeStatus | str) -> Outcome:
        return await self._gated(lambda: self.mutations.bulk_set_status(ids, status))

    def close(self) -> None:
        self._unsubscribe()
        if self._scope_task is not None and not self._scope_task.done():
            self._scope_task.cancel()
        self.engine.reset()
        self.session.close()

    async def _gated(self, operation: Callable[[], Awaitable[Outcome]]) -> Outcome:
        decision = decide(ROSTER_REQUIRED_ROLE, self.auth_state)
        if decision == AccessDecision.PENDING:
            return Outcome.failure("Permissions are still loading")
        if decision == AccessDecision.DENY:
            if isinstance(self.auth_state, Anonymous):
                return Outcome.failure("Please sign in to continue")
            return Outcome.failure("You do not have access to the employee roster")
        return await operation()

    def _on_auth_change(self, state: AuthorizationState) -> None:
        if not isinstance(state, Resolved) or decide(ROSTER_REQUIRED_ROLE, state) != AccessDecision.ALLOW:
            if self._scope_task is not None and not self._scope_task.done():
                self._scope_task.cancel()
            self._scope_task = None
            self._store.bind_session(frozenset(), None)
            self.engine.reset()
            return
        scope = department_scope(state)
        self._store.bind_session(scope, state.identity.id)
        logger.debug("roster scope resolved", extra={"departments": None if scope is None else sorted(scope)})
        self._scope_task = asyncio.create_task(self.engine.set_department_scope(scope))
