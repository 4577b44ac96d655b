from __future__ import annotations

import asyncio

from roster.domain.errors import PartialFailureError, StoreError
from roster.domain.models import (
    EmployeeCreate,
    EmployeeRead,
    EmployeeUpdate,
    Identity,
    RoleAssignment,
)
from roster.domain.state_machine import AuthEvent
from roster.services import employee_service, identity_service
from roster.services.employee_service import BulkResult, DepartmentScope, EmployeeService
from roster.services.identity_service import IdentityService
from roster.services.store import AuthEventEmitter, RosterFilter, RosterPage, RosterSort

_SERVICE_ERRORS = (employee_service.EmployeeError, identity_service.IdentityError)


class LocalRosterStore:
    """In-process roster store backed directly by the SQL services.

    Service calls run in worker threads so the event loop keeps serving
    other fetches while a query is in flight. Writes are limited to the
    department scope bound for the current session. An unbound store has
    an empty scope and rejects writes.
    """

    def __init__(
        self,
        *,
        employee_service: EmployeeService | None = None,
        identity_service: IdentityService | None = None,
        write_scope: DepartmentScope = frozenset(),
        actor_id: str | None = None,
    ) -> None:
        self._employees = employee_service or EmployeeService()
        self._identity = identity_service or IdentityService()
        self._write_scope = write_scope
        self._actor_id = actor_id

    def bind_session(self, scope: DepartmentScope, actor_id: str | None) -> None:
        self._write_scope = scope
        self._actor_id = actor_id

    async def query(
        self,
        criteria: RosterFilter,
        order: RosterSort,
        offset: int,
        limit: int,
    ) -> RosterPage:
        try:
            rows, total = await asyncio.to_thread(
                self._employees.query_page,
                search_text=criteria.search_text,
                sort_column=order.column,
                sort_direction=order.direction,
                offset=offset,
                limit=limit,
                scope=criteria.department_ids,
            )
        except _SERVICE_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        return RosterPage(rows=tuple(EmployeeRead.model_validate(item) for item in rows), total_count=total)

    async def insert(self, record: EmployeeCreate) -> str:
        try:
            employee = await asyncio.to_thread(
                self._employees.create_employee,
                record,
                scope=self._write_scope,
                actor_id=self._actor_id,
            )
        except _SERVICE_ERRORS as exc:
            raise StoreError(str(exc)) from exc
        return employee.id

    async def update_by_id(self, employee_id: str, partial: EmployeeUpdate) -> None:
        try:
            await asyncio.to_thread(
                self._employees.update_employee,
                employee_id,
                partial,
                scope=self._write_scope,
                actor_id=self._actor_id,
            )
        except _SERVICE_ERRORS as exc:
            raise StoreError(str(exc)) from exc

    async def delete_by_id(self, employee_id: str) -> None:
        try:
            await asyncio.to_thread(
                self._employees.delete_employee,
                employee_id,
                scope=self._write_scope,
                actor_id=self._actor_id,
            )
        except _SERVICE_ERRORS as exc:
            raise StoreError(str(exc)) from exc

    async def delete_by_ids(self, ids: list[str]) -> None:
        result = await asyncio.to_thread(
            self._employees.bulk_delete,
            ids,
            scope=self._write_scope,
            actor_id=self._actor_id,
        )
        self._raise_on_partial(result, "delete")

    async def update_by_ids(self, ids: list[str], partial: EmployeeUpdate) -> None:
        if partial.status is None:
            raise StoreError("bulk update supports status changes only")
        result = await asyncio.to_thread(
            self._employees.bulk_update_status,
            ids,
            partial.status,
            scope=self._write_scope,
            actor_id=self._actor_id,
        )
        self._raise_on_partial(result, "update")

    async def fetch_role_assignments(self, user_id: str) -> list[RoleAssignment]:
        return await asyncio.to_thread(self._identity.list_role_assignments, user_id)

    @staticmethod
    def _raise_on_partial(result: BulkResult, verb: str) -> None:
        if result.failed_ids:
            raise PartialFailureError(
                f"failed to {verb} {len(result.failed_ids)} of {result.requested_count} employees",
                result.failed_ids,
            )


class LocalIdentityProvider(AuthEventEmitter):
    """Identity provider that signs users in against the local user directory."""

    def __init__(self, identity_service: IdentityService | None = None) -> None:
        super().__init__()
        self._service = identity_service or IdentityService()

    async def sign_in(self, email: str, password: str) -> Identity:
        user = await asyncio.to_thread(self._service.dev_login, email, password)
        identity = Identity(id=user.id, email=user.email)
        self.emit(AuthEvent.SIGNED_IN, identity)
        return identity

    async def refresh(self) -> None:
        identity = self.current_identity()
        if identity is not None:
            self.emit(AuthEvent.TOKEN_REFRESHED, identity)

    def sign_out(self) -> None:
        self.emit(AuthEvent.SIGNED_OUT, None)

    async def resolve_roles(self, identity_id: str) -> list[RoleAssignment]:
        return await asyncio.to_thread(self._service.list_role_assignments, identity_id)
