from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from roster.domain.errors import PartialFailureError, StoreError
from roster.domain.models import (
    EmployeeCreate,
    EmployeeRead,
    EmployeeStatus,
    EmployeeUpdate,
    RoleAssignment,
    SortDirection,
)
from roster.domain.state_machine import AuthEvent
from roster.services.store import AuthEventEmitter, RosterFilter, RosterPage, RosterSort

BASE_TS = datetime(2026, 1, 1, tzinfo=UTC)


def make_employee(index: int, *, department_id: str | None = "dept-1", name: str | None = None) -> EmployeeRead:
    ts = BASE_TS + timedelta(minutes=index)
    return EmployeeRead(
        id=f"emp-{index:03d}",
        name=name or f"Employee {index:03d}",
        email=f"employee{index:03d}@example.com",
        position="Engineer",
        department_id=department_id,
        department=department_id,
        status=EmployeeStatus.ACTIVE,
        created_at=ts,
        updated_at=ts,
    )


class InMemoryRosterStore:
    def __init__(self, employees: list[EmployeeRead] | None = None) -> None:
        self.employees: dict[str, EmployeeRead] = {item.id: item for item in employees or []}
        self.roles: dict[str, list[RoleAssignment]] = {}
        self.holds: dict[str, asyncio.Event] = {}
        self.insert_gate: asyncio.Event | None = None
        self.fail_next_query: Exception | None = None
        self.fail_ids: set[str] = set()
        self.query_log: list[tuple[str, int, int]] = []
        self.bound: list[tuple[frozenset[str] | None, str | None]] = []
        self._sequence = len(self.employees)

    async def query(self, criteria: RosterFilter, order: RosterSort, offset: int, limit: int) -> RosterPage:
        self.query_log.append((criteria.search_text, offset, limit))
        hold = self.holds.get(criteria.search_text)
        if hold is not None:
            await hold.wait()
        if self.fail_next_query is not None:
            error, self.fail_next_query = self.fail_next_query, None
            raise error
        needle = criteria.search_text.strip().lower()
        rows = [
            item
            for item in self.employees.values()
            if needle in item.name.lower()
            and (criteria.department_ids is None or item.department_id in criteria.department_ids)
        ]
        rows.sort(key=lambda item: item.id)
        rows.sort(
            key=lambda item: getattr(item, order.column) or "",
            reverse=order.direction == SortDirection.DESC,
        )
        return RosterPage(rows=tuple(rows[offset : offset + limit]), total_count=len(rows))

    async def insert(self, record: EmployeeCreate) -> str:
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        self._sequence += 1
        now = datetime.now(UTC)
        employee = EmployeeRead(
            id=f"emp-new-{self._sequence}",
            created_at=now,
            updated_at=now,
            **record.model_dump(),
        )
        self.employees[employee.id] = employee
        return employee.id

    async def update_by_id(self, employee_id: str, partial: EmployeeUpdate) -> None:
        current = self.employees.get(employee_id)
        if current is None:
            raise StoreError("employee not found")
        self.employees[employee_id] = current.model_copy(update=partial.model_dump(exclude_unset=True))

    async def delete_by_id(self, employee_id: str) -> None:
        if self.employees.pop(employee_id, None) is None:
            raise StoreError("employee not found")

    async def delete_by_ids(self, ids: list[str]) -> None:
        failed = [item for item in ids if item in self.fail_ids or item not in self.employees]
        for item in ids:
            if item not in failed:
                del self.employees[item]
        if failed:
            raise PartialFailureError(f"failed to delete {len(failed)} of {len(ids)} employees", failed)

    async def update_by_ids(self, ids: list[str], partial: EmployeeUpdate) -> None:
        failed = [item for item in ids if item in self.fail_ids or item not in self.employees]
        for item in ids:
            if item not in failed:
                await self.update_by_id(item, partial)
        if failed:
            raise PartialFailureError(f"failed to update {len(failed)} of {len(ids)} employees", failed)

    def bind_session(self, scope: frozenset[str] | None, actor_id: str | None) -> None:
        self.bound.append((scope, actor_id))

    async def fetch_role_assignments(self, user_id: str) -> list[RoleAssignment]:
        return list(self.roles.get(user_id, []))


class StaticIdentityProvider(AuthEventEmitter):
    def __init__(self, roles: dict[str, list[RoleAssignment]] | None = None) -> None:
        super().__init__()
        self.roles = roles or {}
        self.gate: asyncio.Event | None = None

    async def resolve_roles(self, identity_id: str) -> list[RoleAssignment]:
        if self.gate is not None:
            await self.gate.wait()
        return list(self.roles.get(identity_id, []))

    def sign_out(self) -> None:
        self.emit(AuthEvent.SIGNED_OUT, None)
