from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, col, select

from roster.domain.models import (
    SORTABLE_COLUMNS,
    Department,
    Employee,
    EmployeeCreate,
    EmployeeStatus,
    EmployeeUpdate,
    SortDirection,
)
from roster.infra.db import get_engine
from roster.infra.events import (
    EMPLOYEE_CREATED,
    EMPLOYEE_DELETED,
    EMPLOYEE_STATUS_CHANGED,
    EMPLOYEE_UPDATED,
    event_bus,
)

DepartmentScope = frozenset[str] | None


class EmployeeError(Exception):
    pass


class NotFoundError(EmployeeError):
    pass


class ConflictError(EmployeeError):
    pass


class ForbiddenError(EmployeeError):
    pass


@dataclass
class BulkResult:
    requested_count: int
    applied_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


class EmployeeService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _scope_clause(self, scope: DepartmentScope) -> Any:
        if scope is None:
            return None
        return col(Employee.department_id).in_(sorted(scope))

    def _get_scoped_employee(self, session: Session, employee_id: str, scope: DepartmentScope) -> Employee:
        employee = session.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("employee not found")
        if scope is not None and employee.department_id not in scope:
            raise NotFoundError("employee not found")
        return employee

    def _resolve_department(
        self,
        session: Session,
        department_id: str | None,
        scope: DepartmentScope,
    ) -> Department | None:
        if department_id is None:
            if scope is not None:
                raise ForbiddenError("department is required for scoped managers")
            return None
        department = session.get(Department, department_id)
        if department is None:
            raise NotFoundError("department not found")
        if scope is not None and department_id not in scope:
            raise ForbiddenError("department outside of managed scope")
        return department

    def query_page(
        self,
        *,
        search_text: str = "",
        sort_column: str = "name",
        sort_direction: SortDirection = SortDirection.ASC,
        offset: int = 0,
        limit: int = 10,
        scope: DepartmentScope = None,
    ) -> tuple[list[Employee], int]:
        if sort_column not in SORTABLE_COLUMNS:
            raise ConflictError(f"unsupported sort column: {sort_column}")
        statement = select(Employee)
        count_statement = select(func.count()).select_from(Employee)

        needle = search_text.strip()
        if needle:
            match = col(Employee.name).icontains(needle, autoescape=True)
            statement = statement.where(match)
            count_statement = count_statement.where(match)
        scope_clause = self._scope_clause(scope)
        if scope_clause is not None:
            statement = statement.where(scope_clause)
            count_statement = count_statement.where(scope_clause)

        sort_attr = col(getattr(Employee, sort_column))
        primary = sort_attr.desc() if sort_direction == SortDirection.DESC else sort_attr.asc()
        statement = statement.order_by(primary, col(Employee.id).asc()).offset(max(offset, 0)).limit(max(limit, 0))

        with self._session() as session:
            total = session.exec(count_statement).one()
            rows = list(session.exec(statement).all())
        return rows, int(total)

    def get_employee(self, employee_id: str, scope: DepartmentScope = None) -> Employee:
        with self._session() as session:
            return self._get_scoped_employee(session, employee_id, scope)

    def create_employee(
        self,
        payload: EmployeeCreate,
        *,
        scope: DepartmentScope = None,
        actor_id: str | None = None,
    ) -> Employee:
        with self._session() as session:
            department = self._resolve_department(session, payload.department_id, scope)
            employee = Employee(
                name=payload.name.strip(),
                email=payload.email.strip(),
                position=payload.position.strip(),
                department_id=payload.department_id,
                department=department.name if department is not None else None,
                phone=payload.phone,
                hire_date=payload.hire_date,
                salary=payload.salary,
                status=payload.status,
                avatar_url=payload.avatar_url,
            )
            session.add(employee)
            session.commit()
            session.refresh(employee)

        event_bus.publish_dict(
            EMPLOYEE_CREATED,
            {"employee_id": employee.id, "name": employee.name, "position": employee.position},
            actor_id=actor_id,
        )
        return employee

    def update_employee(
        self,
        employee_id: str,
        payload: EmployeeUpdate,
        *,
        scope: DepartmentScope = None,
        actor_id: str | None = None,
    ) -> Employee:
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            employee = self._get_scoped_employee(session, employee_id, scope)
            previous_status = employee.status
            if "department_id" in changes:
                department = self._resolve_department(session, changes["department_id"], scope)
                employee.department_id = changes.pop("department_id")
                employee.department = department.name if department is not None else None
            for key, value in changes.items():
                if key in {"name", "email", "position"}:
                    if value is None or not str(value).strip():
                        raise ConflictError(f"{key} must not be empty")
                    value = str(value).strip()
                setattr(employee, key, value)
            employee.updated_at = datetime.now(UTC)
            session.add(employee)
            session.commit()
            session.refresh(employee)

        self._publish_update(employee, previous_status, actor_id)
        return employee

    def _publish_update(self, employee: Employee, previous_status: EmployeeStatus, actor_id: str | None) -> None:
        if employee.status != previous_status:
            event_bus.publish_dict(
                EMPLOYEE_STATUS_CHANGED,
                {"employee_id": employee.id, "name": employee.name, "status": employee.status.value},
                actor_id=actor_id,
            )
            return
        event_bus.publish_dict(
            EMPLOYEE_UPDATED,
            {"employee_id": employee.id, "name": employee.name},
            actor_id=actor_id,
        )

    def delete_employee(
        self,
        employee_id: str,
        *,
        scope: DepartmentScope = None,
        actor_id: str | None = None,
    ) -> None:
        with self._session() as session:
            employee = self._get_scoped_employee(session, employee_id, scope)
            name = employee.name
            session.delete(employee)
            session.commit()

        event_bus.publish_dict(
            EMPLOYEE_DELETED,
            {"employee_id": employee_id, "name": name},
            actor_id=actor_id,
        )

    def _scoped_rows(self, session: Session, ids: Iterable[str], scope: DepartmentScope) -> list[Employee]:
        requested = sorted({item for item in ids if item})
        if not requested:
            return []
        statement = select(Employee).where(col(Employee.id).in_(requested))
        scope_clause = self._scope_clause(scope)
        if scope_clause is not None:
            statement = statement.where(scope_clause)
        return list(session.exec(statement).all())

    def bulk_delete(
        self,
        ids: list[str],
        *,
        scope: DepartmentScope = None,
        actor_id: str | None = None,
    ) -> BulkResult:
        requested = list(dict.fromkeys(ids))
        with self._session() as session:
            rows = self._scoped_rows(session, requested, scope)
            deleted = [(item.id, item.name) for item in rows]
            for item in rows:
                session.delete(item)
            session.commit()

        applied = {item_id for item_id, _ in deleted}
        for employee_id, name in deleted:
            event_bus.publish_dict(
                EMPLOYEE_DELETED,
                {"employee_id": employee_id, "name": name, "bulk": True},
                actor_id=actor_id,
            )
        return BulkResult(
            requested_count=len(requested),
            applied_ids=[item for item in requested if item in applied],
            failed_ids=[item for item in requested if item not in applied],
        )

    def bulk_update_status(
        self,
        ids: list[str],
        status: EmployeeStatus,
        *,
        scope: DepartmentScope = None,
        actor_id: str | None = None,
    ) -> BulkResult:
        requested = list(dict.fromkeys(ids))
        changed: list[Employee] = []
        with self._session() as session:
            rows = self._scoped_rows(session, requested, scope)
            now = datetime.now(UTC)
            for item in rows:
                if item.status != status:
                    changed.append(item)
                item.status = status
                item.updated_at = now
                session.add(item)
            session.commit()
            applied = {item.id for item in rows}

        for item in changed:
            event_bus.publish_dict(
                EMPLOYEE_STATUS_CHANGED,
                {"employee_id": item.id, "name": item.name, "status": status.value, "bulk": True},
                actor_id=actor_id,
            )
        return BulkResult(
            requested_count=len(requested),
            applied_ids=[item for item in requested if item in applied],
            failed_ids=[item for item in requested if item not in applied],
        )
