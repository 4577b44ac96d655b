from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from roster.domain.models import (
    Department,
    DepartmentCreate,
    DepartmentUpdate,
    DepartmentWithCountRead,
    Employee,
    UserAccount,
    UserRoleAssignment,
)
from roster.infra.db import get_engine
from roster.infra.events import (
    DEPARTMENT_CREATED,
    DEPARTMENT_DELETED,
    DEPARTMENT_UPDATED,
    event_bus,
)


class DepartmentError(Exception):
    pass


class NotFoundError(DepartmentError):
    pass


class ConflictError(DepartmentError):
    pass


class DepartmentService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_department(self, session: Session, department_id: str) -> Department:
        department = session.get(Department, department_id)
        if department is None:
            raise NotFoundError("department not found")
        return department

    def _ensure_manager(self, session: Session, manager_id: str | None) -> None:
        if manager_id is not None and session.get(UserAccount, manager_id) is None:
            raise NotFoundError("manager user not found")

    def list_departments(self, scope: frozenset[str] | None = None) -> list[DepartmentWithCountRead]:
        with self._session() as session:
            statement = select(Department).order_by(col(Department.name).asc())
            if scope is not None:
                statement = statement.where(col(Department.id).in_(sorted(scope)))
            departments = list(session.exec(statement).all())
            counts = dict(
                session.exec(
                    select(Employee.department_id, func.count())
                    .where(col(Employee.department_id).is_not(None))
                    .group_by(col(Employee.department_id))
                ).all()
            )
        return [
            DepartmentWithCountRead(
                id=item.id,
                name=item.name,
                description=item.description,
                manager_id=item.manager_id,
                created_at=item.created_at,
                employee_count=int(counts.get(item.id, 0)),
            )
            for item in departments
        ]

    def get_department(self, department_id: str) -> Department:
        with self._session() as session:
            return self._get_department(session, department_id)

    def create_department(self, payload: DepartmentCreate, *, actor_id: str | None = None) -> Department:
        name = payload.name.strip()
        if not name:
            raise ConflictError("department name must not be empty")
        with self._session() as session:
            self._ensure_manager(session, payload.manager_id)
            department = Department(name=name, description=payload.description, manager_id=payload.manager_id)
            session.add(department)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("department name already exists") from exc
            session.refresh(department)

        event_bus.publish_dict(
            DEPARTMENT_CREATED,
            {"department_id": department.id, "name": department.name},
            actor_id=actor_id,
        )
        return department

    def update_department(
        self,
        department_id: str,
        payload: DepartmentUpdate,
        *,
        actor_id: str | None = None,
    ) -> Department:
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            department = self._get_department(session, department_id)
            if "name" in changes:
                name = (changes["name"] or "").strip()
                if not name:
                    raise ConflictError("department name must not be empty")
                department.name = name
            if "description" in changes:
                department.description = changes["description"]
            if "manager_id" in changes:
                self._ensure_manager(session, changes["manager_id"])
                department.manager_id = changes["manager_id"]
            department.updated_at = datetime.now(UTC)
            session.add(department)
            if "name" in changes:
                members = session.exec(select(Employee).where(Employee.department_id == department_id)).all()
                for member in members:
                    member.department = department.name
                    session.add(member)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("department name already exists") from exc
            session.refresh(department)

        event_bus.publish_dict(
            DEPARTMENT_UPDATED,
            {"department_id": department.id, "name": department.name},
            actor_id=actor_id,
        )
        return department

    def delete_department(self, department_id: str, *, actor_id: str | None = None) -> None:
        with self._session() as session:
            department = self._get_department(session, department_id)
            name = department.name
            members = session.exec(select(Employee).where(Employee.department_id == department_id)).all()
            for member in members:
                member.department_id = None
                member.department = None
                session.add(member)
            assignments = session.exec(
                select(UserRoleAssignment).where(UserRoleAssignment.department_id == department_id)
            ).all()
            for assignment in assignments:
                session.delete(assignment)
            session.delete(department)
            session.commit()

        event_bus.publish_dict(
            DEPARTMENT_DELETED,
            {"department_id": department_id, "name": name},
            actor_id=actor_id,
        )
