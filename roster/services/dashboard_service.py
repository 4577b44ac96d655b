from __future__ import annotations

from sqlalchemy import func
from sqlmodel import Session, col, select

from roster.domain.models import (
    ActivityRead,
    ActivityType,
    DashboardStatsRead,
    Department,
    DepartmentCountRead,
    Employee,
    EmployeeStatus,
    EventRecord,
    StatusCountRead,
)
from roster.infra.db import get_engine
from roster.infra.events import (
    EMPLOYEE_CREATED,
    EMPLOYEE_DELETED,
    EMPLOYEE_EVENT_TYPES,
    EMPLOYEE_STATUS_CHANGED,
)

UNKNOWN_LABEL = "Unknown"


class DashboardService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def get_stats(self, scope: frozenset[str] | None = None) -> DashboardStatsRead:
        with self._session() as session:
            status_statement = select(Employee.status, func.count()).group_by(col(Employee.status))
            department_statement = select(Employee.department, func.count()).group_by(col(Employee.department))
            department_total_statement = select(func.count()).select_from(Department)
            if scope is not None:
                scoped_ids = sorted(scope)
                status_statement = status_statement.where(col(Employee.department_id).in_(scoped_ids))
                department_statement = department_statement.where(col(Employee.department_id).in_(scoped_ids))
                department_total_statement = department_total_statement.where(col(Department.id).in_(scoped_ids))
            status_rows = list(session.exec(status_statement).all())
            department_rows = list(session.exec(department_statement).all())
            total_departments = int(session.exec(department_total_statement).one())

        by_status = {EmployeeStatus(status): int(count) for status, count in status_rows}
        return DashboardStatsRead(
            total_employees=sum(by_status.values()),
            active_employees=by_status.get(EmployeeStatus.ACTIVE, 0),
            on_leave=by_status.get(EmployeeStatus.ON_LEAVE, 0),
            total_departments=total_departments,
            by_status=[
                StatusCountRead(name=status.value, value=count)
                for status, count in sorted(by_status.items(), key=lambda item: item[0].value)
            ],
            by_department=sorted(
                (
                    DepartmentCountRead(name=name or UNKNOWN_LABEL, count=int(count))
                    for name, count in department_rows
                ),
                key=lambda item: item.name,
            ),
        )

    def recent_activity(self, limit: int = 5) -> list[ActivityRead]:
        with self._session() as session:
            records = list(
                session.exec(
                    select(EventRecord)
                    .where(col(EventRecord.event_type).in_(EMPLOYEE_EVENT_TYPES))
                    .order_by(col(EventRecord.ts).desc())
                    .limit(max(limit, 0))
                ).all()
            )
        return [self._to_activity(item) for item in records]

    @staticmethod
    def _to_activity(record: EventRecord) -> ActivityRead:
        payload = record.payload
        name = str(payload.get("name") or UNKNOWN_LABEL)
        if record.event_type == EMPLOYEE_CREATED:
            activity_type = ActivityType.HIRE
            details = f"New employee hired as {payload.get('position') or 'staff'}"
        elif record.event_type == EMPLOYEE_STATUS_CHANGED:
            activity_type = ActivityType.STATUS_CHANGE
            details = f"Status changed to {payload.get('status')}"
        elif record.event_type == EMPLOYEE_DELETED:
            activity_type = ActivityType.DELETE
            details = "Employee removed"
        else:
            activity_type = ActivityType.UPDATE
            details = "Profile updated"
        return ActivityRead(
            id=record.event_id,
            type=activity_type,
            employee_id=payload.get("employee_id"),
            employee_name=name,
            details=details,
            created_at=record.ts,
        )
