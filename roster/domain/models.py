from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class EmployeeStatus(StrEnum):
    ACTIVE = "active"
    ON_LEAVE = "on_leave"
    TERMINATED = "terminated"
    PROBATION = "probation"
    INACTIVE = "inactive"


class SortDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


class ActivityType(StrEnum):
    HIRE = "hire"
    STATUS_CHANGE = "status_change"
    UPDATE = "update"
    DELETE = "delete"


SORTABLE_COLUMNS = (
    "name",
    "email",
    "position",
    "department",
    "hire_date",
    "salary",
    "status",
    "created_at",
)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class UserAccount(SQLModel, table=True):
    __tablename__ = "user_accounts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    full_name: str | None = None
    password_hash: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Department(SQLModel, table=True):
    __tablename__ = "departments"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    manager_id: str | None = Field(default=None, foreign_key="user_accounts.id", ondelete="SET NULL")
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class UserRoleAssignment(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        ForeignKeyConstraint(["user_id"], ["user_accounts.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
        UniqueConstraint("user_id", "role", "department_id", name="uq_user_roles_user_role_department"),
        Index("ix_user_roles_user", "user_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str
    role: Role
    department_id: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Employee(SQLModel, table=True):
    __tablename__ = "employees"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    email: str = Field(index=True)
    position: str
    department_id: str | None = Field(
        default=None,
        foreign_key="departments.id",
        index=True,
        ondelete="SET NULL",
    )
    department: str | None = Field(default=None, index=True)
    phone: str | None = None
    hire_date: date | None = None
    salary: float | None = None
    status: EmployeeStatus = Field(default=EmployeeStatus.ACTIVE, index=True)
    avatar_url: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class RoleAssignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    department_id: str | None = None
    department_name: str | None = None


DEFAULT_ROLE_ASSIGNMENT = RoleAssignment(role=Role.EMPLOYEE)


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str


class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: str | None = None


class DevLoginRequest(BaseModel):
    email: str
    password: str


class BootstrapAdminRequest(BaseModel):
    email: str
    password: str
    full_name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: str


class UserAccountRead(ORMReadModel):
    id: str
    email: str
    full_name: str | None = None
    created_at: datetime


class UserWithRolesRead(BaseModel):
    id: str
    email: str
    full_name: str | None = None
    created_at: datetime
    roles: list[RoleAssignment] = PydanticField(default_factory=list)


class MeRead(BaseModel):
    identity: Identity
    roles: list[RoleAssignment]


class RoleAssignmentUpdate(BaseModel):
    role: Role
    department_id: str | None = None


class UserRolesReplaceRequest(BaseModel):
    roles: list[RoleAssignmentUpdate] = PydanticField(default_factory=list)


class DepartmentCreate(BaseModel):
    name: str
    description: str | None = None
    manager_id: str | None = None


class DepartmentUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    manager_id: str | None = None


class DepartmentRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    manager_id: str | None = None
    created_at: datetime


class DepartmentWithCountRead(DepartmentRead):
    employee_count: int = 0


class EmployeeCreate(BaseModel):
    name: str
    email: str
    position: str
    department_id: str | None = None
    phone: str | None = None
    hire_date: date | None = None
    salary: float | None = None
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    avatar_url: str | None = None

    @field_validator("name", "email", "position")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be empty")
        return stripped


class EmployeeUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    position: str | None = None
    department_id: str | None = None
    phone: str | None = None
    hire_date: date | None = None
    salary: float | None = None
    status: EmployeeStatus | None = None
    avatar_url: str | None = None


class EmployeeRead(ORMReadModel):
    id: str
    name: str
    email: str
    position: str
    department_id: str | None = None
    department: str | None = None
    phone: str | None = None
    hire_date: date | None = None
    salary: float | None = None
    status: EmployeeStatus
    avatar_url: str | None = None
    created_at: datetime
    updated_at: datetime


class RosterPageRead(BaseModel):
    rows: list[EmployeeRead]
    total_count: int


class BulkDeleteRequest(BaseModel):
    ids: list[str] = PydanticField(min_length=1)


class BulkStatusRequest(BaseModel):
    ids: list[str] = PydanticField(min_length=1)
    status: EmployeeStatus


class BulkResultRead(BaseModel):
    requested_count: int
    applied_count: int
    failed_ids: list[str] = PydanticField(default_factory=list)


class StatusCountRead(BaseModel):
    name: str
    value: int


class DepartmentCountRead(BaseModel):
    name: str
    count: int


class DashboardStatsRead(BaseModel):
    total_employees: int
    active_employees: int
    on_leave: int
    total_departments: int
    by_status: list[StatusCountRead]
    by_department: list[DepartmentCountRead]


class ActivityRead(BaseModel):
    id: str
    type: ActivityType
    employee_id: str | None = None
    employee_name: str
    details: str
    created_at: datetime
