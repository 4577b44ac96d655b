from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from roster.api.deps import Principal, require_role
from roster.domain.models import (
    BulkDeleteRequest,
    BulkResultRead,
    BulkStatusRequest,
    EmployeeCreate,
    EmployeeRead,
    EmployeeUpdate,
    Role,
    RosterPageRead,
    SortDirection,
)
from roster.infra.audit import set_audit_context
from roster.services.employee_service import (
    BulkResult,
    ConflictError,
    EmployeeService,
    ForbiddenError,
    NotFoundError,
)

router = APIRouter()


def get_employee_service() -> EmployeeService:
    return EmployeeService()


ManagerPrincipal = Annotated[Principal, Depends(require_role(Role.MANAGER))]
Service = Annotated[EmployeeService, Depends(get_employee_service)]


def _handle_employee_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


def _narrow_scope(principal: Principal, requested: list[str] | None) -> frozenset[str] | None:
    scope = principal.scope
    if requested is None:
        return scope
    wanted = frozenset(item for item in requested if item)
    return wanted if scope is None else wanted & scope


def _to_bulk_read(result: BulkResult) -> BulkResultRead:
    return BulkResultRead(
        requested_count=result.requested_count,
        applied_count=len(result.applied_ids),
        failed_ids=result.failed_ids,
    )


@router.get("", response_model=RosterPageRead)
def query_employees(
    principal: ManagerPrincipal,
    service: Service,
    search: str = "",
    sort: str = "name",
    direction: SortDirection = SortDirection.ASC,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=10, ge=1, le=200),
    department_id: Annotated[list[str] | None, Query()] = None,
) -> RosterPageRead:
    try:
        rows, total = service.query_page(
            search_text=search,
            sort_column=sort,
            sort_direction=direction,
            offset=offset,
            limit=limit,
            scope=_narrow_scope(principal, department_id),
        )
    except (NotFoundError, ConflictError, ForbiddenError) as exc:
        _handle_employee_error(exc)
        raise
    return RosterPageRead(rows=[EmployeeRead.model_validate(item) for item in rows], total_count=total)


@router.post("", response_model=EmployeeRead, status_code=status.HTTP_201_CREATED)
def create_employee(payload: EmployeeCreate, principal: ManagerPrincipal, service: Service) -> EmployeeRead:
    try:
        employee = service.create_employee(payload, scope=principal.scope, actor_id=principal.user_id)
        return EmployeeRead.model_validate(employee)
    except (NotFoundError, ConflictError, ForbiddenError) as exc:
        _handle_employee_error(exc)
        raise


@router.post("/bulk-delete", response_model=BulkResultRead)
def bulk_delete_employees(
    payload: BulkDeleteRequest,
    request: Request,
    principal: ManagerPrincipal,
    service: Service,
) -> BulkResultRead:
    result = service.bulk_delete(payload.ids, scope=principal.scope, actor_id=principal.user_id)
    set_audit_context(
        request,
        action="employee.bulk_delete",
        resource="employees",
        detail={"requested_ids": payload.ids, "failed_ids": result.failed_ids},
    )
    return _to_bulk_read(result)


@router.post("/bulk-status", response_model=BulkResultRead)
def bulk_update_status(
    payload: BulkStatusRequest,
    request: Request,
    principal: ManagerPrincipal,
    service: Service,
) -> BulkResultRead:
    result = service.bulk_update_status(
        payload.ids,
        payload.status,
        scope=principal.scope,
        actor_id=principal.user_id,
    )
    set_audit_context(
        request,
        action="employee.bulk_status",
        resource="employees",
        detail={"requested_ids": payload.ids, "status": payload.status.value, "failed_ids": result.failed_ids},
    )
    return _to_bulk_read(result)


@router.get("/{employee_id}", response_model=EmployeeRead)
def get_employee(employee_id: str, principal: ManagerPrincipal, service: Service) -> EmployeeRead:
    try:
        employee = service.get_employee(employee_id, scope=principal.scope)
        return EmployeeRead.model_validate(employee)
    except (NotFoundError, ConflictError, ForbiddenError) as exc:
        _handle_employee_error(exc)
        raise


@router.patch("/{employee_id}", response_model=EmployeeRead)
def update_employee(
    employee_id: str,
    payload: EmployeeUpdate,
    principal: ManagerPrincipal,
    service: Service,
) -> EmployeeRead:
    try:
        employee = service.update_employee(
            employee_id,
            payload,
            scope=principal.scope,
            actor_id=principal.user_id,
        )
        return EmployeeRead.model_validate(employee)
    except (NotFoundError, ConflictError, ForbiddenError) as exc:
        _handle_employee_error(exc)
        raise


@router.delete("/{employee_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_employee(employee_id: str, principal: ManagerPrincipal, service: Service) -> Response:
    try:
        service.delete_employee(employee_id, scope=principal.scope, actor_id=principal.user_id)
    except (NotFoundError, ConflictError, ForbiddenError) as exc:
        _handle_employee_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
