from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status

from roster.api.deps import Principal, require_role
from roster.domain.models import (
    DepartmentCreate,
    DepartmentRead,
    DepartmentUpdate,
    DepartmentWithCountRead,
    Role,
)
from roster.services.department_service import ConflictError, DepartmentService, NotFoundError

router = APIRouter()


def get_department_service() -> DepartmentService:
    return DepartmentService()


ManagerPrincipal = Annotated[Principal, Depends(require_role(Role.MANAGER))]
AdminPrincipal = Annotated[Principal, Depends(require_role(Role.ADMIN))]
Service = Annotated[DepartmentService, Depends(get_department_service)]


def _handle_department_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


@router.get("", response_model=list[DepartmentWithCountRead])
def list_departments(principal: ManagerPrincipal, service: Service) -> list[DepartmentWithCountRead]:
    return service.list_departments(principal.scope)


@router.post("", response_model=DepartmentRead, status_code=status.HTTP_201_CREATED)
def create_department(payload: DepartmentCreate, principal: AdminPrincipal, service: Service) -> DepartmentRead:
    try:
        department = service.create_department(payload, actor_id=principal.user_id)
        return DepartmentRead.model_validate(department)
    except (NotFoundError, ConflictError) as exc:
        _handle_department_error(exc)
        raise


@router.get("/{department_id}", response_model=DepartmentRead)
def get_department(department_id: str, principal: ManagerPrincipal, service: Service) -> DepartmentRead:
    scope = principal.scope
    if scope is not None and department_id not in scope:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="department not found")
    try:
        return DepartmentRead.model_validate(service.get_department(department_id))
    except (NotFoundError, ConflictError) as exc:
        _handle_department_error(exc)
        raise


@router.patch("/{department_id}", response_model=DepartmentRead)
def update_department(
    department_id: str,
    payload: DepartmentUpdate,
    principal: AdminPrincipal,
    service: Service,
) -> DepartmentRead:
    try:
        department = service.update_department(department_id, payload, actor_id=principal.user_id)
        return DepartmentRead.model_validate(department)
    except (NotFoundError, ConflictError) as exc:
        _handle_department_error(exc)
        raise


@router.delete("/{department_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_department(department_id: str, principal: AdminPrincipal, service: Service) -> Response:
    try:
        service.delete_department(department_id, actor_id=principal.user_id)
    except (NotFoundError, ConflictError) as exc:
        _handle_department_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
