from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from roster.api.deps import Principal, get_current_principal, require_role
from roster.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    MeRead,
    Role,
    RoleAssignment,
    SignUpRequest,
    TokenResponse,
    UserAccountRead,
    UserRolesReplaceRequest,
    UserWithRolesRead,
)
from roster.infra.audit import set_audit_context
from roster.infra.auth import create_access_token
from roster.services.identity_service import AuthError, ConflictError, IdentityService, NotFoundError

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_role(Role.ADMIN))]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post("/sign-up", response_model=UserAccountRead, status_code=status.HTTP_201_CREATED)
def sign_up(payload: SignUpRequest, service: Service) -> UserAccountRead:
    try:
        user = service.sign_up(payload)
        return UserAccountRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserAccountRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserAccountRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserAccountRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.email, payload.password)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(user_id=user.id, email=user.email)
    return TokenResponse(access_token=token, user_id=user.id, email=user.email)


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(principal: CurrentPrincipal) -> TokenResponse:
    identity = principal.state.identity
    token = create_access_token(user_id=identity.id, email=identity.email)
    return TokenResponse(access_token=token, user_id=identity.id, email=identity.email)


@router.get("/me", response_model=MeRead)
def get_me(principal: CurrentPrincipal) -> MeRead:
    return MeRead(
        identity=principal.state.identity,
        roles=sorted(principal.state.roles, key=lambda item: (item.role.value, item.department_id or "")),
    )


@router.get("/users", response_model=list[UserWithRolesRead])
def list_users(_: AdminPrincipal, service: Service) -> list[UserWithRolesRead]:
    return service.list_users_with_roles()


@router.get("/users/{user_id}/roles", response_model=list[RoleAssignment])
def list_user_roles(user_id: str, principal: CurrentPrincipal, service: Service) -> list[RoleAssignment]:
    if principal.user_id != user_id and not principal.has_role(Role.ADMIN):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return service.list_role_assignments(user_id)


@router.put("/users/{user_id}/roles", response_model=list[RoleAssignment])
def replace_user_roles(
    user_id: str,
    payload: UserRolesReplaceRequest,
    request: Request,
    principal: AdminPrincipal,
    service: Service,
) -> list[RoleAssignment]:
    set_audit_context(
        request,
        action="identity.user_roles.replace",
        resource=f"user:{user_id}",
        detail={"roles": [item.model_dump(mode="json") for item in payload.roles]},
    )
    try:
        return service.replace_user_roles(user_id, payload.roles, actor_id=principal.user_id)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
