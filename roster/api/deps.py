from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from roster.domain.models import Identity, Role
from roster.domain.permissions import AccessDecision, Resolved, decide, department_scope
from roster.infra.auth import decode_access_token
from roster.services.identity_service import IdentityService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


@dataclass(frozen=True)
class Principal:
    claims: dict[str, Any]
    state: Resolved

    @property
    def user_id(self) -> str:
        return self.state.identity.id

    @property
    def scope(self) -> frozenset[str] | None:
        return department_scope(self.state)

    def has_role(self, role: Role) -> bool:
        return decide(role, self.state) == AccessDecision.ALLOW


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def get_current_principal(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> Principal:
    user_id = claims.get("sub")
    email = claims.get("email")
    if not isinstance(user_id, str) or not isinstance(email, str):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    roles = IdentityService().effective_role_assignments(user_id)
    return Principal(claims=claims, state=Resolved(identity=Identity(id=user_id, email=email), roles=roles))


def require_role(role: Role) -> Callable[[Principal], Principal]:
    def _checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if not principal.has_role(role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {role.value}",
            )
        return principal

    return _checker
