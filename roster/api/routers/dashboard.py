from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from roster.api.deps import Principal, get_current_principal, require_role
from roster.domain.models import ActivityRead, DashboardStatsRead, Role
from roster.services.dashboard_service import DashboardService

router = APIRouter()


def get_dashboard_service() -> DashboardService:
    return DashboardService()


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
Service = Annotated[DashboardService, Depends(get_dashboard_service)]


@router.get("/stats", response_model=DashboardStatsRead)
def get_stats(principal: CurrentPrincipal, service: Service) -> DashboardStatsRead:
    return service.get_stats(principal.scope)


@router.get(
    "/activity",
    response_model=list[ActivityRead],
    dependencies=[Depends(require_role(Role.MANAGER))],
)
def recent_activity(service: Service, limit: int = Query(default=5, ge=1, le=50)) -> list[ActivityRead]:
    return service.recent_activity(limit=limit)
