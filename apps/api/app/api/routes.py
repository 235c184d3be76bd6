from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import (
    clients_router,
    conversations_router,
    leads_router,
    opportunities_router,
    pipeline_router,
    tasks_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type

METRICS_ROLE = "system.metrics.read"

router = APIRouter()
for crm_router in (
    leads_router,
    opportunities_router,
    pipeline_router,
    tasks_router,
    conversations_router,
    clients_router,
):
    router.include_router(crm_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "name": user.name,
        "roles": user.roles,
        "crm_permissions": sorted(role for role in user.roles if role.startswith("crm.") or role == "*"),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
