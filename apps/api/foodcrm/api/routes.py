from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from foodcrm.auth.api import router as auth_router
from foodcrm.authz.api import router as rbac_router
from foodcrm.catalog.api import router as products_router
from foodcrm.core.auth import ActorUser
from foodcrm.core.config import get_settings
from foodcrm.core.rbac import get_current_actor, require_permission
from foodcrm.crm.api import (
    contacts_router,
    interactions_router,
    opportunities_router,
    organizations_router,
)
from foodcrm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(rbac_router)
router.include_router(organizations_router)
router.include_router(contacts_router)
router.include_router(interactions_router)
router.include_router(opportunities_router)
router.include_router(products_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_actor)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_permission(user, "system", "monitor")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
