from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from automation.core.auth import AuthUser, require_role
from automation.core.config import get_settings
from automation.jobs.api import router as jobs_router
from automation.metrics import generate_metrics_payload, metrics_content_type
from automation.workflows.api import events_router, router as workflows_router

router = APIRouter()
router.include_router(workflows_router)
router.include_router(events_router)
router.include_router(jobs_router)

METRICS_ROLE = "system.metrics.read"


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "scheduler": "enabled" if settings.scheduler_enabled else "disabled",
    }


@router.get("/metrics", tags=["system"])
def metrics(_: AuthUser = Depends(require_role(METRICS_ROLE))) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
