"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from relayrace.api.dependencies import Services, get_services
from relayrace.core.config import settings

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness check.

    Returns:
        Simple alive response
    """
    return {"status": "ok"}


@router.get("/info")
async def system_info(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Get system information.

    Returns:
        System configuration info
    """
    return {
        "app_name": settings.app_name,
        "environment": settings.app_env.value,
        "backend_target": settings.backend_target,
        "relay_enabled": services.registry.enabled,
        "relay_scheme": settings.relay_scheme.value,
        "active_sessions": len(services.registry),
        "scheduler_running": services.scheduler.is_running,
        "jobs": services.scheduler.get_jobs(),
    }
