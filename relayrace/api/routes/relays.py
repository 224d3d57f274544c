"""Relay status and runtime toggle endpoints."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from relayrace.api.dependencies import Services, get_services

router = APIRouter()


class ToggleRequest(BaseModel):
    """Relay toggle request model."""

    enabled: bool


class ToggleResponse(BaseModel):
    """Relay toggle response model."""

    enabled: bool
    active_sessions: int


@router.get("/status")
async def relay_status(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Get every active session relay.

    Returns:
        Registry snapshot
    """
    return services.registry.snapshot()


@router.post("/toggle", response_model=ToggleResponse)
async def toggle_relays(body: ToggleRequest, services: Services = Depends(get_services)) -> ToggleResponse:
    """Enable or disable relay usage process-wide.

    Disabling drops every session relay immediately.

    Args:
        body: Desired state

    Returns:
        New state
    """
    if body.enabled:
        services.registry.enable()
        services.scheduler.resume()
    else:
        services.registry.disable()
        services.scheduler.pause()

    return ToggleResponse(enabled=services.registry.enabled, active_sessions=len(services.registry))
