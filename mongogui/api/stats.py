"""Service statistics endpoint."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from mongogui.services.manager import ServiceManager, get_service_manager

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("")
async def get_stats(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> dict[str, Any]:
    """Token and session counters plus background task state."""
    return {"user": request.state.user, **manager.get_stats()}
