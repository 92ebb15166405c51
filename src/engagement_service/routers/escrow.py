"""Scheduled escrow release endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request

from engagement_service.core.exceptions import AuthorizationError
from engagement_service.core.state import get_app_state
from engagement_service.routers.validation import get_actor
from engagement_service.schemas import AutoReleaseResponse

router = APIRouter()


@router.post("/escrow/auto-release", response_model=AutoReleaseResponse)
async def auto_release(request: Request) -> AutoReleaseResponse:
    """Distribute every completed payment whose release time has passed."""
    actor = get_actor(request)
    if not actor.is_admin:
        raise AuthorizationError("Only an admin or the system may run auto-release")

    state = get_app_state()
    if state.escrow_coordinator is None:
        msg = "EscrowCoordinator not initialized"
        raise RuntimeError(msg)

    result = await state.escrow_coordinator.release_due()
    return AutoReleaseResponse(released=result["released"], failed=result["failed"])
