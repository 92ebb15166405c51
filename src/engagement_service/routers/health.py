"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from engagement_service.core.state import get_app_state
from engagement_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return request and payment counts."""
    state = get_app_state()
    total_requests = 0
    requests_by_status: dict[str, int] = {}
    payments_by_status: dict[str, int] = {}
    pending_notifications = 0
    if state.request_manager is not None:
        stats = state.request_manager.get_stats()
        total_requests = stats["total_requests"]
        requests_by_status = stats["requests_by_status"]
        payments_by_status = stats["payments_by_status"]
        pending_notifications = stats["pending_notifications"]
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_requests=total_requests,
        requests_by_status=requests_by_status,
        payments_by_status=payments_by_status,
        pending_notifications=pending_notifications,
    )
