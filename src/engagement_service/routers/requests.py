"""Request lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from engagement_service.core.exceptions import ValidationError
from engagement_service.core.state import get_app_state
from engagement_service.routers.validation import (
    get_actor,
    optional_int,
    optional_number,
    optional_str,
    parse_paging,
    read_json_body,
    require_str,
)

if TYPE_CHECKING:
    from engagement_service.services.request_manager import RequestManager

router = APIRouter()


def _manager() -> RequestManager:
    state = get_app_state()
    if state.request_manager is None:
        msg = "RequestManager not initialized"
        raise RuntimeError(msg)
    return state.request_manager


# ---------------------------------------------------------------------------
# POST /requests, GET /requests (MUST be before /requests/{request_id})
# ---------------------------------------------------------------------------


@router.post("/requests", status_code=201)
async def create_request(request: Request) -> JSONResponse:
    """Open a new service request."""
    actor = get_actor(request)
    data = await read_json_body(request)

    created = await _manager().create_request(
        actor,
        category=require_str(data, "category"),
        urgency=require_str(data, "urgency"),
        description=require_str(data, "description"),
        budget_hint=optional_int(data, "budget_hint"),
        deadline=optional_str(data, "deadline"),
        estimated_hours=optional_number(data, "estimated_hours"),
        firm_id=optional_str(data, "firm_id"),
        requested_provider_id=optional_str(data, "requested_provider_id"),
    )
    return JSONResponse(status_code=201, content=created.to_dict())


@router.get("/requests")
async def list_requests(request: Request) -> dict[str, Any]:
    """List requests visible to the caller."""
    actor = get_actor(request)
    limit, offset = parse_paging(request)
    items = await _manager().list_requests(
        actor,
        status=request.query_params.get("status"),
        limit=limit,
        offset=offset,
    )
    return {"requests": [item.to_dict() for item in items]}


# ---------------------------------------------------------------------------
# Single request
# ---------------------------------------------------------------------------


@router.get("/requests/{request_id}")
async def get_request(request_id: str, request: Request) -> dict[str, Any]:
    """Fetch one request."""
    actor = get_actor(request)
    found = await _manager().get_request(request_id, actor)
    return found.to_dict()


@router.patch("/requests/{request_id}")
async def update_request(request_id: str, request: Request) -> dict[str, Any]:
    """Edit a pending request."""
    actor = get_actor(request)
    data = await read_json_body(request)
    updated = await _manager().update_request(request_id, actor, data)
    return updated.to_dict()


@router.get("/requests/{request_id}/history")
async def get_history(request_id: str, request: Request) -> dict[str, Any]:
    """Assignment and hand-back events in order."""
    actor = get_actor(request)
    events = await _manager().get_history(request_id, actor)
    return {"request_id": request_id, "events": [event.to_dict() for event in events]}


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/requests/{request_id}/accept")
async def accept_request(request_id: str, request: Request) -> dict[str, Any]:
    """Provider accepts the proposed request."""
    actor = get_actor(request)
    return (await _manager().accept(request_id, actor)).to_dict()


@router.post("/requests/{request_id}/start")
async def start_request(request_id: str, request: Request) -> dict[str, Any]:
    """Provider starts work."""
    actor = get_actor(request)
    return (await _manager().start(request_id, actor)).to_dict()


@router.post("/requests/{request_id}/hours")
async def log_hours(request_id: str, request: Request) -> dict[str, Any]:
    """Provider records hours worked."""
    actor = get_actor(request)
    data = await read_json_body(request)
    return (await _manager().log_hours(request_id, actor, data.get("hours"))).to_dict()


@router.post("/requests/{request_id}/complete")
async def complete_request(request_id: str, request: Request) -> dict[str, Any]:
    """Provider finishes work."""
    actor = get_actor(request)
    return (await _manager().complete(request_id, actor)).to_dict()


@router.post("/requests/{request_id}/reject")
async def reject_request(request_id: str, request: Request) -> dict[str, Any]:
    """Provider hands the request back without penalty."""
    actor = get_actor(request)
    data = await read_json_body(request)
    updated = await _manager().reject(
        request_id,
        actor,
        require_str(data, "reason_code"),
        optional_str(data, "note"),
    )
    return updated.to_dict()


@router.post("/requests/{request_id}/abandon")
async def abandon_request(request_id: str, request: Request) -> dict[str, Any]:
    """Provider walks away from the request."""
    actor = get_actor(request)
    data = await read_json_body(request)
    updated = await _manager().abandon(
        request_id,
        actor,
        require_str(data, "reason_code"),
        optional_str(data, "note"),
    )
    return updated.to_dict()


@router.post("/requests/{request_id}/cancel")
async def cancel_request(request_id: str, request: Request) -> dict[str, Any]:
    """Cancel a non-terminal request."""
    actor = get_actor(request)
    data = await read_json_body(request)
    updated = await _manager().cancel(request_id, actor, optional_str(data, "reason"))
    return updated.to_dict()


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


@router.post("/requests/{request_id}/assignment")
async def compute_assignment(request_id: str, request: Request) -> dict[str, Any]:
    """Score candidates and record a proposal."""
    actor = get_actor(request)
    outcome = await _manager().compute_assignment(request_id, actor)
    return outcome.to_dict()


@router.post("/requests/{request_id}/reassign")
async def reassign_request(request_id: str, request: Request) -> dict[str, Any]:
    """Admin override of the assignee."""
    actor = get_actor(request)
    data = await read_json_body(request)
    updated = await _manager().reassign(
        request_id,
        actor,
        require_str(data, "provider_id"),
        require_str(data, "reason"),
    )
    return updated.to_dict()


@router.post("/requests/{request_id}/custom-split")
async def set_custom_split(request_id: str, request: Request) -> dict[str, Any]:
    """Record per-request firm split shares."""
    actor = get_actor(request)
    data = await read_json_body(request)
    shares = data.get("shares")
    if not isinstance(shares, dict):
        raise ValidationError("Field 'shares' must be an object", {"field": "shares"})
    recorded = await _manager().set_custom_split(request_id, actor, shares)
    return {"request_id": request_id, "shares": recorded}
