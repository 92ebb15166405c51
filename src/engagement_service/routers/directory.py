"""Directory sync endpoints for provider and firm profiles."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from engagement_service.core.state import get_app_state
from engagement_service.routers.validation import get_actor, read_json_body

if TYPE_CHECKING:
    from engagement_service.services.directory_sync import DirectorySync

router = APIRouter()


def _directory() -> DirectorySync:
    state = get_app_state()
    if state.directory_sync is None:
        msg = "DirectorySync not initialized"
        raise RuntimeError(msg)
    return state.directory_sync


@router.put("/directory/providers/{provider_id}")
async def sync_provider(provider_id: str, request: Request) -> dict[str, Any]:
    """Register or refresh a provider profile."""
    actor = get_actor(request)
    data = await read_json_body(request)
    return (await _directory().sync_provider(provider_id, actor, data)).to_dict()


@router.put("/directory/firms/{firm_id}")
async def sync_firm(firm_id: str, request: Request) -> dict[str, Any]:
    """Register or refresh a firm."""
    actor = get_actor(request)
    data = await read_json_body(request)
    return (await _directory().sync_firm(firm_id, actor, data)).to_dict()


@router.put("/directory/firms/{firm_id}/members/{provider_id}")
async def sync_firm_member(firm_id: str, provider_id: str, request: Request) -> dict[str, Any]:
    """Attach a provider to a firm or refresh the membership."""
    actor = get_actor(request)
    data = await read_json_body(request)
    return (await _directory().sync_firm_member(firm_id, provider_id, actor, data)).to_dict()
