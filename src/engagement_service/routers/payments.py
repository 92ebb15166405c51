"""Payment, distribution, refund, and escrow hold endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from engagement_service.core.state import get_app_state
from engagement_service.routers.validation import (
    get_actor,
    optional_int,
    optional_number,
    read_json_body,
    require_str,
)

if TYPE_CHECKING:
    from engagement_service.services.escrow_coordinator import EscrowCoordinator
    from engagement_service.services.payment_ledger import PaymentLedger

router = APIRouter()


def _ledger() -> PaymentLedger:
    state = get_app_state()
    if state.payment_ledger is None:
        msg = "PaymentLedger not initialized"
        raise RuntimeError(msg)
    return state.payment_ledger


def _escrow() -> EscrowCoordinator:
    state = get_app_state()
    if state.escrow_coordinator is None:
        msg = "EscrowCoordinator not initialized"
        raise RuntimeError(msg)
    return state.escrow_coordinator


@router.post("/payments", status_code=201)
async def create_payment(request: Request) -> JSONResponse:
    """Create a gateway order and payment record for a request."""
    actor = get_actor(request)
    data = await read_json_body(request)
    payment = await _ledger().create_payment(
        require_str(data, "request_id"),
        actor,
        optional_int(data, "amount"),
    )
    return JSONResponse(status_code=201, content=payment.to_dict())


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: str, request: Request) -> dict[str, Any]:
    """Fetch one payment."""
    actor = get_actor(request)
    return (await _ledger().get_payment(payment_id, actor)).to_dict()


@router.get("/payments/{payment_id}/distributions")
async def list_distributions(payment_id: str, request: Request) -> dict[str, Any]:
    """Payee rows written when the payment was released."""
    actor = get_actor(request)
    rows = await _ledger().list_distributions(payment_id, actor)
    return {"payment_id": payment_id, "distributions": [row.to_dict() for row in rows]}


@router.post("/payments/{payment_id}/verify")
async def verify_payment(payment_id: str, request: Request) -> dict[str, Any]:
    """Verify the checkout signature and confirm capture."""
    actor = get_actor(request)
    data = await read_json_body(request)
    payment = await _ledger().verify_payment(
        payment_id,
        actor,
        require_str(data, "gateway_payment_id"),
        require_str(data, "signature"),
    )
    return payment.to_dict()


@router.get("/payments/{payment_id}/refund-eligibility")
async def refund_eligibility(payment_id: str, request: Request) -> dict[str, Any]:
    """Refund percentage and amount available right now."""
    actor = get_actor(request)
    return (await _ledger().check_refund_eligibility(payment_id, actor)).to_dict()


@router.post("/payments/{payment_id}/refund")
async def initiate_refund(payment_id: str, request: Request) -> dict[str, Any]:
    """Refund the payment and cancel its request."""
    actor = get_actor(request)
    data = await read_json_body(request)
    payment = await _ledger().initiate_refund(
        payment_id,
        actor,
        require_str(data, "reason_code"),
        optional_number(data, "percentage"),
    )
    return payment.to_dict()


@router.get("/payments/{payment_id}/refund-status")
async def refund_status(payment_id: str, request: Request) -> dict[str, Any]:
    """Gateway status of an issued refund."""
    actor = get_actor(request)
    return await _ledger().get_refund_status(payment_id, actor)


@router.post("/payments/{payment_id}/distribute")
async def distribute_payment(payment_id: str, request: Request) -> dict[str, Any]:
    """Release a completed payment to its payees."""
    actor = get_actor(request)
    rows = await _ledger().distribute(payment_id, actor)
    return {"payment_id": payment_id, "distributions": [row.to_dict() for row in rows]}


@router.post("/payments/{payment_id}/hold")
async def hold_payment(payment_id: str, request: Request) -> dict[str, Any]:
    """Block release while a dispute is open."""
    actor = get_actor(request)
    data = await read_json_body(request)
    payment = await _escrow().hold_for_dispute(payment_id, actor, require_str(data, "reason"))
    return payment.to_dict()


@router.post("/payments/{payment_id}/release-hold")
async def release_hold(payment_id: str, request: Request) -> dict[str, Any]:
    """Lift a dispute hold."""
    actor = get_actor(request)
    return (await _escrow().release_hold(payment_id, actor)).to_dict()
