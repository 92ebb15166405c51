"""Escrow holds and scheduled release of completed payments."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from service_commons.exceptions import ServiceError

from engagement_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from engagement_service.logging import get_logger
from engagement_service.models import SYSTEM_ACTOR, ActorRole, PaymentStatus, to_iso

if TYPE_CHECKING:
    from engagement_service.models import Actor, Payment
    from engagement_service.services.engagement_store import EngagementStore
    from engagement_service.services.payment_ledger import PaymentLedger

logger = get_logger(__name__)


class EscrowCoordinator:
    """
    Keeps completed payments in escrow until release.

    Funds sit with the platform after capture. They leave either through an
    explicit distribution or through auto-release once the request has been
    completed for the configured number of days, unless a dispute hold blocks
    them.
    """

    def __init__(self, store: EngagementStore, ledger: PaymentLedger) -> None:
        self._store = store
        self._ledger = ledger

    def _load(self, payment_id: str) -> Payment:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def hold_for_dispute(self, payment_id: str, actor: Actor, reason: str) -> Payment:
        """Block release of a completed payment while a dispute is open."""
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason must be a non-empty string", {"field": "reason"})

        payment = self._load(payment_id)
        is_payer = actor.role == ActorRole.CLIENT and payment.client_id == actor.actor_id
        if not (actor.is_admin or is_payer):
            raise AuthorizationError("Only the payer or an admin may place a hold")
        if payment.status != PaymentStatus.COMPLETED or payment.distributed:
            raise StateConflictError(
                "Only completed, undistributed payments can be held",
                {"payment_id": payment_id, "status": payment.status.value},
            )
        if payment.on_hold:
            raise StateConflictError("Payment is already on hold", {"payment_id": payment_id})

        with self._store.transaction():
            self._store.update_payment(
                payment_id,
                {"on_hold": True, "hold_reason": reason},
                expected_status=PaymentStatus.COMPLETED.value,
            )
            self._store.record_audit(
                entity_type="payment",
                entity_id=payment_id,
                action="escrow.hold",
                actor_id=actor.actor_id,
                outcome="succeeded",
                details={"reason": reason},
            )

        logger.info("Escrow hold placed", extra={"payment_id": payment_id, "reason": reason})
        return self._load(payment_id)

    async def release_hold(self, payment_id: str, actor: Actor) -> Payment:
        """Lift a dispute hold so the payment can be released again."""
        if actor.role != ActorRole.ADMIN:
            raise AuthorizationError("Only an admin may lift a hold")

        payment = self._load(payment_id)
        if not payment.on_hold:
            raise StateConflictError("Payment is not on hold", {"payment_id": payment_id})

        with self._store.transaction():
            self._store.update_payment(
                payment_id,
                {"on_hold": False, "hold_reason": None},
                expected_status=None,
            )
            self._store.record_audit(
                entity_type="payment",
                entity_id=payment_id,
                action="escrow.release_hold",
                actor_id=actor.actor_id,
                outcome="succeeded",
                details={"previous_reason": payment.hold_reason},
            )

        logger.info("Escrow hold lifted", extra={"payment_id": payment_id})
        return self._load(payment_id)

    async def release_due(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Distribute every payment whose auto-release time has passed.

        A failure on one payment is logged and skipped; the rest still run.
        """
        moment = now if now is not None else datetime.now(UTC)
        due = self._store.list_due_releases(to_iso(moment))

        released: list[str] = []
        failed: dict[str, str] = {}
        for payment in due:
            try:
                await self._ledger.distribute(payment.payment_id, SYSTEM_ACTOR)
            except ServiceError as exc:
                failed[payment.payment_id] = exc.error
                logger.warning(
                    "Auto-release failed",
                    extra={"payment_id": payment.payment_id, "error": exc.error},
                )
                continue
            released.append(payment.payment_id)

        if due:
            logger.info(
                "Auto-release run finished",
                extra={"due": len(due), "released": len(released), "failed": len(failed)},
            )
        return {"released": released, "failed": failed}
