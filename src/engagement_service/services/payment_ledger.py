"""Payment creation, verification, distribution, and refunds."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from engagement_service.core.exceptions import (
    AuthorizationError,
    DuplicatePaymentError,
    GatewayError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from engagement_service.logging import get_logger
from engagement_service.models import (
    PAYABLE_STATUSES,
    TERMINAL_STATUSES,
    ActorRole,
    Distribution,
    Payment,
    PaymentStatus,
    ProviderType,
    ReasonCode,
    RefundReason,
    RequestStatus,
    now_iso,
    parse_iso,
    to_iso,
)
from engagement_service.services import fee_calculator

if TYPE_CHECKING:
    from engagement_service.clients.payment_gateway_client import PaymentGatewayClient
    from engagement_service.config import EngineConfig
    from engagement_service.models import Actor, ServiceRequest
    from engagement_service.services.engagement_store import EngagementStore
    from engagement_service.services.fee_calculator import DistributionPlan
    from engagement_service.services.notification_dispatcher import NotificationDispatcher
    from engagement_service.services.request_manager import RequestManager

logger = get_logger(__name__)

_GATEWAY_CAPTURED = "captured"
_GATEWAY_FAILED = "failed"


@dataclass(frozen=True)
class RefundEligibility:
    """Whether a payment can be refunded now, and for how much."""

    payment_id: str
    eligible: bool
    percentage: float
    amount: int
    status_snapshot: RequestStatus
    manual_review_required: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PaymentLedger:
    """
    Moves money records through their lifecycle.

    Gateway mutations (order creation, refunds) happen before the local
    transaction and are never retried. A gateway failure is audited and
    leaves local state exactly as it was. Every financial attempt, successful
    or not, lands in the audit log.
    """

    def __init__(
        self,
        store: EngagementStore,
        gateway: PaymentGatewayClient,
        request_manager: RequestManager,
        config: EngineConfig,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._request_manager = request_manager
        self._config = config
        self._dispatcher = dispatcher

    def _publish(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.wake()

    def _load_payment(self, payment_id: str) -> Payment:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def _reload_payment(self, payment_id: str) -> Payment:
        payment = self._store.get_payment(payment_id)
        if payment is None:
            msg = f"Payment {payment_id} not found after update"
            raise RuntimeError(msg)
        return payment

    def _load_request(self, request_id: str) -> ServiceRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Request", request_id)
        return request

    def _audit(
        self,
        payment_id: str,
        action: str,
        actor: Actor,
        outcome: str,
        **details: Any,
    ) -> None:
        self._store.record_audit(
            entity_type="payment",
            entity_id=payment_id,
            action=action,
            actor_id=actor.actor_id,
            outcome=outcome,
            details=details,
        )

    def _audit_rejection(
        self,
        entity_id: str,
        action: str,
        actor: Actor,
        error: str,
        **details: Any,
    ) -> None:
        logger.warning(
            "Financial attempt rejected",
            extra={"entity_id": entity_id, "action": action, "error": error},
        )
        self._audit(entity_id, action, actor, "failed", error=error, **details)

    @staticmethod
    def _is_payer_or_admin(payment: Payment, actor: Actor) -> bool:
        if actor.is_admin:
            return True
        return actor.role == ActorRole.CLIENT and payment.client_id == actor.actor_id

    def _can_view(self, payment: Payment, actor: Actor) -> bool:
        if self._is_payer_or_admin(payment, actor):
            return True
        if actor.role != ActorRole.PROVIDER:
            return False
        if payment.payee_provider_id == actor.actor_id:
            return True
        if payment.firm_id is None:
            return False
        return any(
            member.provider_id == actor.actor_id
            for member in self._store.list_firm_members(payment.firm_id)
        )

    # ------------------------------------------------------------------
    # Creation and verification
    # ------------------------------------------------------------------

    def _resolve_amount(self, request: ServiceRequest, amount: int | None) -> int:
        payments = self._config.payments
        if amount is None:
            if request.budget_hint is None:
                raise ValidationError(
                    "amount is required when the request has no budget", {"field": "amount"}
                )
            amount = request.budget_hint
        elif request.budget_hint is not None:
            band = fee_calculator.as_decimal(payments.estimate_band_pct)
            deviation = abs(amount - request.budget_hint) * 100
            if deviation > band * request.budget_hint:
                raise ValidationError(
                    f"amount must be within {payments.estimate_band_pct}% of the budget",
                    {"amount": amount, "budget_hint": request.budget_hint},
                    "AMOUNT_OUT_OF_RANGE",
                )
        if amount < payments.minimum_amount:
            raise ValidationError(
                f"amount must be at least {payments.minimum_amount}",
                {"amount": amount, "minimum": payments.minimum_amount},
                "AMOUNT_OUT_OF_RANGE",
            )
        return amount

    async def create_payment(
        self,
        request_id: str,
        actor: Actor,
        amount: int | None = None,
    ) -> Payment:
        """
        Open a gateway order and record the payment.

        Error precedence:
        1. FORBIDDEN: caller is not a client
        2. VALIDATION_ERROR: amount is not a positive integer
        3. NOT_FOUND: request
        4. FORBIDDEN: caller does not own the request
        5. INVALID_STATUS: request not payable or has no assignee
        6. AMOUNT_OUT_OF_RANGE: below minimum or outside the estimate band
        7. DUPLICATE_PAYMENT: a live payment exists (checked again at insert)
        8. PAYMENT_GATEWAY_UNAVAILABLE: order creation failed
        """
        if actor.role != ActorRole.CLIENT:
            raise AuthorizationError("Only clients may create payments")
        if amount is not None and (
            isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0
        ):
            raise ValidationError("amount must be a positive integer", {"field": "amount"})

        request = self._load_request(request_id)
        if request.client_id != actor.actor_id:
            raise AuthorizationError("Only the owning client may pay for this request")
        if request.status not in PAYABLE_STATUSES or request.provider_id is None:
            raise StateConflictError(
                f"Cannot pay for a request in '{request.status}' status",
                {"request_id": request_id, "status": request.status.value},
            )

        gross = self._resolve_amount(request, amount)

        if self._store.get_live_payment_for_request(request_id) is not None:
            self._audit_rejection(request_id, "payment.create", actor, "DUPLICATE_PAYMENT")
            raise DuplicatePaymentError(request_id)

        provider = self._store.get_provider(request.provider_id)
        if provider is None:
            raise NotFoundError("Provider", request.provider_id)
        firm = None
        if provider.provider_type == ProviderType.FIRM_MEMBER:
            firm_id = request.firm_id or provider.firm_id
            firm = self._store.get_firm(firm_id) if firm_id is not None else None
        fee_pct = fee_calculator.fee_pct_for(provider.provider_type, firm, self._config.fees)
        fees = fee_calculator.compute_platform_fee(gross, fee_pct)

        payment_id = f"pay-{uuid4()}"
        try:
            order = await self._gateway.create_order(gross, receipt=payment_id)
        except GatewayError as exc:
            self._audit_rejection(
                request_id, "payment.create", actor, exc.error, payment_id=payment_id
            )
            raise

        payment = Payment(
            payment_id=payment_id,
            request_id=request_id,
            client_id=request.client_id,
            payee_provider_id=provider.provider_id,
            provider_type=provider.provider_type,
            gross=fees.gross,
            fee_pct=fees.fee_pct,
            platform_fee=fees.platform_fee,
            net_to_provider=fees.net_to_provider,
            status=PaymentStatus.CREATED,
            created_at=now_iso(),
            firm_id=firm.firm_id if firm is not None else None,
            gateway_order_id=str(order["id"]),
        )
        try:
            with self._store.transaction():
                self._store.insert_payment(payment)
                self._audit(
                    payment_id,
                    "payment.create",
                    actor,
                    "succeeded",
                    request_id=request_id,
                    gross=fees.gross,
                    platform_fee=fees.platform_fee,
                    gateway_order_id=payment.gateway_order_id,
                )
        except DuplicatePaymentError:
            self._audit_rejection(
                request_id,
                "payment.create",
                actor,
                "DUPLICATE_PAYMENT",
                gateway_order_id=payment.gateway_order_id,
            )
            raise

        logger.info(
            "Payment created",
            extra={
                "payment_id": payment_id,
                "request_id": request_id,
                "gross": fees.gross,
                "platform_fee": fees.platform_fee,
                "provider_type": provider.provider_type.value,
            },
        )
        return payment

    async def verify_payment(
        self,
        payment_id: str,
        actor: Actor,
        gateway_payment_id: str,
        signature: str,
    ) -> Payment:
        """
        Check the checkout signature, then confirm capture with the gateway.

        A repeated call with the same gateway payment id re-polls the gateway
        instead of failing, so a capture that was still pending can be picked
        up later.

        Error precedence:
        1. VALIDATION_ERROR: missing gateway_payment_id or signature
        2. NOT_FOUND
        3. FORBIDDEN: caller is neither the payer nor admin/system
        4. INVALID_STATUS: payment already past verification with another id
        5. INVALID_SIGNATURE: HMAC mismatch (audited, state unchanged)
        """
        if not gateway_payment_id or not signature:
            raise ValidationError("gateway_payment_id and signature are required")

        payment = self._load_payment(payment_id)
        if not self._is_payer_or_admin(payment, actor):
            raise AuthorizationError("Caller may not verify this payment")

        already_verified = (
            payment.status == PaymentStatus.VERIFIED
            and payment.gateway_payment_id == gateway_payment_id
        )
        if payment.status != PaymentStatus.CREATED and not already_verified:
            if payment.gateway_payment_id == gateway_payment_id:
                return payment
            raise StateConflictError(
                f"Cannot verify a payment in '{payment.status}' status",
                {"payment_id": payment_id, "status": payment.status.value},
            )

        if payment.gateway_order_id is None or not self._gateway.verify_signature(
            payment.gateway_order_id, gateway_payment_id, signature
        ):
            self._audit_rejection(
                payment_id,
                "payment.verify",
                actor,
                "INVALID_SIGNATURE",
                gateway_payment_id=gateway_payment_id,
            )
            raise ValidationError(
                "Payment signature does not match",
                {"payment_id": payment_id},
                "INVALID_SIGNATURE",
            )

        if not already_verified:
            with self._store.transaction():
                affected = self._store.update_payment(
                    payment_id,
                    {
                        "status": PaymentStatus.VERIFIED.value,
                        "gateway_payment_id": gateway_payment_id,
                        "verified_at": now_iso(),
                    },
                    expected_status=PaymentStatus.CREATED.value,
                )
                if affected == 0:
                    raise StateConflictError(
                        "Payment changed concurrently", {"payment_id": payment_id}
                    )
                self._audit(
                    payment_id,
                    "payment.verify",
                    actor,
                    "succeeded",
                    gateway_payment_id=gateway_payment_id,
                )
            logger.info("Payment verified", extra={"payment_id": payment_id})

        try:
            remote = await self._gateway.fetch_payment(gateway_payment_id)
        except GatewayError as exc:
            logger.warning(
                "Capture status unavailable, payment left verified",
                extra={"payment_id": payment_id, "error": exc.error},
            )
            return self._reload_payment(payment_id)

        remote_status = str(remote.get("status", ""))
        if remote_status == _GATEWAY_CAPTURED:
            self._mark_completed(payment_id, actor)
        elif remote_status == _GATEWAY_FAILED:
            self._mark_failed(payment_id, actor)
        self._publish()
        return self._reload_payment(payment_id)

    def _mark_completed(self, payment_id: str, actor: Actor) -> None:
        with self._store.transaction():
            affected = self._store.update_payment(
                payment_id,
                {"status": PaymentStatus.COMPLETED.value, "completed_at": now_iso()},
                expected_status=PaymentStatus.VERIFIED.value,
            )
            if affected == 0:
                return
            payment = self._reload_payment(payment_id)
            request = self._load_request(payment.request_id)
            if request.status == RequestStatus.COMPLETED and request.completed_at is not None:
                due = parse_iso(request.completed_at) + timedelta(
                    days=self._config.escrow.auto_release_days
                )
                self._store.schedule_release(request.request_id, to_iso(due))
            self._audit(payment_id, "payment.capture", actor, "succeeded", gross=payment.gross)
            self._store.enqueue_outbox(
                topic="payment.completed",
                recipient_id=payment.payee_provider_id,
                payload={"payment_id": payment_id, "request_id": payment.request_id},
            )
        logger.info("Payment completed", extra={"payment_id": payment_id})

    def _mark_failed(self, payment_id: str, actor: Actor) -> None:
        with self._store.transaction():
            affected = self._store.update_payment(
                payment_id,
                {"status": PaymentStatus.FAILED.value},
                expected_status=PaymentStatus.VERIFIED.value,
            )
            if affected == 0:
                return
            self._audit(payment_id, "payment.capture", actor, "failed", error="GATEWAY_FAILED")
        logger.warning("Gateway reported payment failed", extra={"payment_id": payment_id})

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def compute_distribution(self, payment: Payment) -> DistributionPlan:
        """Payee rows the payment would produce if distributed now."""
        if payment.provider_type == ProviderType.INDIVIDUAL or payment.firm_id is None:
            return fee_calculator.compute_distribution(
                gross=payment.gross,
                platform_fee=payment.platform_fee,
                payee_provider_id=payment.payee_provider_id,
                provider_type=ProviderType.INDIVIDUAL,
                tax=self._config.tax,
            )

        firm = self._store.get_firm(payment.firm_id)
        if firm is None:
            raise NotFoundError("Firm", payment.firm_id)
        return fee_calculator.compute_distribution(
            gross=payment.gross,
            platform_fee=payment.platform_fee,
            payee_provider_id=payment.payee_provider_id,
            provider_type=payment.provider_type,
            tax=self._config.tax,
            policy=firm.split_policy,
            members=self._store.list_firm_members(firm.firm_id),
            custom=self._store.get_custom_split(payment.request_id),
        )

    async def distribute(self, payment_id: str, actor: Actor) -> list[Distribution]:
        """
        Release a completed payment to its payees.

        Error precedence:
        1. FORBIDDEN: caller is not admin/system
        2. NOT_FOUND
        3. INVALID_STATUS: payment not completed, on hold, already distributed,
           or request not completed
        4. INVALID_SPLIT: firm split cannot be computed
        """
        if not actor.is_admin:
            raise AuthorizationError("Only an admin or the system may distribute funds")

        payment = self._load_payment(payment_id)
        request = self._load_request(payment.request_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise StateConflictError(
                f"Cannot distribute a payment in '{payment.status}' status",
                {"payment_id": payment_id, "status": payment.status.value},
            )
        if request.status != RequestStatus.COMPLETED:
            raise StateConflictError(
                "Request must be completed before funds are released",
                {"request_id": request.request_id, "status": request.status.value},
            )

        plan = self.compute_distribution(payment)
        created_at = now_iso()
        rows = [
            Distribution(
                distribution_id=f"dist-{uuid4()}",
                payment_id=payment_id,
                payee_id=share.payee_id,
                gross_share=share.gross_share,
                withheld=share.withheld,
                net=share.net,
                remainder_holder=share.remainder_holder,
                created_at=created_at,
            )
            for share in plan.shares
        ]

        with self._store.transaction():
            current = self._reload_payment(payment_id)
            if current.on_hold:
                raise StateConflictError(
                    "Payment is on hold",
                    {"payment_id": payment_id, "hold_reason": current.hold_reason},
                )
            if current.distributed:
                raise StateConflictError(
                    "Payment has already been distributed", {"payment_id": payment_id}
                )
            affected = self._store.update_payment(
                payment_id,
                {"distributed": True, "released_to_provider": True, "released_at": created_at},
                expected_status=PaymentStatus.COMPLETED.value,
            )
            if affected == 0:
                raise StateConflictError(
                    f"Cannot distribute a payment in '{current.status}' status",
                    {"payment_id": payment_id, "status": current.status.value},
                )
            self._store.insert_distributions(rows)
            self._audit(
                payment_id,
                "payment.distribute",
                actor,
                "succeeded",
                payees=len(rows),
                total_net=plan.total_net,
                total_withheld=plan.total_withheld,
                platform_fee=plan.platform_fee,
            )
            for row in rows:
                self._store.enqueue_outbox(
                    topic="payment.distributed",
                    recipient_id=row.payee_id,
                    payload={"payment_id": payment_id, "net": row.net, "withheld": row.withheld},
                )

        logger.info(
            "Payment distributed",
            extra={
                "payment_id": payment_id,
                "payees": len(rows),
                "total_net": plan.total_net,
                "total_withheld": plan.total_withheld,
            },
        )
        self._publish()
        return self._store.list_distributions(payment_id)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def _eligibility(self, payment: Payment, percentage: float | None = None) -> RefundEligibility:
        request = self._load_request(payment.request_id)
        snapshot = request.status
        pct = (
            percentage
            if percentage is not None
            else fee_calculator.refund_percentage(
                request.status,
                request.cancelled_from,
                self._config.refunds,
                estimated_hours=request.estimated_hours,
                actual_hours=request.actual_hours,
            )
        )
        amount = fee_calculator.compute_refund_amount(
            payment.gross, payment.platform_fee, pct, self._config.refunds.processing_fee
        )

        def result(
            eligible: bool, reason: str | None, *, manual: bool = False
        ) -> RefundEligibility:
            return RefundEligibility(
                payment_id=payment.payment_id,
                eligible=eligible,
                percentage=pct,
                amount=amount if eligible else 0,
                status_snapshot=snapshot,
                manual_review_required=manual,
                reason=reason,
            )

        if payment.status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED):
            return result(eligible=False, reason="already_refunded")
        if payment.status == PaymentStatus.REFUND_PENDING:
            return result(eligible=False, reason="refund_in_progress")
        if payment.status != PaymentStatus.COMPLETED:
            return result(eligible=False, reason="payment_not_completed")
        if payment.released_to_provider:
            return result(eligible=False, reason="funds_released", manual=True)
        if amount <= 0:
            return result(eligible=False, reason="no_refundable_amount")
        return result(eligible=True, reason=None)

    async def check_refund_eligibility(self, payment_id: str, actor: Actor) -> RefundEligibility:
        """Refund percentage and amount for the payment's current request status."""
        payment = self._load_payment(payment_id)
        if not self._is_payer_or_admin(payment, actor):
            raise AuthorizationError("Caller may not inspect refunds for this payment")
        return self._eligibility(payment)

    async def initiate_refund(
        self,
        payment_id: str,
        actor: Actor,
        reason_code: str,
        percentage: float | None = None,
    ) -> Payment:
        """
        Refund a completed payment and cancel its request.

        The percentage is fixed from the request status at this moment (or an
        admin override) and stored with the payment; it is never edited later.

        The payment is moved to ``refund_pending`` before the gateway is
        called, so a second refund attempt sees it as in progress. A gateway
        failure puts it back to ``completed``. If the gateway refunded but the
        local write then conflicts, the payment stays ``refund_pending`` for
        manual review and the attempt is audited as ``REFUND_NOT_RECORDED``.

        Error precedence:
        1. VALIDATION_ERROR: unknown reason code
        2. FORBIDDEN: percentage override by a non-admin
        3. VALIDATION_ERROR: percentage outside [0, 100]
        4. NOT_FOUND
        5. FORBIDDEN: caller is neither the payer nor admin
        6. INVALID_STATUS: not refundable (including funds already released)
        7. PAYMENT_GATEWAY_UNAVAILABLE: gateway refund failed (audited, state unchanged)
        """
        try:
            reason = RefundReason(reason_code)
        except ValueError as exc:
            raise ValidationError(
                "Unknown reason_code", {"field": "reason_code", "value": reason_code}
            ) from exc
        if percentage is not None:
            if actor.role != ActorRole.ADMIN:
                raise AuthorizationError("Only an admin may override the refund percentage")
            if isinstance(percentage, bool) or not isinstance(percentage, int | float):
                raise ValidationError("percentage must be a number", {"field": "percentage"})
            if not 0 <= percentage <= 100:
                raise ValidationError(
                    "percentage must be between 0 and 100", {"field": "percentage"}
                )

        payment = self._load_payment(payment_id)
        if not self._is_payer_or_admin(payment, actor):
            raise AuthorizationError("Caller may not refund this payment")

        with self._store.transaction():
            current = self._reload_payment(payment_id)
            eligibility = self._eligibility(current, percentage)
            if eligibility.eligible:
                if current.gateway_payment_id is None:
                    msg = f"Completed payment {payment_id} has no gateway payment id"
                    raise RuntimeError(msg)
                self._store.update_payment(
                    payment_id,
                    {"status": PaymentStatus.REFUND_PENDING.value},
                    expected_status=PaymentStatus.COMPLETED.value,
                )
        if not eligibility.eligible:
            self._audit_rejection(
                payment_id,
                "payment.refund",
                actor,
                eligibility.reason or "NOT_ELIGIBLE",
                manual_review_required=eligibility.manual_review_required,
            )
            raise StateConflictError(
                "Payment is not eligible for a refund",
                {
                    "payment_id": payment_id,
                    "reason": eligibility.reason,
                    "manual_review_required": eligibility.manual_review_required,
                },
            )

        try:
            refund = await self._gateway.create_refund(
                str(current.gateway_payment_id),
                eligibility.amount,
                notes={"payment_id": payment_id, "reason_code": reason.value},
            )
        except GatewayError as exc:
            with self._store.transaction():
                self._store.update_payment(
                    payment_id,
                    {"status": PaymentStatus.COMPLETED.value},
                    expected_status=PaymentStatus.REFUND_PENDING.value,
                )
                self._audit_rejection(
                    payment_id,
                    "payment.refund",
                    actor,
                    exc.error,
                    amount=eligibility.amount,
                    percentage=eligibility.percentage,
                )
            raise

        gateway_refund_id = str(refund.get("id", "")) or None
        try:
            self._settle_refund(payment, actor, reason, eligibility, gateway_refund_id)
        except StateConflictError as exc:
            self._audit(
                payment_id,
                "payment.refund",
                actor,
                "failed",
                error="REFUND_NOT_RECORDED",
                detail=exc.message,
                amount=eligibility.amount,
                gateway_refund_id=gateway_refund_id,
            )
            logger.error(
                "Gateway refund issued but not recorded locally",
                extra={"payment_id": payment_id, "gateway_refund_id": gateway_refund_id},
            )
            raise

        logger.info(
            "Refund issued",
            extra={
                "payment_id": payment_id,
                "amount": eligibility.amount,
                "percentage": eligibility.percentage,
                "status_snapshot": eligibility.status_snapshot.value,
            },
        )
        self._publish()
        return self._reload_payment(payment_id)

    def _settle_refund(
        self,
        payment: Payment,
        actor: Actor,
        reason: RefundReason,
        eligibility: RefundEligibility,
        gateway_refund_id: str | None,
    ) -> None:
        new_status = (
            PaymentStatus.REFUNDED
            if eligibility.percentage >= 100
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        with self._store.transaction():
            affected = self._store.update_payment(
                payment.payment_id,
                {
                    "status": new_status.value,
                    "refund_reason_code": reason.value,
                    "refund_pct": eligibility.percentage,
                    "refund_amount": eligibility.amount,
                    "refund_processed_by": actor.actor_id,
                    "refunded_at": now_iso(),
                    "gateway_refund_id": gateway_refund_id,
                },
                expected_status=PaymentStatus.REFUND_PENDING.value,
            )
            if affected == 0:
                raise StateConflictError(
                    "Payment changed concurrently", {"payment_id": payment.payment_id}
                )
            request = self._load_request(payment.request_id)
            if request.status not in TERMINAL_STATUSES:
                self._request_manager.apply_cancellation(
                    request, actor, ReasonCode.REFUND_ISSUED, f"refund:{reason.value}"
                )
            self._audit(
                payment.payment_id,
                "payment.refund",
                actor,
                "succeeded",
                amount=eligibility.amount,
                percentage=eligibility.percentage,
                status_snapshot=eligibility.status_snapshot.value,
                reason_code=reason.value,
            )
            self._store.enqueue_outbox(
                topic="payment.refunded",
                recipient_id=payment.client_id,
                payload={"payment_id": payment.payment_id, "amount": eligibility.amount},
            )

    async def get_refund_status(self, payment_id: str, actor: Actor) -> dict[str, Any]:
        """Gateway view of the payment's refund."""
        payment = self._load_payment(payment_id)
        if not self._is_payer_or_admin(payment, actor):
            raise AuthorizationError("Caller may not inspect refunds for this payment")
        if payment.gateway_refund_id is None:
            raise StateConflictError("Payment has no refund", {"payment_id": payment_id})
        remote = await self._gateway.fetch_refund(payment.gateway_refund_id)
        return {
            "payment_id": payment_id,
            "gateway_refund_id": payment.gateway_refund_id,
            "refund_amount": payment.refund_amount,
            "gateway_status": remote.get("status"),
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str, actor: Actor) -> Payment:
        payment = self._load_payment(payment_id)
        if not self._can_view(payment, actor):
            raise AuthorizationError("Caller may not view this payment")
        return payment

    async def list_distributions(self, payment_id: str, actor: Actor) -> list[Distribution]:
        payment = self._load_payment(payment_id)
        if not self._can_view(payment, actor):
            raise AuthorizationError("Caller may not view this payment")
        return self._store.list_distributions(payment_id)
