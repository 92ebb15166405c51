"""Request lifecycle: creation, proposal, acceptance, hand-back, completion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from engagement_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from engagement_service.logging import get_logger
from engagement_service.models import (
    PROVIDER_RELEASE_REASONS,
    TERMINAL_STATUSES,
    WORKLOAD_STATUSES,
    ActorRole,
    AssignmentMethod,
    EventKind,
    FirmRole,
    ProviderType,
    ReasonCode,
    RequestStatus,
    ServiceRequest,
    SplitPolicy,
    Urgency,
    now_iso,
    parse_iso,
    to_iso,
)
from engagement_service.services.assignment_engine import (
    AssignmentRequirements,
    AssignmentResult,
    ScoredCandidate,
    exclusion_reason,
    score_candidates,
    score_provider,
)
from engagement_service.services.fee_calculator import as_decimal

if TYPE_CHECKING:
    from engagement_service.config import EngineConfig
    from engagement_service.models import Actor, Provider, RequestEvent
    from engagement_service.services.capacity_tracker import CapacityTracker
    from engagement_service.services.engagement_store import EngagementStore
    from engagement_service.services.notification_dispatcher import NotificationDispatcher

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"description", "deadline", "budget_hint", "urgency", "estimated_hours"}
)

_CANCEL_REASON_BY_ROLE = {
    ActorRole.CLIENT: ReasonCode.CLIENT_CANCELLED,
    ActorRole.PROVIDER: ReasonCode.PROVIDER_CANCELLED,
    ActorRole.ADMIN: ReasonCode.ADMIN_CANCELLED,
    ActorRole.SYSTEM: ReasonCode.ADMIN_CANCELLED,
}


@dataclass(frozen=True)
class AssignmentOutcome:
    """A request after a proposal attempt, with the scoring that produced it."""

    request: ServiceRequest
    result: AssignmentResult
    method: AssignmentMethod | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "assignment_method": self.method,
            **self.result.to_dict(),
        }


class RequestManager:
    """
    Owns request status and the transition graph.

    pending -> accepted -> in_progress -> completed, cancelled from any
    non-terminal status, and accepted|in_progress -> pending via reject or
    abandon. Every write that changes a provider's workload runs in the same
    store transaction as the status change, its event, its audit entry, and
    its outbox notification.
    """

    def __init__(
        self,
        store: EngagementStore,
        tracker: CapacityTracker,
        config: EngineConfig,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._config = config
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _publish(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.wake()

    def _load(self, request_id: str) -> ServiceRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Request", request_id)
        return request

    def _reload(self, request_id: str) -> ServiceRequest:
        request = self._store.get_request(request_id)
        if request is None:
            msg = f"Request {request_id} not found after update"
            raise RuntimeError(msg)
        return request

    @staticmethod
    def _require_role(actor: Actor, *roles: ActorRole) -> None:
        if actor.role not in roles:
            raise AuthorizationError(
                f"Role '{actor.role}' may not perform this action",
                {"allowed_roles": [role.value for role in roles]},
            )

    @staticmethod
    def _require_status(request: ServiceRequest, *allowed: RequestStatus) -> None:
        if request.status not in allowed:
            expected = "', '".join(status.value for status in allowed)
            raise StateConflictError(
                f"Request is '{request.status}', must be '{expected}'",
                {"request_id": request.request_id, "status": request.status.value},
            )

    @staticmethod
    def _require_assignee(request: ServiceRequest, actor: Actor) -> None:
        if actor.role != ActorRole.PROVIDER or request.provider_id != actor.actor_id:
            raise AuthorizationError("Only the assigned provider may perform this action")

    @staticmethod
    def _can_view(request: ServiceRequest, actor: Actor) -> bool:
        if actor.is_admin:
            return True
        if actor.role == ActorRole.CLIENT:
            return request.client_id == actor.actor_id
        return actor.actor_id in (request.provider_id, request.requested_provider_id)

    def _write_status(
        self,
        request: ServiceRequest,
        updates: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> None:
        """Write only if status and assignee still match the snapshot the caller checked."""
        updates = {**updates, "updated_at": now_iso()}
        affected = self._store.update_request(
            request.request_id,
            updates,
            expected_status=request.status.value,
            expected={"provider_id": request.provider_id, **(expected or {})},
        )
        if affected == 0:
            current = self._store.get_request(request.request_id)
            status = current.status.value if current is not None else "missing"
            raise StateConflictError(
                "Request changed concurrently",
                {"request_id": request.request_id, "status": status},
            )

    def _audit(self, request_id: str, action: str, actor: Actor, **details: Any) -> None:
        self._store.record_audit(
            entity_type="request",
            entity_id=request_id,
            action=action,
            actor_id=actor.actor_id,
            outcome="succeeded",
            details=details,
        )

    def _notify(self, recipient_id: str | None, topic: str, request_id: str, **extra: Any) -> None:
        if recipient_id is None:
            return
        self._store.enqueue_outbox(
            topic=topic,
            recipient_id=recipient_id,
            payload={"request_id": request_id, **extra},
        )

    def _validate_note(self, note: str | None) -> None:
        if note is not None and len(note) > self._config.limits.max_note_length:
            raise ValidationError(
                f"note must be at most {self._config.limits.max_note_length} characters",
                {"field": "note"},
            )

    def _validate_description(self, description: object) -> str:
        if not isinstance(description, str) or not description.strip():
            raise ValidationError(
                "description must be a non-empty string", {"field": "description"}
            )
        limit = self._config.limits.max_description_length
        if len(description) > limit:
            raise ValidationError(
                f"description must be at most {limit} characters", {"field": "description"}
            )
        return description

    @staticmethod
    def _validate_urgency(urgency: object) -> Urgency:
        try:
            return Urgency(urgency)
        except ValueError as exc:
            raise ValidationError(
                "urgency must be one of: " + ", ".join(u.value for u in Urgency),
                {"field": "urgency"},
            ) from exc

    @staticmethod
    def _validate_budget(budget_hint: object) -> int | None:
        if budget_hint is None:
            return None
        if isinstance(budget_hint, bool) or not isinstance(budget_hint, int) or budget_hint <= 0:
            raise ValidationError(
                "budget_hint must be a positive integer", {"field": "budget_hint"}
            )
        return budget_hint

    @staticmethod
    def _validate_deadline(deadline: object) -> str | None:
        if deadline is None:
            return None
        if not isinstance(deadline, str):
            raise ValidationError("deadline must be an ISO 8601 string", {"field": "deadline"})
        try:
            moment = parse_iso(deadline)
        except ValueError as exc:
            raise ValidationError(
                "deadline must be an ISO 8601 string", {"field": "deadline"}
            ) from exc
        if moment <= datetime.now(UTC):
            raise ValidationError("deadline must be in the future", {"field": "deadline"})
        return to_iso(moment)

    @staticmethod
    def _validate_hours(hours: object, field: str = "estimated_hours") -> float | None:
        if hours is None:
            return None
        if isinstance(hours, bool) or not isinstance(hours, int | float) or hours <= 0:
            raise ValidationError(f"{field} must be a positive number", {"field": field})
        return float(hours)

    # ------------------------------------------------------------------
    # Creation and edits
    # ------------------------------------------------------------------

    async def create_request(
        self,
        actor: Actor,
        *,
        category: str,
        urgency: str,
        description: str,
        budget_hint: int | None = None,
        deadline: str | None = None,
        estimated_hours: float | None = None,
        firm_id: str | None = None,
        requested_provider_id: str | None = None,
    ) -> ServiceRequest:
        """
        Open a new request for the calling client.

        Error precedence:
        1. FORBIDDEN: caller is not a client
        2. VALIDATION_ERROR: category, urgency, description, budget, deadline, hours
        3. NOT_FOUND: targeted firm or requested provider does not exist
        4. VALIDATION_ERROR: firm inactive or empty, requested provider ineligible
        5. PENDING_LIMIT_REACHED: client already has the maximum pending requests
        """
        self._require_role(actor, ActorRole.CLIENT)

        if not isinstance(category, str) or not category.strip():
            raise ValidationError("category must be a non-empty string", {"field": "category"})
        level = self._validate_urgency(urgency)
        text = self._validate_description(description)
        budget = self._validate_budget(budget_hint)
        due = self._validate_deadline(deadline)
        hours = self._validate_hours(estimated_hours)

        provider_id: str | None = None
        method: AssignmentMethod | None = None
        if firm_id is not None:
            firm = self._store.get_firm(firm_id)
            if firm is None:
                raise NotFoundError("Firm", firm_id)
            if not firm.active:
                raise ValidationError("Firm is not active", {"firm_id": firm_id}, "FIRM_INACTIVE")
            members = self._store.list_firm_members(firm_id)
            if not members:
                raise ValidationError(
                    "Firm has no active members", {"firm_id": firm_id}, "FIRM_INACTIVE"
                )
            if requested_provider_id is not None and requested_provider_id not in {
                member.provider_id for member in members
            }:
                raise ValidationError(
                    "Requested provider is not an active member of the firm",
                    {"provider_id": requested_provider_id, "firm_id": firm_id},
                )
        elif requested_provider_id is not None:
            provider = self._store.get_provider(requested_provider_id)
            if provider is None:
                raise NotFoundError("Provider", requested_provider_id)
            if provider.provider_type != ProviderType.INDIVIDUAL or not provider.is_verified:
                raise ValidationError(
                    "Requested provider is not a verified individual provider",
                    {"provider_id": requested_provider_id},
                    "PROVIDER_NOT_ELIGIBLE",
                )
            provider_id = requested_provider_id
            method = AssignmentMethod.CLIENT_SPECIFIED

        created_at = now_iso()
        request = ServiceRequest(
            request_id=f"r-{uuid4()}",
            client_id=actor.actor_id,
            category=category.strip(),
            urgency=level,
            description=text,
            status=RequestStatus.PENDING,
            created_at=created_at,
            updated_at=created_at,
            provider_id=provider_id,
            firm_id=firm_id,
            requested_provider_id=requested_provider_id,
            budget_hint=budget,
            deadline=due,
            estimated_hours=hours,
            assignment_method=method,
        )

        limit = self._config.limits.max_pending_per_client
        with self._store.transaction():
            pending = self._store.count_pending_for_client(actor.actor_id)
            if pending >= limit:
                raise ValidationError(
                    f"Client already has {pending} pending requests (limit {limit})",
                    {"pending": pending, "limit": limit},
                    "PENDING_LIMIT_REACHED",
                )
            self._store.insert_request(request)
            if provider_id is not None:
                self._store.append_event(
                    request_id=request.request_id,
                    kind=EventKind.ASSIGNED,
                    actor_id=actor.actor_id,
                    reason_code=ReasonCode.CLIENT_SPECIFIED,
                    from_status=RequestStatus.PENDING,
                    provider_id=provider_id,
                    assignment_method=AssignmentMethod.CLIENT_SPECIFIED,
                )
                self._notify(provider_id, "request.proposed", request.request_id)
            self._audit(request.request_id, "request.create", actor, firm_id=firm_id)

        logger.info(
            "Request created",
            extra={
                "request_id": request.request_id,
                "client_id": actor.actor_id,
                "category": request.category,
                "urgency": level.value,
                "firm_id": firm_id,
            },
        )
        self._publish()
        return request

    async def update_request(
        self,
        request_id: str,
        actor: Actor,
        changes: dict[str, Any],
    ) -> ServiceRequest:
        """
        Edit a pending request's details.

        Error precedence:
        1. VALIDATION_ERROR: unknown field or invalid value
        2. NOT_FOUND
        3. FORBIDDEN: caller is not the owning client
        4. INVALID_STATUS: request is no longer pending
        """
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError("Unknown or read-only fields", {"fields": unknown})
        if not changes:
            raise ValidationError("No changes supplied")

        updates: dict[str, Any] = {}
        if "description" in changes:
            updates["description"] = self._validate_description(changes["description"])
        if "deadline" in changes:
            updates["deadline"] = self._validate_deadline(changes["deadline"])
        if "budget_hint" in changes:
            updates["budget_hint"] = self._validate_budget(changes["budget_hint"])
        if "urgency" in changes:
            updates["urgency"] = self._validate_urgency(changes["urgency"]).value
        if "estimated_hours" in changes:
            updates["estimated_hours"] = self._validate_hours(changes["estimated_hours"])

        request = self._load(request_id)
        if actor.role != ActorRole.CLIENT or request.client_id != actor.actor_id:
            raise AuthorizationError("Only the owning client may edit the request")
        self._require_status(request, RequestStatus.PENDING)

        with self._store.transaction():
            self._write_status(request, updates)
            self._audit(request_id, "request.update", actor, fields=sorted(updates))

        logger.info(
            "Request updated",
            extra={"request_id": request_id, "fields": sorted(updates)},
        )
        return self._reload(request_id)

    # ------------------------------------------------------------------
    # Proposal and manual override
    # ------------------------------------------------------------------

    def _candidate_pool(self, request: ServiceRequest) -> list[Provider]:
        if request.firm_id is not None:
            return self._store.list_firm_providers(request.firm_id)
        return self._store.list_individual_providers()

    def _released_by(self, request_id: str) -> set[str]:
        return {
            event.provider_id
            for event in self._store.list_events(request_id)
            if event.kind in (EventKind.REJECTED, EventKind.ABANDONED)
            and event.provider_id is not None
        }

    async def compute_assignment(self, request_id: str, actor: Actor) -> AssignmentOutcome:
        """
        Score candidates and record the best one as the request's proposal.

        A client-specified provider with spare capacity is proposed directly.
        A firm with auto-assignment switched off, or a pool whose best score
        is below the configured minimum, yields a manual-required result and
        leaves the request untouched.

        Error precedence:
        1. NOT_FOUND
        2. FORBIDDEN: caller is neither the owning client nor admin/system
        3. INVALID_STATUS: request is not pending
        """
        request = self._load(request_id)
        if not actor.is_admin and not (
            actor.role == ActorRole.CLIENT and request.client_id == actor.actor_id
        ):
            raise AuthorizationError("Only the owning client or an admin may request assignment")
        self._require_status(request, RequestStatus.PENDING)

        requirements = AssignmentRequirements(
            category=request.category,
            urgency=request.urgency,
            budget_hint=request.budget_hint,
        )

        if request.firm_id is not None:
            firm = self._store.get_firm(request.firm_id)
            if firm is not None and not firm.auto_assignment_enabled:
                return AssignmentOutcome(
                    request=request,
                    result=AssignmentResult(
                        selected=None,
                        manual_required=True,
                        reason="auto_assignment_disabled",
                    ),
                    method=None,
                )

        released_by = self._released_by(request_id)

        if request.requested_provider_id is not None and (
            request.requested_provider_id not in released_by
        ):
            requested = self._store.get_provider(request.requested_provider_id)
            if requested is not None and exclusion_reason(requested) is None:
                breakdown = score_provider(requested, requirements, self._config.scoring)
                chosen = ScoredCandidate(
                    provider_id=requested.provider_id,
                    score=breakdown.total,
                    breakdown=breakdown,
                    active_count=requested.active_count,
                    max_active=requested.max_active,
                    verified_at=requested.verified_at or "",
                )
                outcome = self._record_proposal(
                    request,
                    actor,
                    AssignmentResult(selected=chosen),
                    AssignmentMethod.CLIENT_SPECIFIED,
                )
                self._publish()
                return outcome

        pool = [p for p in self._candidate_pool(request) if p.provider_id not in released_by]
        result = score_candidates(requirements, pool, self._config.scoring)
        if released_by:
            excluded = dict(result.excluded)
            excluded.update(dict.fromkeys(sorted(released_by), "previously_released"))
            result = AssignmentResult(
                selected=result.selected,
                alternatives=result.alternatives,
                excluded=excluded,
                manual_required=result.manual_required,
                reason=result.reason,
            )

        if result.selected is None:
            logger.info(
                "Manual assignment required",
                extra={"request_id": request_id, "reason": result.reason},
            )
            return AssignmentOutcome(request=request, result=result, method=None)

        outcome = self._record_proposal(request, actor, result, AssignmentMethod.AUTO)
        self._publish()
        return outcome

    def _record_proposal(
        self,
        request: ServiceRequest,
        actor: Actor,
        result: AssignmentResult,
        method: AssignmentMethod,
    ) -> AssignmentOutcome:
        selected = result.selected
        if selected is None:
            msg = "proposal requires a selected candidate"
            raise ValueError(msg)

        reason = (
            ReasonCode.CLIENT_SPECIFIED
            if method == AssignmentMethod.CLIENT_SPECIFIED
            else ReasonCode.AUTO_ASSIGNMENT
        )
        with self._store.transaction():
            self._write_status(
                request,
                {
                    "provider_id": selected.provider_id,
                    "assignment_method": method.value,
                    "assignment_score": selected.score,
                },
            )
            self._store.append_event(
                request_id=request.request_id,
                kind=EventKind.ASSIGNED,
                actor_id=actor.actor_id,
                reason_code=reason,
                from_status=request.status,
                provider_id=selected.provider_id,
                assignment_method=method,
            )
            self._audit(
                request.request_id,
                "request.propose",
                actor,
                provider_id=selected.provider_id,
                score=selected.score,
                method=method.value,
            )
            self._notify(selected.provider_id, "request.proposed", request.request_id)

        logger.info(
            "Provider proposed",
            extra={
                "request_id": request.request_id,
                "provider_id": selected.provider_id,
                "score": selected.score,
                "method": method.value,
            },
        )
        return AssignmentOutcome(
            request=self._reload(request.request_id), result=result, method=method
        )

    async def reassign(
        self,
        request_id: str,
        actor: Actor,
        provider_id: str,
        reason: str,
    ) -> ServiceRequest:
        """
        Manually point a request at a different provider.

        For an accepted request the workload slot moves from the old provider
        to the new one in the same transaction.

        Error precedence:
        1. FORBIDDEN: caller is not an admin
        2. VALIDATION_ERROR: missing reason
        3. NOT_FOUND: request or provider
        4. INVALID_STATUS: request is not pending or accepted
        5. PROVIDER_NOT_ELIGIBLE: unverified, unavailable, at capacity, not in firm
        6. CAPACITY_EXCEEDED: new provider filled up concurrently
        """
        self._require_role(actor, ActorRole.ADMIN)
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason must be a non-empty string", {"field": "reason"})
        self._validate_note(reason)

        request = self._load(request_id)
        target = self._store.get_provider(provider_id)
        if target is None:
            raise NotFoundError("Provider", provider_id)
        self._require_status(request, RequestStatus.PENDING, RequestStatus.ACCEPTED)

        if target.provider_id == request.provider_id:
            raise ValidationError(
                "Provider is already assigned to this request",
                {"provider_id": provider_id},
                "PROVIDER_NOT_ELIGIBLE",
            )
        blocked = exclusion_reason(target)
        if blocked is not None:
            raise ValidationError(
                f"Provider is not eligible: {blocked}",
                {"provider_id": provider_id, "reason": blocked},
                "PROVIDER_NOT_ELIGIBLE",
            )
        if request.firm_id is not None and provider_id not in {
            p.provider_id for p in self._store.list_firm_providers(request.firm_id)
        }:
            raise ValidationError(
                "Provider is not an active member of the firm",
                {"provider_id": provider_id, "firm_id": request.firm_id},
                "PROVIDER_NOT_ELIGIBLE",
            )

        previous = request.provider_id
        with self._store.transaction():
            self._write_status(
                request,
                {
                    "provider_id": provider_id,
                    "assignment_method": AssignmentMethod.MANUAL.value,
                    "assignment_score": None,
                },
            )
            if request.status == RequestStatus.ACCEPTED and previous is not None:
                self._tracker.transfer_slot(previous, provider_id)
            elif request.status == RequestStatus.ACCEPTED:
                self._tracker.reserve_slot(provider_id)
            self._store.append_event(
                request_id=request_id,
                kind=EventKind.REASSIGNED,
                actor_id=actor.actor_id,
                reason_code=ReasonCode.MANUAL_OVERRIDE,
                from_status=request.status,
                note=reason,
                provider_id=provider_id,
                assignment_method=AssignmentMethod.MANUAL,
            )
            self._audit(
                request_id,
                "request.reassign",
                actor,
                from_provider_id=previous,
                to_provider_id=provider_id,
                reason=reason,
            )
            self._notify(provider_id, "request.reassigned_to_you", request_id)
            self._notify(previous, "request.reassigned_away", request_id)

        logger.info(
            "Request reassigned",
            extra={
                "request_id": request_id,
                "from_provider_id": previous,
                "to_provider_id": provider_id,
                "status": request.status.value,
            },
        )
        self._publish()
        return self._reload(request_id)

    # ------------------------------------------------------------------
    # Forward transitions
    # ------------------------------------------------------------------

    async def accept(self, request_id: str, actor: Actor) -> ServiceRequest:
        """
        Accept the proposed request, taking one of the provider's active slots.

        Error precedence:
        1. FORBIDDEN: caller is not a provider
        2. NOT_FOUND
        3. INVALID_STATUS: request is not pending (including already accepted)
        4. FORBIDDEN: caller is not the proposed provider
        5. CAPACITY_EXCEEDED: provider is at its limit
        """
        self._require_role(actor, ActorRole.PROVIDER)
        request = self._load(request_id)
        self._require_status(request, RequestStatus.PENDING)
        if request.provider_id != actor.actor_id:
            raise AuthorizationError("Only the proposed provider may accept this request")

        with self._store.transaction():
            self._write_status(
                request,
                {"status": RequestStatus.ACCEPTED.value, "accepted_at": now_iso()},
            )
            self._tracker.reserve_slot(actor.actor_id)
            self._audit(request_id, "request.accept", actor)
            self._notify(request.client_id, "request.accepted", request_id)

        logger.info(
            "Request accepted",
            extra={"request_id": request_id, "provider_id": actor.actor_id},
        )
        self._publish()
        return self._reload(request_id)

    async def start(self, request_id: str, actor: Actor) -> ServiceRequest:
        """Move an accepted request into progress."""
        request = self._load(request_id)
        self._require_assignee(request, actor)
        self._require_status(request, RequestStatus.ACCEPTED)

        with self._store.transaction():
            self._write_status(
                request,
                {"status": RequestStatus.IN_PROGRESS.value, "started_at": now_iso()},
            )
            self._audit(request_id, "request.start", actor)
            self._notify(request.client_id, "request.started", request_id)

        logger.info("Request started", extra={"request_id": request_id})
        self._publish()
        return self._reload(request_id)

    async def log_hours(self, request_id: str, actor: Actor, hours: object) -> ServiceRequest:
        """
        Add hours worked to an in-progress request.

        The running total prices a mid-work refund against ``estimated_hours``.

        Error precedence:
        1. VALIDATION_ERROR: hours is not a positive number
        2. NOT_FOUND
        3. FORBIDDEN: caller is not the assigned provider
        4. INVALID_STATUS: request is not in progress
        5. STATE_CONFLICT: hours were logged concurrently
        """
        added = self._validate_hours(hours, "hours")
        if added is None:
            raise ValidationError("hours is required", {"field": "hours"})
        request = self._load(request_id)
        self._require_assignee(request, actor)
        self._require_status(request, RequestStatus.IN_PROGRESS)

        total = (request.actual_hours or 0.0) + added
        with self._store.transaction():
            self._write_status(
                request,
                {"actual_hours": total},
                expected={"actual_hours": request.actual_hours},
            )
            self._audit(request_id, "request.log_hours", actor, hours=added, total=total)

        logger.info(
            "Hours logged",
            extra={"request_id": request_id, "hours": added, "actual_hours": total},
        )
        return self._reload(request_id)

    async def complete(self, request_id: str, actor: Actor) -> ServiceRequest:
        """
        Finish the work and free the provider's slot.

        Money does not move here; the live payment, if already completed,
        gets its escrow auto-release time in the same transaction.
        """
        request = self._load(request_id)
        self._require_assignee(request, actor)
        self._require_status(request, RequestStatus.IN_PROGRESS)

        completed = datetime.now(UTC)
        release_due = completed + timedelta(days=self._config.escrow.auto_release_days)
        with self._store.transaction():
            self._write_status(
                request,
                {"status": RequestStatus.COMPLETED.value, "completed_at": to_iso(completed)},
            )
            self._tracker.release_slot(actor.actor_id)
            self._store.schedule_release(request_id, to_iso(release_due))
            self._audit(request_id, "request.complete", actor)
            self._notify(request.client_id, "request.completed", request_id)

        logger.info(
            "Request completed",
            extra={"request_id": request_id, "provider_id": actor.actor_id},
        )
        self._publish()
        return self._reload(request_id)

    # ------------------------------------------------------------------
    # Hand-back and cancellation
    # ------------------------------------------------------------------

    async def reject(
        self,
        request_id: str,
        actor: Actor,
        reason_code: str,
        note: str | None = None,
    ) -> ServiceRequest:
        """Hand an accepted or in-progress request back to the pool without penalty."""
        return await self._hand_back(request_id, actor, reason_code, note, EventKind.REJECTED)

    async def abandon(
        self,
        request_id: str,
        actor: Actor,
        reason_code: str,
        note: str | None = None,
    ) -> ServiceRequest:
        """Hand a request back and take the reputation penalty for walking away."""
        return await self._hand_back(request_id, actor, reason_code, note, EventKind.ABANDONED)

    async def _hand_back(
        self,
        request_id: str,
        actor: Actor,
        reason_code: str,
        note: str | None,
        kind: EventKind,
    ) -> ServiceRequest:
        """
        Reopen a request to pending.

        Error precedence:
        1. VALIDATION_ERROR: unknown reason code or note too long
        2. NOT_FOUND
        3. FORBIDDEN: caller is not the assigned provider
        4. INVALID_STATUS: request is not accepted or in progress
        """
        try:
            reason = ReasonCode(reason_code)
        except ValueError as exc:
            raise ValidationError(
                "Unknown reason_code", {"field": "reason_code", "value": reason_code}
            ) from exc
        if reason not in PROVIDER_RELEASE_REASONS:
            raise ValidationError(
                "reason_code is not a provider release reason",
                {"field": "reason_code", "value": reason.value},
            )
        self._validate_note(note)

        request = self._load(request_id)
        self._require_assignee(request, actor)
        self._require_status(request, *sorted(WORKLOAD_STATUSES))

        updates: dict[str, Any] = {
            "status": RequestStatus.PENDING.value,
            "provider_id": None,
            "assignment_method": None,
            "assignment_score": None,
            "accepted_at": None,
            "started_at": None,
            "reopened_count": request.reopened_count + 1,
        }
        if request.requested_provider_id == actor.actor_id:
            updates["requested_provider_id"] = None

        reputation: float | None = None
        with self._store.transaction():
            self._write_status(request, updates)
            self._tracker.release_slot(actor.actor_id)
            if kind == EventKind.ABANDONED:
                reputation = self._tracker.record_abandonment(actor.actor_id, request.status)
            self._store.append_event(
                request_id=request_id,
                kind=kind,
                actor_id=actor.actor_id,
                reason_code=reason,
                from_status=request.status,
                note=note,
                provider_id=actor.actor_id,
            )
            self._audit(
                request_id,
                f"request.{kind.value}",
                actor,
                reason_code=reason.value,
                from_status=request.status.value,
            )
            self._notify(request.client_id, "request.reopened", request_id, kind=kind.value)

        logger.info(
            "Request reopened",
            extra={
                "request_id": request_id,
                "provider_id": actor.actor_id,
                "kind": kind.value,
                "from_status": request.status.value,
                "reputation": reputation,
            },
        )
        self._publish()
        return self._reload(request_id)

    def apply_cancellation(
        self,
        request: ServiceRequest,
        actor: Actor,
        reason_code: ReasonCode,
        reason: str | None,
    ) -> None:
        """
        Cancel inside the caller's open store transaction.

        Frees the provider's slot when the request held one.
        """
        self._write_status(
            request,
            {
                "status": RequestStatus.CANCELLED.value,
                "cancelled_from": request.status.value,
                "cancelled_by": actor.actor_id,
                "cancellation_reason": reason,
                "cancelled_at": now_iso(),
            },
        )
        if request.status in WORKLOAD_STATUSES and request.provider_id is not None:
            self._tracker.release_slot(request.provider_id)
        self._store.append_event(
            request_id=request.request_id,
            kind=EventKind.CANCELLED,
            actor_id=actor.actor_id,
            reason_code=reason_code,
            from_status=request.status,
            note=reason,
            provider_id=request.provider_id,
        )
        self._audit(
            request.request_id,
            "request.cancel",
            actor,
            from_status=request.status.value,
            reason_code=reason_code.value,
        )
        counterpart = (
            request.provider_id if actor.actor_id == request.client_id else request.client_id
        )
        self._notify(counterpart, "request.cancelled", request.request_id)

    async def cancel(
        self,
        request_id: str,
        actor: Actor,
        reason: str | None = None,
    ) -> ServiceRequest:
        """
        Cancel a request from any non-terminal status.

        Error precedence:
        1. VALIDATION_ERROR: reason too long
        2. NOT_FOUND
        3. FORBIDDEN: caller is not the owning client, assigned provider, or admin
        4. INVALID_STATUS: request already completed or cancelled
        """
        self._validate_note(reason)
        request = self._load(request_id)

        allowed = (
            actor.is_admin
            or (actor.role == ActorRole.CLIENT and request.client_id == actor.actor_id)
            or (actor.role == ActorRole.PROVIDER and request.provider_id == actor.actor_id)
        )
        if not allowed:
            raise AuthorizationError("Caller may not cancel this request")
        if request.status in TERMINAL_STATUSES:
            raise StateConflictError(
                f"Cannot cancel a request in '{request.status}' status",
                {"request_id": request_id, "status": request.status.value},
            )

        with self._store.transaction():
            self.apply_cancellation(request, actor, _CANCEL_REASON_BY_ROLE[actor.role], reason)

        logger.info(
            "Request cancelled",
            extra={
                "request_id": request_id,
                "cancelled_by": actor.actor_id,
                "from_status": request.status.value,
            },
        )
        self._publish()
        return self._reload(request_id)

    # ------------------------------------------------------------------
    # Firm split configuration
    # ------------------------------------------------------------------

    async def set_custom_split(
        self,
        request_id: str,
        actor: Actor,
        shares: dict[str, float],
    ) -> dict[str, float]:
        """
        Record per-request split shares for a firm with the custom policy.

        Only a platform admin or the firm's own admin member may set shares,
        and only before the request's payment has been distributed.
        """
        request = self._load(request_id)
        if request.firm_id is None:
            raise ValidationError("Request does not target a firm", {"request_id": request_id})
        firm = self._store.get_firm(request.firm_id)
        if firm is None:
            raise NotFoundError("Firm", request.firm_id)

        if not actor.is_admin:
            caller = self._store.get_provider(actor.actor_id)
            is_firm_admin = (
                actor.role == ActorRole.PROVIDER
                and caller is not None
                and caller.firm_id == firm.firm_id
                and caller.firm_role == FirmRole.ADMIN
            )
            if not is_firm_admin:
                raise AuthorizationError("Only a firm admin may set the split")

        if firm.split_policy != SplitPolicy.CUSTOM:
            raise ValidationError(
                "Firm does not use the custom split policy",
                {"split_policy": firm.split_policy.value},
                "INVALID_SPLIT",
            )
        if request.status == RequestStatus.CANCELLED:
            raise StateConflictError(
                "Cannot set a split on a cancelled request",
                {"request_id": request_id, "status": request.status.value},
            )

        if not shares:
            raise ValidationError("shares must not be empty", None, "INVALID_SPLIT")
        member_ids = {member.provider_id for member in self._store.list_firm_members(firm.firm_id)}
        unknown = sorted(set(shares) - member_ids)
        if unknown:
            raise ValidationError(
                "Shares name providers outside the firm", {"provider_ids": unknown}, "INVALID_SPLIT"
            )
        for provider_id, pct in shares.items():
            if isinstance(pct, bool) or not isinstance(pct, int | float) or not 0 < pct <= 100:
                raise ValidationError(
                    "Each share must be greater than 0 and at most 100",
                    {"provider_id": provider_id},
                    "INVALID_SPLIT",
                )
        total = sum((as_decimal(pct) for pct in shares.values()), as_decimal(0))
        if abs(total - as_decimal(100)) > as_decimal("0.0001"):
            raise ValidationError(
                "Shares must sum to 100", {"total": str(total)}, "INVALID_SPLIT"
            )

        payment = self._store.get_live_payment_for_request(request_id)
        if payment is not None and payment.distributed:
            raise StateConflictError(
                "Payment for this request has already been distributed",
                {"payment_id": payment.payment_id},
            )

        normalised = {provider_id: float(pct) for provider_id, pct in shares.items()}
        with self._store.transaction():
            self._store.replace_custom_split(request_id, normalised)
            self._audit(request_id, "request.custom_split", actor, shares=normalised)

        logger.info(
            "Custom split recorded",
            extra={"request_id": request_id, "payees": len(normalised)},
        )
        return self._store.get_custom_split(request_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str, actor: Actor) -> ServiceRequest:
        request = self._load(request_id)
        if not self._can_view(request, actor):
            raise AuthorizationError("Caller may not view this request")
        return request

    async def get_history(self, request_id: str, actor: Actor) -> list[RequestEvent]:
        request = self._load(request_id)
        if not self._can_view(request, actor):
            raise AuthorizationError("Caller may not view this request")
        return self._store.list_events(request_id)

    async def list_requests(
        self,
        actor: Actor,
        *,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ServiceRequest]:
        """Requests visible to the caller; admins see every request."""
        if status is not None:
            try:
                status = RequestStatus(status).value
            except ValueError as exc:
                raise ValidationError("Unknown status filter", {"field": "status"}) from exc
        if actor.role == ActorRole.CLIENT:
            return self._store.list_requests(
                client_id=actor.actor_id, status=status, limit=limit, offset=offset
            )
        if actor.role == ActorRole.PROVIDER:
            return self._store.list_requests(
                provider_id=actor.actor_id, status=status, limit=limit, offset=offset
            )
        return self._store.list_requests(status=status, limit=limit, offset=offset)

    def get_stats(self) -> dict[str, Any]:
        by_status = self._store.count_requests_by_status()
        return {
            "total_requests": sum(by_status.values()),
            "requests_by_status": by_status,
            "payments_by_status": self._store.count_payments_by_status(),
            "pending_notifications": self._store.count_pending_outbox(),
        }

    def close(self) -> None:
        self._store.close()
