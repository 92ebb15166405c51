"""Domain records and enumerations shared by the engine components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return to_iso(datetime.now(UTC))


def to_iso(moment: datetime) -> str:
    """Render an aware datetime in the storage format."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp back into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class RequestStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.CANCELLED}
)

# Statuses that occupy one of the assignee's active slots.
WORKLOAD_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS}
)

PAYABLE_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED}
)


class Urgency(StrEnum):
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    NORMAL = "normal"
    FLEXIBLE = "flexible"


class ActorRole(StrEnum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class AssignmentMethod(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"
    CLIENT_SPECIFIED = "client_specified"


class EventKind(StrEnum):
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    REJECTED = "rejected"
    ABANDONED = "abandoned"
    CANCELLED = "cancelled"


class ReasonCode(StrEnum):
    SCHEDULE_CONFLICT = "schedule_conflict"
    OUTSIDE_EXPERTISE = "outside_expertise"
    INSUFFICIENT_INFORMATION = "insufficient_information"
    CLIENT_UNRESPONSIVE = "client_unresponsive"
    PERSONAL_EMERGENCY = "personal_emergency"
    AUTO_ASSIGNMENT = "auto_assignment"
    MANUAL_OVERRIDE = "manual_override"
    CLIENT_SPECIFIED = "client_specified"
    CLIENT_CANCELLED = "client_cancelled"
    PROVIDER_CANCELLED = "provider_cancelled"
    ADMIN_CANCELLED = "admin_cancelled"
    REFUND_ISSUED = "refund_issued"
    OTHER = "other"


# Reason codes a provider may give when handing a request back.
PROVIDER_RELEASE_REASONS: frozenset[ReasonCode] = frozenset(
    {
        ReasonCode.SCHEDULE_CONFLICT,
        ReasonCode.OUTSIDE_EXPERTISE,
        ReasonCode.INSUFFICIENT_INFORMATION,
        ReasonCode.CLIENT_UNRESPONSIVE,
        ReasonCode.PERSONAL_EMERGENCY,
        ReasonCode.OTHER,
    }
)


class RefundReason(StrEnum):
    CLIENT_REQUEST = "client_request"
    SERVICE_NOT_DELIVERED = "service_not_delivered"
    PROVIDER_UNRESPONSIVE = "provider_unresponsive"
    DUPLICATE_CHARGE = "duplicate_charge"
    DISPUTE_RESOLUTION = "dispute_resolution"
    OTHER = "other"


class ProviderType(StrEnum):
    INDIVIDUAL = "individual"
    FIRM_MEMBER = "firm_member"


class FirmRole(StrEnum):
    ADMIN = "admin"
    SENIOR = "senior"
    JUNIOR = "junior"


class SplitPolicy(StrEnum):
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    CUSTOM = "custom"


class PaymentStatus(StrEnum):
    CREATED = "created"
    VERIFIED = "verified"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the authorization layer."""

    actor_id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


SYSTEM_ACTOR = Actor(actor_id="system", role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class Provider:
    provider_id: str
    display_name: str
    provider_type: ProviderType
    specializations: tuple[str, ...]
    experience_years: int
    rating: float
    max_active: int
    firm_id: str | None = None
    firm_role: FirmRole | None = None
    base_fee: int | None = None
    active_count: int = 0
    reputation: float = 5.0
    abandonment_count: int = 0
    available: bool = True
    verified_at: str | None = None

    @property
    def load(self) -> float:
        return self.active_count / self.max_active if self.max_active > 0 else 1.0

    @property
    def has_capacity(self) -> bool:
        return self.active_count < self.max_active

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Firm:
    firm_id: str
    name: str
    split_policy: SplitPolicy
    commission_pct: float | None = None
    auto_assignment_enabled: bool = True
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FirmMember:
    firm_id: str
    provider_id: str
    split_pct: float | None
    joined_at: str
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ServiceRequest:
    request_id: str
    client_id: str
    category: str
    urgency: Urgency
    description: str
    status: RequestStatus
    created_at: str
    updated_at: str
    provider_id: str | None = None
    firm_id: str | None = None
    requested_provider_id: str | None = None
    budget_hint: int | None = None
    deadline: str | None = None
    estimated_hours: float | None = None
    actual_hours: float | None = None
    reopened_count: int = 0
    assignment_method: AssignmentMethod | None = None
    assignment_score: float | None = None
    cancelled_from: RequestStatus | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    accepted_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RequestEvent:
    """One immutable entry in a request's audit trail."""

    event_id: str
    request_id: str
    sequence: int
    kind: EventKind
    actor_id: str
    reason_code: ReasonCode
    from_status: RequestStatus
    occurred_at: str
    note: str | None = None
    provider_id: str | None = None
    assignment_method: AssignmentMethod | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Payment:
    payment_id: str
    request_id: str
    client_id: str
    payee_provider_id: str
    provider_type: ProviderType
    gross: int
    fee_pct: float
    platform_fee: int
    net_to_provider: int
    status: PaymentStatus
    created_at: str
    firm_id: str | None = None
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    verified_at: str | None = None
    completed_at: str | None = None
    released_to_provider: bool = False
    released_at: str | None = None
    release_due_at: str | None = None
    on_hold: bool = False
    hold_reason: str | None = None
    distributed: bool = False
    refund_reason_code: RefundReason | None = None
    refund_pct: float | None = None
    refund_amount: int | None = None
    refund_processed_by: str | None = None
    refunded_at: str | None = None
    gateway_refund_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Distribution:
    distribution_id: str
    payment_id: str
    payee_id: str
    gross_share: int
    withheld: int
    net: int
    remainder_holder: bool
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AuditEntry:
    audit_id: str
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    outcome: str
    recorded_at: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboxEvent:
    """Side effect recorded with the business change, delivered after commit."""

    event_id: str
    topic: str
    recipient_id: str
    payload: dict[str, Any]
    created_at: str
    attempts: int = 0
    dispatched_at: str | None = None
    last_error: str | None = None
    leased_until: str | None = None
