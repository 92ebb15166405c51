"""Provider and firm snapshots pushed by the upstream profile directory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from engagement_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from engagement_service.logging import get_logger
from engagement_service.models import (
    Firm,
    FirmMember,
    FirmRole,
    Provider,
    ProviderType,
    SplitPolicy,
    now_iso,
    parse_iso,
    to_iso,
)

if TYPE_CHECKING:
    from engagement_service.config import CapacityConfig
    from engagement_service.models import Actor
    from engagement_service.services.engagement_store import EngagementStore

logger = get_logger(__name__)


def _enum(enum_type: Any, value: object, field: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = [member.value for member in enum_type]
        raise ValidationError(
            f"{field} must be one of {allowed}", {"field": field, "allowed": allowed}
        ) from exc


def _number(value: object, field: str, low: float, high: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"{field} must be a number", {"field": field})
    if value < low or (high is not None and value > high):
        bound = f"between {low} and {high}" if high is not None else f"at least {low}"
        raise ValidationError(f"{field} must be {bound}", {"field": field})
    return float(value)


def _integer(value: object, field: str, low: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field})
    if value < low:
        raise ValidationError(f"{field} must be at least {low}", {"field": field})
    return value


class DirectorySync:
    """
    Applies profile snapshots from the directory that owns provider and firm CRUD.

    Only the admin or system caller may push. A provider snapshot without
    ``max_active`` gets ``capacity.default_max_active``. Refreshing an existing
    provider never touches its workload, reputation, or abandonment count.
    """

    def __init__(self, store: EngagementStore, capacity: CapacityConfig) -> None:
        self._store = store
        self._capacity = capacity

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError("Only an admin or the system may sync the directory")

    def _audit(
        self, entity_type: str, entity_id: str, action: str, actor: Actor, **details: Any
    ) -> None:
        self._store.record_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor.actor_id,
            outcome="succeeded",
            details=details,
        )

    async def sync_provider(self, provider_id: str, actor: Actor, data: dict[str, Any]) -> Provider:
        """
        Register or refresh one provider.

        Error precedence:
        1. FORBIDDEN: caller is not an admin or the system
        2. VALIDATION_ERROR: missing or invalid field
        3. NOT_FOUND: the referenced firm does not exist
        4. STATE_CONFLICT: ``max_active`` is below the provider's current workload
        """
        self._require_admin(actor)

        display_name = data.get("display_name")
        if not isinstance(display_name, str) or not display_name.strip():
            raise ValidationError(
                "display_name must be a non-empty string", {"field": "display_name"}
            )
        specializations = data.get("specializations")
        if (
            not isinstance(specializations, list)
            or not specializations
            or not all(isinstance(s, str) and s.strip() for s in specializations)
        ):
            raise ValidationError(
                "specializations must be a non-empty list of strings",
                {"field": "specializations"},
            )
        provider_type = _enum(
            ProviderType, data.get("provider_type", ProviderType.INDIVIDUAL.value), "provider_type"
        )
        firm_id = data.get("firm_id")
        if provider_type == ProviderType.FIRM_MEMBER and not isinstance(firm_id, str):
            raise ValidationError("A firm member needs a firm_id", {"field": "firm_id"})
        if provider_type == ProviderType.INDIVIDUAL and firm_id is not None:
            raise ValidationError(
                "An individual provider cannot belong to a firm", {"field": "firm_id"}
            )
        firm_role = data.get("firm_role")
        max_active = data.get("max_active")
        base_fee = data.get("base_fee")
        available = data.get("available", True)
        if not isinstance(available, bool):
            raise ValidationError("available must be a boolean", {"field": "available"})
        verified_at = data.get("verified_at")
        if verified_at is not None:
            if not isinstance(verified_at, str):
                raise ValidationError(
                    "verified_at must be an ISO 8601 string", {"field": "verified_at"}
                )
            try:
                verified_at = to_iso(parse_iso(verified_at))
            except ValueError as exc:
                raise ValidationError(
                    "verified_at must be an ISO 8601 string", {"field": "verified_at"}
                ) from exc

        snapshot = Provider(
            provider_id=provider_id,
            display_name=display_name,
            provider_type=provider_type,
            specializations=tuple(specializations),
            experience_years=_integer(data.get("experience_years"), "experience_years", 0),
            rating=_number(data.get("rating"), "rating", 0, 5),
            max_active=(
                self._capacity.default_max_active
                if max_active is None
                else _integer(max_active, "max_active", 1)
            ),
            firm_id=firm_id,
            firm_role=None if firm_role is None else _enum(FirmRole, firm_role, "firm_role"),
            base_fee=None if base_fee is None else _integer(base_fee, "base_fee", 0),
            available=available,
            verified_at=verified_at,
        )

        with self._store.transaction():
            if firm_id is not None and self._store.get_firm(firm_id) is None:
                raise NotFoundError("Firm", firm_id)
            current = self._store.get_provider(provider_id)
            if current is not None and snapshot.max_active < current.active_count:
                raise StateConflictError(
                    "max_active is below the provider's current workload",
                    {
                        "provider_id": provider_id,
                        "active_count": current.active_count,
                        "max_active": snapshot.max_active,
                    },
                )
            created = self._store.save_provider(snapshot)
            self._audit(
                "provider",
                provider_id,
                "directory.sync_provider",
                actor,
                created=created,
                max_active=snapshot.max_active,
                verified=snapshot.is_verified,
            )

        logger.info(
            "Provider synced",
            extra={
                "provider_id": provider_id,
                "created": created,
                "max_active": snapshot.max_active,
            },
        )
        provider = self._store.get_provider(provider_id)
        if provider is None:
            msg = f"Provider {provider_id} not found after sync"
            raise RuntimeError(msg)
        return provider

    async def sync_firm(self, firm_id: str, actor: Actor, data: dict[str, Any]) -> Firm:
        """Register or refresh one firm."""
        self._require_admin(actor)

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name must be a non-empty string", {"field": "name"})
        commission_pct = data.get("commission_pct")
        auto_assignment_enabled = data.get("auto_assignment_enabled", True)
        active = data.get("active", True)
        flags = (("auto_assignment_enabled", auto_assignment_enabled), ("active", active))
        for field, flag in flags:
            if not isinstance(flag, bool):
                raise ValidationError(f"{field} must be a boolean", {"field": field})
        firm = Firm(
            firm_id=firm_id,
            name=name,
            split_policy=_enum(
                SplitPolicy, data.get("split_policy", SplitPolicy.EQUAL.value), "split_policy"
            ),
            commission_pct=(
                None
                if commission_pct is None
                else _number(commission_pct, "commission_pct", 0, 100)
            ),
            auto_assignment_enabled=auto_assignment_enabled,
            active=active,
        )

        with self._store.transaction():
            created = self._store.save_firm(firm)
            self._audit(
                "firm", firm_id, "directory.sync_firm", actor, created=created, active=active
            )

        logger.info("Firm synced", extra={"firm_id": firm_id, "created": created})
        return firm

    async def sync_firm_member(
        self,
        firm_id: str,
        provider_id: str,
        actor: Actor,
        data: dict[str, Any],
    ) -> FirmMember:
        """
        Attach a provider to a firm, or refresh the membership.

        The provider must already be synced as a member of this firm. A
        refresh keeps the original ``joined_at``, which orders remainder
        assignment.
        """
        self._require_admin(actor)

        split_pct = data.get("split_pct")
        if split_pct is not None:
            split_pct = _number(split_pct, "split_pct", 0, 100)
        active = data.get("active", True)
        if not isinstance(active, bool):
            raise ValidationError("active must be a boolean", {"field": "active"})

        with self._store.transaction():
            if self._store.get_firm(firm_id) is None:
                raise NotFoundError("Firm", firm_id)
            provider = self._store.get_provider(provider_id)
            if provider is None:
                raise NotFoundError("Provider", provider_id)
            if provider.firm_id != firm_id:
                raise ValidationError(
                    "Provider profile does not belong to this firm",
                    {"provider_id": provider_id, "firm_id": firm_id},
                )
            created = self._store.save_firm_member(
                FirmMember(
                    firm_id=firm_id,
                    provider_id=provider_id,
                    split_pct=split_pct,
                    joined_at=now_iso(),
                    active=active,
                )
            )
            self._audit(
                "firm",
                firm_id,
                "directory.sync_member",
                actor,
                provider_id=provider_id,
                created=created,
                split_pct=split_pct,
                active=active,
            )

        logger.info(
            "Firm member synced",
            extra={"firm_id": firm_id, "provider_id": provider_id, "created": created},
        )
        member = self._store.get_firm_member(firm_id, provider_id)
        if member is None:
            msg = f"Membership {firm_id}/{provider_id} not found after sync"
            raise RuntimeError(msg)
        return member
