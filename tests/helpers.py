"""Shared test helpers: engine configuration, seed data, gateway mocks."""

from __future__ import annotations

import hashlib
import hmac
import uuid
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from engagement_service.config import (
    CapacityConfig,
    EngineConfig,
    EscrowConfig,
    FeesConfig,
    LimitsConfig,
    PaymentsConfig,
    RefundsConfig,
    ScoringConfig,
    ScoringWeights,
    TaxConfig,
)
from engagement_service.models import (
    Firm,
    FirmMember,
    FirmRole,
    Provider,
    ProviderType,
    SplitPolicy,
)

GATEWAY_SECRET = "test-gateway-secret"

VERIFIED_AT = "2024-01-01T00:00:00.000000Z"


def make_engine_config(**sections: Any) -> EngineConfig:
    """Engine rules matching config.yaml, with per-section overrides."""
    defaults: dict[str, Any] = {
        "fees": FeesConfig(individual_pct=10, firm_pct=15),
        "tax": TaxConfig(tds_pct=10, threshold=3_000_000),
        "refunds": RefundsConfig(
            pending_pct=100,
            accepted_pct=95,
            in_progress_pct=40,
            cancellation_fee_pct=10,
            completed_pct=0,
            processing_fee=0,
        ),
        "payments": PaymentsConfig(minimum_amount=10_000, estimate_band_pct=50),
        "escrow": EscrowConfig(auto_release_days=7),
        "capacity": CapacityConfig(
            default_max_active=15,
            abandon_penalty_accepted=0.2,
            abandon_penalty_in_progress=0.3,
        ),
        "limits": LimitsConfig(
            max_pending_per_client=3,
            max_description_length=5000,
            max_note_length=1000,
        ),
        "scoring": make_scoring_config(),
    }
    defaults.update(sections)
    return EngineConfig(**defaults)


def make_scoring_config(**overrides: Any) -> ScoringConfig:
    values: dict[str, Any] = {
        "weights": ScoringWeights(
            specialization=0.30,
            experience=0.15,
            rating=0.15,
            reputation=0.15,
            availability=0.15,
            budget_fit=0.10,
        ),
        "urgency_penalty": {"immediate": 0.15, "urgent": 0.10, "normal": 0.05, "flexible": 0.0},
        "experience_cap_years": 20,
        "secondary_match_factor": 0.7,
        "near_budget_factor": 0.5,
        "budget_band_pct": 20,
        "min_auto_assign_score": 0.3,
        "max_alternatives": 3,
    }
    values.update(overrides)
    return ScoringConfig(**values)


def make_provider_id() -> str:
    return f"p-{uuid.uuid4()}"


def make_provider(
    provider_id: str | None = None,
    *,
    specializations: tuple[str, ...] = ("gst_filing",),
    experience_years: int = 10,
    rating: float = 4.5,
    reputation: float = 5.0,
    max_active: int = 15,
    active_count: int = 0,
    base_fee: int | None = None,
    provider_type: ProviderType = ProviderType.INDIVIDUAL,
    firm_id: str | None = None,
    firm_role: FirmRole | None = None,
    available: bool = True,
    verified_at: str | None = VERIFIED_AT,
) -> Provider:
    return Provider(
        provider_id=provider_id or make_provider_id(),
        display_name="Test Provider",
        provider_type=provider_type,
        specializations=specializations,
        experience_years=experience_years,
        rating=rating,
        max_active=max_active,
        firm_id=firm_id,
        firm_role=firm_role,
        base_fee=base_fee,
        active_count=active_count,
        reputation=reputation,
        available=available,
        verified_at=verified_at,
    )


def seed_firm(
    store: Any,
    member_pcts: dict[str, float | None],
    *,
    firm_id: str = "firm-1",
    split_policy: SplitPolicy = SplitPolicy.EQUAL,
    commission_pct: float | None = None,
    auto_assignment_enabled: bool = True,
    specializations: tuple[str, ...] = ("gst_filing",),
) -> Firm:
    """Insert a firm and one verified member per entry of ``member_pcts``."""
    firm = Firm(
        firm_id=firm_id,
        name="Test Firm",
        split_policy=split_policy,
        commission_pct=commission_pct,
        auto_assignment_enabled=auto_assignment_enabled,
    )
    store.save_firm(firm)
    for index, (provider_id, pct) in enumerate(member_pcts.items()):
        store.save_provider(
            make_provider(
                provider_id,
                provider_type=ProviderType.FIRM_MEMBER,
                firm_id=firm_id,
                firm_role=FirmRole.ADMIN if index == 0 else FirmRole.SENIOR,
                specializations=specializations,
            )
        )
        store.save_firm_member(
            FirmMember(
                firm_id=firm_id,
                provider_id=provider_id,
                split_pct=pct,
                joined_at=f"2024-01-0{index + 1}T00:00:00.000000Z",
            )
        )
    return firm


def sign(order_id: str, gateway_payment_id: str, secret: str = GATEWAY_SECRET) -> str:
    """Checkout signature the gateway would hand to the client."""
    message = f"{order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def make_gateway_mock() -> MagicMock:
    """Payment gateway double: orders and refunds succeed, captures are reported."""
    def order(amount: int, receipt: str) -> dict[str, Any]:
        return {"id": f"order_{uuid.uuid4().hex[:12]}", "status": "created"}

    def refund(payment_id: str, amount: int, notes: dict[str, str]) -> dict[str, Any]:
        return {"id": f"rfnd_{uuid.uuid4().hex[:12]}", "status": "processed"}

    gateway = MagicMock()
    gateway.create_order = AsyncMock(side_effect=order)
    gateway.create_refund = AsyncMock(side_effect=refund)
    gateway.fetch_payment = AsyncMock(return_value={"status": "captured"})
    gateway.fetch_refund = AsyncMock(return_value={"status": "processed"})
    gateway.verify_signature = MagicMock(
        side_effect=lambda order_id, payment_id, signature: hmac.compare_digest(
            sign(order_id, payment_id), signature
        )
    )
    gateway.close = AsyncMock()
    return gateway
