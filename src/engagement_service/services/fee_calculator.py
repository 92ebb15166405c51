"""
Money arithmetic for payments, firm splits, withholding, and refunds.

All amounts are integer minor units. Configured percentages pass through
``Decimal(str(value))`` so that 15.0 means exactly fifteen percent.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from engagement_service.core.exceptions import ValidationError
from engagement_service.models import ProviderType, RequestStatus, SplitPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from engagement_service.config import FeesConfig, RefundsConfig, TaxConfig
    from engagement_service.models import Firm, FirmMember

_HUNDRED = Decimal(100)
_PCT_TOLERANCE = Decimal("0.0001")


def as_decimal(value: float | int) -> Decimal:
    """Convert a configured number without binary float artefacts."""
    return Decimal(str(value))


def round_half_up(amount: Decimal) -> int:
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def round_down(amount: Decimal) -> int:
    return int(amount.quantize(Decimal(1), rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class FeeBreakdown:
    gross: int
    fee_pct: float
    platform_fee: int
    net_to_provider: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PayeeShare:
    payee_id: str
    gross_share: int
    withheld: int
    net: int
    remainder_holder: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DistributionPlan:
    """Every payee row for one payment, reconciled to the gross."""

    gross: int
    platform_fee: int
    shares: tuple[PayeeShare, ...]

    @property
    def total_net(self) -> int:
        return sum(share.net for share in self.shares)

    @property
    def total_withheld(self) -> int:
        return sum(share.withheld for share in self.shares)

    def to_dict(self) -> dict[str, Any]:
        return {
            "gross": self.gross,
            "platform_fee": self.platform_fee,
            "total_net": self.total_net,
            "total_withheld": self.total_withheld,
            "shares": [share.to_dict() for share in self.shares],
        }


def fee_pct_for(provider_type: ProviderType, firm: Firm | None, fees: FeesConfig) -> float:
    """Platform fee rate for the payee: the firm's own commission wins over the default."""
    if provider_type == ProviderType.FIRM_MEMBER:
        if firm is not None and firm.commission_pct is not None:
            return firm.commission_pct
        return fees.firm_pct
    return fees.individual_pct


def compute_platform_fee(gross: int, fee_pct: float) -> FeeBreakdown:
    """Split the gross into platform fee and provider net."""
    if gross <= 0:
        msg = "Payment amount must be positive"
        raise ValidationError(msg, {"amount": gross})
    platform_fee = round_half_up(Decimal(gross) * as_decimal(fee_pct) / _HUNDRED)
    platform_fee = min(platform_fee, gross)
    return FeeBreakdown(
        gross=gross,
        fee_pct=fee_pct,
        platform_fee=platform_fee,
        net_to_provider=gross - platform_fee,
    )


def compute_withholding(share: int, tax: TaxConfig) -> int:
    """Tax withheld from one payee share; nothing below the threshold."""
    if share < tax.threshold:
        return 0
    return round_half_up(Decimal(share) * as_decimal(tax.tds_pct) / _HUNDRED)


def _member_pcts(
    policy: SplitPolicy,
    members: Sequence[FirmMember],
    custom: Mapping[str, float],
) -> dict[str, Decimal]:
    if policy == SplitPolicy.EQUAL:
        return {}

    if policy == SplitPolicy.PERCENTAGE:
        pcts: dict[str, Decimal] = {}
        for member in members:
            if member.split_pct is None:
                msg = "Every firm member needs a split percentage"
                raise ValidationError(msg, {"provider_id": member.provider_id}, "INVALID_SPLIT")
            pcts[member.provider_id] = as_decimal(member.split_pct)
    else:
        if not custom:
            msg = "No custom split has been recorded for this request"
            raise ValidationError(msg, None, "INVALID_SPLIT")
        member_ids = {member.provider_id for member in members}
        unknown = sorted(set(custom) - member_ids)
        if unknown:
            msg = "Custom split names providers outside the firm"
            raise ValidationError(msg, {"provider_ids": unknown}, "INVALID_SPLIT")
        pcts = {provider_id: as_decimal(pct) for provider_id, pct in custom.items()}

    total = sum(pcts.values(), Decimal(0))
    if abs(total - _HUNDRED) > _PCT_TOLERANCE:
        msg = "Split percentages must sum to 100"
        raise ValidationError(msg, {"total": str(total)}, "INVALID_SPLIT")
    return pcts


def split_amount(
    amount: int,
    policy: SplitPolicy,
    members: Sequence[FirmMember],
    custom: Mapping[str, float] | None = None,
) -> list[tuple[str, int, bool]]:
    """
    Divide ``amount`` among firm members.

    Returns ``(provider_id, share, remainder_holder)`` tuples. Each share is
    rounded down and whatever is left goes to the remainder holder: the first
    payee ordered by split percentage (descending), then join time, then ID.
    The shares always sum to ``amount``.
    """
    if not members:
        msg = "Firm has no active members to pay"
        raise ValidationError(msg, None, "INVALID_SPLIT")

    pcts = _member_pcts(policy, members, custom or {})
    if policy == SplitPolicy.EQUAL:
        payees = list(members)
        base = amount // len(payees)
        amounts = {member.provider_id: base for member in payees}
        holder_order = sorted(
            payees,
            key=lambda m: (-as_decimal(m.split_pct or 0), m.joined_at, m.provider_id),
        )
    else:
        payees = [member for member in members if member.provider_id in pcts]
        amounts = {
            member.provider_id: round_down(Decimal(amount) * pcts[member.provider_id] / _HUNDRED)
            for member in payees
        }
        holder_order = sorted(
            payees,
            key=lambda m: (-pcts[m.provider_id], m.joined_at, m.provider_id),
        )

    holder_id = holder_order[0].provider_id
    amounts[holder_id] += amount - sum(amounts.values())
    return [
        (member.provider_id, amounts[member.provider_id], member.provider_id == holder_id)
        for member in holder_order
    ]


def compute_distribution(
    *,
    gross: int,
    platform_fee: int,
    payee_provider_id: str,
    provider_type: ProviderType,
    tax: TaxConfig,
    policy: SplitPolicy | None = None,
    members: Sequence[FirmMember] = (),
    custom: Mapping[str, float] | None = None,
) -> DistributionPlan:
    """
    Build the payee rows for a payment.

    An individual provider receives the whole net as one share. A firm's net
    is divided per its split policy. Withholding is applied per share.
    """
    net_to_provider = gross - platform_fee
    if provider_type == ProviderType.INDIVIDUAL or policy is None:
        splits = [(payee_provider_id, net_to_provider, True)]
    else:
        splits = split_amount(net_to_provider, policy, members, custom)

    shares: list[PayeeShare] = []
    for payee_id, share, holder in splits:
        withheld = compute_withholding(share, tax)
        shares.append(
            PayeeShare(
                payee_id=payee_id,
                gross_share=share,
                withheld=withheld,
                net=share - withheld,
                remainder_holder=holder,
            )
        )

    plan = DistributionPlan(gross=gross, platform_fee=platform_fee, shares=tuple(shares))
    if plan.total_net + plan.total_withheld + plan.platform_fee != gross:
        msg = "Distribution does not reconcile to the gross amount"
        raise ValueError(msg)
    return plan


def refund_percentage(
    status: RequestStatus,
    cancelled_from: RequestStatus | None,
    refunds: RefundsConfig,
    *,
    estimated_hours: float | None = None,
    actual_hours: float | None = None,
) -> float:
    """
    Refund percentage for the request status at the moment of initiation.

    Work in progress refunds what is left of the estimate, less the
    cancellation fee, once the provider has logged hours against a known
    estimate; without both figures it falls back to ``in_progress_pct``.
    A cancelled request is priced as of the status it was cancelled from.
    """
    effective = status
    if status == RequestStatus.CANCELLED:
        effective = cancelled_from or RequestStatus.PENDING
    if effective == RequestStatus.IN_PROGRESS and estimated_hours and actual_hours:
        ratio = as_decimal(actual_hours) / as_decimal(estimated_hours)
        completion = min(ratio * _HUNDRED, _HUNDRED)
        remaining = _HUNDRED - completion - as_decimal(refunds.cancellation_fee_pct)
        return float(max(remaining, Decimal(0)))
    table = {
        RequestStatus.PENDING: refunds.pending_pct,
        RequestStatus.ACCEPTED: refunds.accepted_pct,
        RequestStatus.IN_PROGRESS: refunds.in_progress_pct,
        RequestStatus.COMPLETED: refunds.completed_pct,
    }
    return table[effective]


def compute_refund_amount(
    gross: int,
    platform_fee: int,
    pct: float,
    processing_fee: int,
) -> int:
    """``floor(gross * pct / 100) - processing_fee`` clamped to what the provider side holds."""
    raw = round_down(Decimal(gross) * as_decimal(pct) / _HUNDRED) - processing_fee
    return max(0, min(raw, gross - platform_fee))
