"""Provider workload and reputation bookkeeping."""

from __future__ import annotations

from typing import TYPE_CHECKING

from engagement_service.core.exceptions import CapacityExceededError, NotFoundError
from engagement_service.logging import get_logger
from engagement_service.models import RequestStatus

if TYPE_CHECKING:
    from engagement_service.config import CapacityConfig
    from engagement_service.models import Provider
    from engagement_service.services.engagement_store import EngagementStore

logger = get_logger(__name__)


class CapacityTracker:
    """
    Keeps each provider's active count, reputation, and abandonment count.

    The tracker never opens its own transaction boundary for a transition:
    the request manager calls it inside the same ``store.transaction()`` that
    writes the status change, so the count and the status commit together.
    """

    def __init__(self, store: EngagementStore, config: CapacityConfig) -> None:
        self._store = store
        self._config = config

    def snapshot(self, provider_id: str) -> Provider:
        """Current counters for a provider."""
        provider = self._store.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Provider", provider_id)
        return provider

    def reserve_slot(self, provider_id: str) -> None:
        """
        Take one active slot for the provider.

        The increment is a guarded UPDATE, so two concurrent accepts can never
        push the count past ``max_active``.
        """
        if self._store.increment_active_count(provider_id):
            return
        provider = self.snapshot(provider_id)
        logger.info(
            "Capacity exceeded",
            extra={
                "provider_id": provider_id,
                "active_count": provider.active_count,
                "max_active": provider.max_active,
            },
        )
        raise CapacityExceededError(provider_id, provider.active_count, provider.max_active)

    def release_slot(self, provider_id: str) -> None:
        """Give back one active slot."""
        if not self._store.decrement_active_count(provider_id):
            logger.warning(
                "Active count already zero on release",
                extra={"provider_id": provider_id},
            )

    def transfer_slot(self, from_provider_id: str, to_provider_id: str) -> None:
        """Move one active slot between providers."""
        self.reserve_slot(to_provider_id)
        self.release_slot(from_provider_id)

    def penalty_for(self, from_status: RequestStatus) -> float:
        """Reputation penalty for abandoning work in the given status."""
        if from_status == RequestStatus.IN_PROGRESS:
            return self._config.abandon_penalty_in_progress
        return self._config.abandon_penalty_accepted

    def record_abandonment(self, provider_id: str, from_status: RequestStatus) -> float:
        """Apply the abandonment penalty and return the new reputation."""
        penalty = self.penalty_for(from_status)
        reputation = self._store.record_abandonment(provider_id, penalty)
        if reputation is None:
            raise NotFoundError("Provider", provider_id)
        logger.info(
            "Reputation penalised",
            extra={
                "provider_id": provider_id,
                "penalty": penalty,
                "reputation": reputation,
                "from_status": from_status.value,
            },
        )
        return reputation
