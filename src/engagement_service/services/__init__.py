"""Service layer components."""

from engagement_service.services.capacity_tracker import CapacityTracker
from engagement_service.services.engagement_store import EngagementStore
from engagement_service.services.escrow_coordinator import EscrowCoordinator
from engagement_service.services.notification_dispatcher import NotificationDispatcher
from engagement_service.services.payment_ledger import PaymentLedger
from engagement_service.services.request_manager import RequestManager

__all__ = [
    "CapacityTracker",
    "EngagementStore",
    "EscrowCoordinator",
    "NotificationDispatcher",
    "PaymentLedger",
    "RequestManager",
]
