"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from engagement_service.clients.notification_client import NotificationClient
    from engagement_service.clients.payment_gateway_client import PaymentGatewayClient
    from engagement_service.services.directory_sync import DirectorySync
    from engagement_service.services.engagement_store import EngagementStore
    from engagement_service.services.escrow_coordinator import EscrowCoordinator
    from engagement_service.services.notification_dispatcher import NotificationDispatcher
    from engagement_service.services.payment_ledger import PaymentLedger
    from engagement_service.services.request_manager import RequestManager


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: EngagementStore | None = None
    request_manager: RequestManager | None = None
    payment_ledger: PaymentLedger | None = None
    escrow_coordinator: EscrowCoordinator | None = None
    directory_sync: DirectorySync | None = None
    dispatcher: NotificationDispatcher | None = None
    payment_gateway_client: PaymentGatewayClient | None = None
    notification_client: NotificationClient | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
