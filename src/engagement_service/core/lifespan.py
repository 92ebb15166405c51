"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from engagement_service.clients.notification_client import NotificationClient
from engagement_service.clients.payment_gateway_client import PaymentGatewayClient
from engagement_service.config import EngineConfig, get_settings
from engagement_service.core.state import init_app_state
from engagement_service.logging import get_logger, setup_logging
from engagement_service.services.capacity_tracker import CapacityTracker
from engagement_service.services.directory_sync import DirectorySync
from engagement_service.services.engagement_store import EngagementStore
from engagement_service.services.escrow_coordinator import EscrowCoordinator
from engagement_service.services.notification_dispatcher import NotificationDispatcher
from engagement_service.services.payment_ledger import PaymentLedger
from engagement_service.services.request_manager import RequestManager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    engine_config = EngineConfig.from_settings(settings)

    store = EngagementStore(
        db_path=settings.database.path,
        busy_timeout_ms=settings.database.busy_timeout_ms,
    )
    state.store = store

    gateway = PaymentGatewayClient(
        base_url=settings.payment_gateway.base_url,
        key_id=settings.payment_gateway.key_id,
        key_secret=settings.payment_gateway.key_secret,
        currency=settings.payment_gateway.currency,
        timeout_seconds=settings.payment_gateway.timeout_seconds,
        read_retry_attempts=settings.payment_gateway.read_retry_attempts,
        retry_wait_seconds=settings.payment_gateway.retry_wait_seconds,
    )
    state.payment_gateway_client = gateway

    notification_client = NotificationClient(
        base_url=settings.notifications.base_url,
        push_path=settings.notifications.push_path,
        timeout_seconds=settings.notifications.timeout_seconds,
    )
    state.notification_client = notification_client

    dispatcher = NotificationDispatcher(
        store=store,
        client=notification_client,
        batch_size=settings.notifications.batch_size,
        max_attempts=settings.notifications.max_attempts,
        lease_seconds=settings.notifications.lease_seconds,
        poll_interval_seconds=settings.notifications.poll_interval_seconds,
    )
    state.dispatcher = dispatcher

    tracker = CapacityTracker(store=store, config=engine_config.capacity)
    request_manager = RequestManager(
        store=store,
        tracker=tracker,
        config=engine_config,
        dispatcher=dispatcher,
    )
    state.request_manager = request_manager

    payment_ledger = PaymentLedger(
        store=store,
        gateway=gateway,
        request_manager=request_manager,
        config=engine_config,
        dispatcher=dispatcher,
    )
    state.payment_ledger = payment_ledger
    state.escrow_coordinator = EscrowCoordinator(store=store, ledger=payment_ledger)
    state.directory_sync = DirectorySync(store=store, capacity=engine_config.capacity)

    dispatcher.start()

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "payment_gateway_base_url": settings.payment_gateway.base_url,
            "notifications_base_url": settings.notifications.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await dispatcher.stop()
    request_manager.close()
    await gateway.close()
    await notification_client.close()
