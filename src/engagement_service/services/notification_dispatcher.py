"""Delivers committed outbox events to the notification channel."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from service_commons.exceptions import ServiceError

from engagement_service.logging import get_logger

if TYPE_CHECKING:
    from engagement_service.clients.notification_client import NotificationClient
    from engagement_service.services.engagement_store import EngagementStore


class NotificationDispatcher:
    """
    Drains the outbox in the background, off the request path.

    Engine components call :meth:`wake` after committing; the loop started by
    :meth:`start` then drains. It also polls every ``poll_interval_seconds``
    so events enqueued by another process are picked up.

    Delivery is best-effort: a failed push is logged, its attempt counted,
    and the event left in place for the next drain. Each drain leases its
    batch first, so overlapping drains never deliver the same event twice.
    """

    def __init__(
        self,
        store: EngagementStore,
        client: NotificationClient | None,
        batch_size: int,
        max_attempts: int,
        lease_seconds: float = 30.0,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self._store = store
        self._client = client
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._lease_seconds = lease_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def wake(self) -> None:
        """Ask the background loop to drain soon. Never blocks."""
        self._wakeup.set()

    async def drain(self) -> int:
        """Deliver one leased batch of pending events; returns how many were delivered."""
        if self._client is None:
            return 0

        logger = get_logger(__name__)
        delivered = 0
        batch = self._store.claim_outbox(self._batch_size, self._max_attempts, self._lease_seconds)
        for event in batch:
            try:
                await self._client.push(event.recipient_id, event.topic, event.payload)
            except ServiceError as exc:
                self._store.mark_outbox_failed(event.event_id, exc.message)
                logger.warning(
                    "Notification delivery failed",
                    extra={
                        "event_id": event.event_id,
                        "topic": event.topic,
                        "attempts": event.attempts + 1,
                        "error": exc.error,
                    },
                )
                continue
            self._store.mark_outbox_dispatched(event.event_id)
            delivered += 1
        return delivered

    async def run(self) -> None:
        """Drain whenever woken or polled, until cancelled."""
        logger = get_logger(__name__)
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), self._poll_interval_seconds)
            self._wakeup.clear()
            try:
                await self.drain()
            except Exception:
                logger.exception("Outbox drain failed")

    def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
