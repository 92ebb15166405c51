"""Unit tests for NotificationDispatcher."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from service_commons.exceptions import ServiceError

from engagement_service.services.notification_dispatcher import NotificationDispatcher


def _unavailable() -> ServiceError:
    return ServiceError(
        error="NOTIFICATION_UNAVAILABLE",
        message="Cannot reach notification service",
        status_code=502,
        details={},
    )


@pytest.mark.unit
async def test_drain_delivers_pending_events(store) -> None:
    client = AsyncMock()
    store.enqueue_outbox(topic="request.accepted", recipient_id="c-1", payload={"id": "r-1"})
    store.enqueue_outbox(topic="request.started", recipient_id="c-1", payload={"id": "r-1"})
    dispatcher = NotificationDispatcher(store, client, batch_size=10, max_attempts=3)

    delivered = await dispatcher.drain()

    assert delivered == 2
    assert store.count_pending_outbox() == 0
    assert [c.args[1] for c in client.push.await_args_list] == [
        "request.accepted",
        "request.started",
    ]
    assert await dispatcher.drain() == 0


@pytest.mark.unit
async def test_failed_push_stays_pending(store) -> None:
    client = AsyncMock()
    client.push = AsyncMock(side_effect=_unavailable())
    event_id = store.enqueue_outbox(topic="request.cancelled", recipient_id="p-1", payload={})
    dispatcher = NotificationDispatcher(store, client, batch_size=10, max_attempts=2)

    assert await dispatcher.drain() == 0

    pending = store.fetch_pending_outbox(limit=10, max_attempts=2)
    assert [e.event_id for e in pending] == [event_id]
    assert pending[0].attempts == 1
    assert pending[0].last_error == "Cannot reach notification service"


@pytest.mark.unit
async def test_event_gives_up_after_max_attempts(store) -> None:
    client = AsyncMock()
    client.push = AsyncMock(side_effect=_unavailable())
    store.enqueue_outbox(topic="request.cancelled", recipient_id="p-1", payload={})
    dispatcher = NotificationDispatcher(store, client, batch_size=10, max_attempts=2)

    await dispatcher.drain()
    await dispatcher.drain()
    await dispatcher.drain()

    assert client.push.await_count == 2
    assert store.count_pending_outbox() == 1


@pytest.mark.unit
async def test_batch_size_limits_one_drain(store) -> None:
    client = AsyncMock()
    for index in range(3):
        store.enqueue_outbox(topic="request.created", recipient_id="c-1", payload={"n": index})
    dispatcher = NotificationDispatcher(store, client, batch_size=2, max_attempts=3)

    assert await dispatcher.drain() == 2
    assert await dispatcher.drain() == 1


@pytest.mark.unit
async def test_drain_without_client_is_a_no_op(store) -> None:
    store.enqueue_outbox(topic="request.created", recipient_id="c-1", payload={})
    dispatcher = NotificationDispatcher(store, None, batch_size=10, max_attempts=3)

    assert await dispatcher.drain() == 0
    assert store.count_pending_outbox() == 1


@pytest.mark.unit
async def test_overlapping_drains_deliver_an_event_once(store) -> None:
    client = AsyncMock()

    async def slow_push(recipient_id: str, topic: str, payload: dict) -> None:
        await asyncio.sleep(0.01)

    client.push = AsyncMock(side_effect=slow_push)
    store.enqueue_outbox(topic="request.accepted", recipient_id="c-1", payload={})
    dispatcher = NotificationDispatcher(store, client, batch_size=10, max_attempts=3)

    delivered = await asyncio.gather(dispatcher.drain(), dispatcher.drain())

    assert sorted(delivered) == [0, 1]
    assert client.push.await_count == 1
    assert store.count_pending_outbox() == 0


@pytest.mark.unit
async def test_background_loop_delivers_after_wake(store) -> None:
    client = AsyncMock()
    dispatcher = NotificationDispatcher(
        store, client, batch_size=10, max_attempts=3, poll_interval_seconds=60
    )
    dispatcher.start()
    try:
        store.enqueue_outbox(topic="request.completed", recipient_id="c-1", payload={"n": 1})
        dispatcher.wake()
        for _ in range(100):
            if store.count_pending_outbox() == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await dispatcher.stop()

    client.push.assert_awaited_once_with("c-1", "request.completed", {"n": 1})
    assert store.count_pending_outbox() == 0
