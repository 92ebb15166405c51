"""Unit tests for RequestManager."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from unittest.mock import AsyncMock

import pytest

from engagement_service.core.exceptions import (
    AuthorizationError,
    CapacityExceededError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from engagement_service.models import (
    Actor,
    ActorRole,
    AssignmentMethod,
    EventKind,
    ReasonCode,
    RequestStatus,
    SplitPolicy,
)
from engagement_service.services.capacity_tracker import CapacityTracker
from engagement_service.services.engagement_store import EngagementStore
from engagement_service.services.notification_dispatcher import NotificationDispatcher
from engagement_service.services.request_manager import RequestManager
from tests.helpers import make_provider, seed_firm

CLIENT = Actor("c-1", ActorRole.CLIENT)
OTHER_CLIENT = Actor("c-2", ActorRole.CLIENT)
ADMIN = Actor("admin-1", ActorRole.ADMIN)


def _provider(provider_id: str) -> Actor:
    return Actor(provider_id, ActorRole.PROVIDER)


async def _create(manager: RequestManager, actor: Actor = CLIENT, **overrides: Any):
    values: dict[str, Any] = {
        "category": "gst_filing",
        "urgency": "normal",
        "description": "Quarterly GST return for a small retailer",
        "budget_hint": 100_000,
    }
    values.update(overrides)
    return await manager.create_request(actor, **values)


async def _accepted(manager: RequestManager, provider_id: str = "p-1", **overrides: Any):
    request = await _create(manager, requested_provider_id=provider_id, **overrides)
    return await manager.accept(request.request_id, _provider(provider_id))


@pytest.mark.unit
async def test_full_lifecycle(store, manager) -> None:
    store.save_provider(make_provider("p-1"))

    request = await _create(manager)
    assert request.status == RequestStatus.PENDING
    assert request.provider_id is None

    outcome = await manager.compute_assignment(request.request_id, CLIENT)
    assert outcome.method == AssignmentMethod.AUTO
    assert outcome.result.selected.provider_id == "p-1"
    assert outcome.request.provider_id == "p-1"
    assert outcome.request.status == RequestStatus.PENDING
    assert outcome.request.assignment_score == pytest.approx(0.81)

    accepted = await manager.accept(request.request_id, _provider("p-1"))
    assert accepted.status == RequestStatus.ACCEPTED
    assert accepted.accepted_at is not None
    assert store.get_provider("p-1").active_count == 1

    started = await manager.start(request.request_id, _provider("p-1"))
    assert started.status == RequestStatus.IN_PROGRESS

    completed = await manager.complete(request.request_id, _provider("p-1"))
    assert completed.status == RequestStatus.COMPLETED
    assert completed.completed_at is not None
    assert store.get_provider("p-1").active_count == 0

    history = await manager.get_history(request.request_id, CLIENT)
    assert [event.kind for event in history] == [EventKind.ASSIGNED]
    assert history[0].reason_code == ReasonCode.AUTO_ASSIGNMENT

    actions = [entry.action for entry in store.list_audit(request.request_id)]
    assert actions == [
        "request.create",
        "request.propose",
        "request.accept",
        "request.start",
        "request.complete",
    ]


@pytest.mark.unit
async def test_client_specified_provider_is_assigned_at_creation(store, manager) -> None:
    store.save_provider(make_provider("p-1"))

    request = await _create(manager, requested_provider_id="p-1")

    assert request.provider_id == "p-1"
    assert request.assignment_method == AssignmentMethod.CLIENT_SPECIFIED
    history = store.list_events(request.request_id)
    assert [(e.kind, e.reason_code) for e in history] == [
        (EventKind.ASSIGNED, ReasonCode.CLIENT_SPECIFIED)
    ]


@pytest.mark.unit
async def test_requested_provider_must_be_verified(store, manager) -> None:
    store.save_provider(make_provider("p-1", verified_at=None))

    with pytest.raises(ValidationError) as exc_info:
        await _create(manager, requested_provider_id="p-1")

    assert exc_info.value.error == "PROVIDER_NOT_ELIGIBLE"
    with pytest.raises(NotFoundError):
        await _create(manager, requested_provider_id="p-missing")


@pytest.mark.unit
async def test_create_validation(manager) -> None:
    with pytest.raises(AuthorizationError):
        await _create(manager, actor=_provider("p-1"))
    with pytest.raises(ValidationError):
        await _create(manager, urgency="whenever")
    with pytest.raises(ValidationError):
        await _create(manager, description="   ")
    with pytest.raises(ValidationError):
        await _create(manager, description="x" * 5001)
    with pytest.raises(ValidationError):
        await _create(manager, budget_hint=-5)
    with pytest.raises(ValidationError):
        await _create(manager, deadline="2001-01-01T00:00:00Z")
    with pytest.raises(ValidationError):
        await _create(manager, deadline="next tuesday")
    with pytest.raises(ValidationError):
        await _create(manager, estimated_hours=0)


@pytest.mark.unit
async def test_pending_limit_per_client(manager) -> None:
    for _ in range(3):
        await _create(manager)

    with pytest.raises(ValidationError) as exc_info:
        await _create(manager)

    assert exc_info.value.error == "PENDING_LIMIT_REACHED"
    assert exc_info.value.details == {"pending": 3, "limit": 3}
    other = await _create(manager, actor=OTHER_CLIENT)
    assert other.status == RequestStatus.PENDING


@pytest.mark.unit
async def test_accept_twice_conflicts(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)

    with pytest.raises(StateConflictError):
        await manager.accept(request.request_id, _provider("p-1"))

    assert store.get_provider("p-1").active_count == 1


@pytest.mark.unit
async def test_accept_on_stale_assignee_conflicts(store, manager, monkeypatch) -> None:
    """An accept checked against p-1 must not land after an admin moved the request to p-2."""
    store.save_provider(make_provider("p-1"))
    store.save_provider(make_provider("p-2"))
    request = await _create(manager, requested_provider_id="p-1")
    before_reassign = store.get_request(request.request_id)
    await manager.reassign(request.request_id, ADMIN, "p-2", "Client escalation")

    snapshots = iter([before_reassign])
    read_request = store.get_request
    monkeypatch.setattr(
        store, "get_request", lambda request_id: next(snapshots, None) or read_request(request_id)
    )

    with pytest.raises(StateConflictError):
        await manager.accept(request.request_id, _provider("p-1"))

    current = store.get_request(request.request_id)
    assert (current.status, current.provider_id) == (RequestStatus.PENDING, "p-2")
    assert store.get_provider("p-1").active_count == 0
    assert store.get_provider("p-2").active_count == 0


@pytest.mark.unit
def test_concurrent_accepts_take_one_slot(tmp_path, engine_config) -> None:
    """Two connections race to accept the same request; exactly one wins."""
    db_path = str(tmp_path / "race.db")
    store_a = EngagementStore(db_path)
    store_b = EngagementStore(db_path)
    try:
        store_a.save_provider(make_provider("p-1"))
        manager_a = RequestManager(
            store_a, CapacityTracker(store_a, engine_config.capacity), engine_config
        )
        manager_b = RequestManager(
            store_b, CapacityTracker(store_b, engine_config.capacity), engine_config
        )
        request = asyncio.run(_create(manager_a, requested_provider_id="p-1"))

        def accept(manager: RequestManager):
            return asyncio.run(manager.accept(request.request_id, _provider("p-1")))

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(accept, manager_a), pool.submit(accept, manager_b)]

        results = []
        errors = []
        for fut in futures:
            try:
                results.append(fut.result())
            except StateConflictError as exc:
                errors.append(exc)

        assert len(results) == 1
        assert len(errors) == 1
        assert store_a.get_provider("p-1").active_count == 1
        assert store_a.get_request(request.request_id).status == RequestStatus.ACCEPTED
    finally:
        store_a.close()
        store_b.close()


@pytest.mark.unit
async def test_only_proposed_provider_may_accept(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    store.save_provider(make_provider("p-2"))
    request = await _create(manager, requested_provider_id="p-1")

    with pytest.raises(AuthorizationError):
        await manager.accept(request.request_id, _provider("p-2"))
    with pytest.raises(AuthorizationError):
        await manager.accept(request.request_id, CLIENT)


@pytest.mark.unit
async def test_accept_at_capacity_leaves_request_pending(store, manager) -> None:
    store.save_provider(make_provider("p-1", max_active=1))
    await _accepted(manager)
    second = await _create(manager, requested_provider_id="p-1")

    with pytest.raises(CapacityExceededError):
        await manager.accept(second.request_id, _provider("p-1"))

    assert store.get_request(second.request_id).status == RequestStatus.PENDING
    assert store.get_provider("p-1").active_count == 1
    assert [e.action for e in store.list_audit(second.request_id)] == ["request.create"]


@pytest.mark.unit
async def test_reject_reopens_and_excludes_provider(store, manager) -> None:
    store.save_provider(make_provider("p-1", experience_years=20, rating=5.0))
    store.save_provider(make_provider("p-2"))
    request = await _create(manager)
    outcome = await manager.compute_assignment(request.request_id, CLIENT)
    assert outcome.result.selected.provider_id == "p-1"
    await manager.accept(request.request_id, _provider("p-1"))

    reopened = await manager.reject(
        request.request_id, _provider("p-1"), "schedule_conflict", note="Booked up this month"
    )

    assert reopened.status == RequestStatus.PENDING
    assert reopened.provider_id is None
    assert reopened.accepted_at is None
    assert reopened.reopened_count == 1
    provider = store.get_provider("p-1")
    assert provider.active_count == 0
    assert provider.reputation == 5.0

    retry = await manager.compute_assignment(request.request_id, CLIENT)
    assert retry.result.selected.provider_id == "p-2"
    assert retry.result.excluded["p-1"] == "previously_released"

    history = store.list_events(request.request_id)
    assert [e.kind for e in history] == [
        EventKind.ASSIGNED,
        EventKind.REJECTED,
        EventKind.ASSIGNED,
    ]
    assert history[1].from_status == RequestStatus.ACCEPTED
    assert history[1].note == "Booked up this month"


@pytest.mark.unit
async def test_reject_clears_requested_provider(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)

    reopened = await manager.reject(request.request_id, _provider("p-1"), "outside_expertise")

    assert reopened.requested_provider_id is None


@pytest.mark.unit
async def test_reject_requires_provider_reason(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)

    with pytest.raises(ValidationError):
        await manager.reject(request.request_id, _provider("p-1"), "auto_assignment")
    with pytest.raises(ValidationError):
        await manager.reject(request.request_id, _provider("p-1"), "bored")
    with pytest.raises(AuthorizationError):
        await manager.reject(request.request_id, _provider("p-2"), "schedule_conflict")


@pytest.mark.unit
@pytest.mark.parametrize(("start", "expected"), [(False, 4.8), (True, 4.7)])
async def test_abandon_penalises_reputation(store, manager, start, expected) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)
    if start:
        await manager.start(request.request_id, _provider("p-1"))

    reopened = await manager.abandon(request.request_id, _provider("p-1"), "personal_emergency")

    assert reopened.status == RequestStatus.PENDING
    provider = store.get_provider("p-1")
    assert provider.reputation == pytest.approx(expected)
    assert provider.abandonment_count == 1
    assert provider.active_count == 0
    assert store.list_events(request.request_id)[-1].kind == EventKind.ABANDONED


@pytest.mark.unit
async def test_cancel_frees_slot_and_notifies_provider(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)

    cancelled = await manager.cancel(request.request_id, CLIENT, reason="Found someone else")

    assert cancelled.status == RequestStatus.CANCELLED
    assert cancelled.cancelled_from == RequestStatus.ACCEPTED
    assert cancelled.cancelled_by == "c-1"
    assert store.get_provider("p-1").active_count == 0
    last = store.list_events(request.request_id)[-1]
    assert (last.kind, last.reason_code) == (EventKind.CANCELLED, ReasonCode.CLIENT_CANCELLED)
    pending = store.fetch_pending_outbox(limit=50, max_attempts=5)
    assert ("p-1", "request.cancelled") in {(e.recipient_id, e.topic) for e in pending}

    with pytest.raises(StateConflictError):
        await manager.cancel(request.request_id, CLIENT)


@pytest.mark.unit
async def test_cancel_requires_a_party_to_the_request(manager) -> None:
    request = await _create(manager)

    with pytest.raises(AuthorizationError):
        await manager.cancel(request.request_id, OTHER_CLIENT)
    with pytest.raises(AuthorizationError):
        await manager.cancel(request.request_id, _provider("p-9"))

    cancelled = await manager.cancel(request.request_id, ADMIN)
    assert cancelled.cancelled_by == "admin-1"
    history = await manager.get_history(request.request_id, ADMIN)
    assert history[-1].reason_code == ReasonCode.ADMIN_CANCELLED


@pytest.mark.unit
async def test_completed_request_cannot_be_cancelled(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)
    await manager.start(request.request_id, _provider("p-1"))
    await manager.complete(request.request_id, _provider("p-1"))

    with pytest.raises(StateConflictError):
        await manager.cancel(request.request_id, ADMIN)


@pytest.mark.unit
async def test_reassign_moves_capacity(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    store.save_provider(make_provider("p-2"))
    request = await _accepted(manager)

    moved = await manager.reassign(request.request_id, ADMIN, "p-2", "Client escalation")

    assert moved.provider_id == "p-2"
    assert moved.status == RequestStatus.ACCEPTED
    assert moved.assignment_method == AssignmentMethod.MANUAL
    assert store.get_provider("p-1").active_count == 0
    assert store.get_provider("p-2").active_count == 1
    last = store.list_events(request.request_id)[-1]
    assert (last.kind, last.reason_code, last.provider_id) == (
        EventKind.REASSIGNED,
        ReasonCode.MANUAL_OVERRIDE,
        "p-2",
    )


@pytest.mark.unit
async def test_reassign_checks(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    store.save_provider(make_provider("p-2", verified_at=None))
    store.save_provider(make_provider("p-3", max_active=1, active_count=1))
    request = await _accepted(manager)

    with pytest.raises(AuthorizationError):
        await manager.reassign(request.request_id, CLIENT, "p-2", "swap")
    with pytest.raises(ValidationError):
        await manager.reassign(request.request_id, ADMIN, "p-1", "")
    for target in ("p-1", "p-2", "p-3"):
        with pytest.raises(ValidationError) as exc_info:
            await manager.reassign(request.request_id, ADMIN, target, "swap")
        assert exc_info.value.error == "PROVIDER_NOT_ELIGIBLE"
    with pytest.raises(NotFoundError):
        await manager.reassign(request.request_id, ADMIN, "p-missing", "swap")

    assert store.get_provider("p-1").active_count == 1


@pytest.mark.unit
async def test_update_pending_request(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _create(manager, requested_provider_id="p-1")

    updated = await manager.update_request(
        request.request_id, CLIENT, {"description": "Annual GST return", "urgency": "urgent"}
    )
    assert updated.description == "Annual GST return"
    assert updated.urgency == "urgent"

    with pytest.raises(ValidationError):
        await manager.update_request(request.request_id, CLIENT, {"status": "completed"})
    with pytest.raises(AuthorizationError):
        await manager.update_request(request.request_id, OTHER_CLIENT, {"budget_hint": 5})

    await manager.accept(request.request_id, _provider("p-1"))
    with pytest.raises(StateConflictError):
        await manager.update_request(request.request_id, CLIENT, {"budget_hint": 5})


@pytest.mark.unit
async def test_log_hours_accumulates_while_in_progress(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager, estimated_hours=8)

    with pytest.raises(StateConflictError):
        await manager.log_hours(request.request_id, _provider("p-1"), 1)

    await manager.start(request.request_id, _provider("p-1"))
    await manager.log_hours(request.request_id, _provider("p-1"), 1.5)
    logged = await manager.log_hours(request.request_id, _provider("p-1"), 2)

    assert logged.actual_hours == pytest.approx(3.5)
    assert logged.estimated_hours == 8
    audit = [e for e in store.list_audit(request.request_id) if e.action == "request.log_hours"]
    assert [e.details["total"] for e in audit] == [1.5, 3.5]


@pytest.mark.unit
async def test_log_hours_checks(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)
    await manager.start(request.request_id, _provider("p-1"))

    for bad in (None, 0, -2, "3", True):
        with pytest.raises(ValidationError):
            await manager.log_hours(request.request_id, _provider("p-1"), bad)
    with pytest.raises(AuthorizationError):
        await manager.log_hours(request.request_id, CLIENT, 1)
    with pytest.raises(AuthorizationError):
        await manager.log_hours(request.request_id, _provider("p-2"), 1)
    with pytest.raises(NotFoundError):
        await manager.log_hours("missing", _provider("p-1"), 1)

    assert store.get_request(request.request_id).actual_hours is None


@pytest.mark.unit
async def test_log_hours_on_stale_total_conflicts(store, manager, monkeypatch) -> None:
    store.save_provider(make_provider("p-1"))
    request = await _accepted(manager)
    await manager.start(request.request_id, _provider("p-1"))
    stale = store.get_request(request.request_id)
    await manager.log_hours(request.request_id, _provider("p-1"), 2)

    real_get = store.get_request
    calls = iter([stale])
    monkeypatch.setattr(store, "get_request", lambda rid: next(calls, None) or real_get(rid))

    with pytest.raises(StateConflictError):
        await manager.log_hours(request.request_id, _provider("p-1"), 1)
    assert real_get(request.request_id).actual_hours == 2


@pytest.mark.unit
async def test_firm_with_auto_assignment_disabled_needs_manual_assignment(store, manager) -> None:
    seed_firm(store, {"m-1": None, "m-2": None}, auto_assignment_enabled=False)
    request = await _create(manager, firm_id="firm-1")

    outcome = await manager.compute_assignment(request.request_id, ADMIN)

    assert outcome.result.manual_required is True
    assert outcome.result.reason == "auto_assignment_disabled"
    assert store.get_request(request.request_id).provider_id is None


@pytest.mark.unit
async def test_firm_requests_draw_only_from_firm_members(store, manager) -> None:
    seed_firm(store, {"m-1": None, "m-2": None})
    store.save_provider(make_provider("p-star", experience_years=20, rating=5.0))
    request = await _create(manager, firm_id="firm-1")

    outcome = await manager.compute_assignment(request.request_id, CLIENT)

    assert outcome.result.selected.provider_id in {"m-1", "m-2"}


@pytest.mark.unit
async def test_inactive_or_unknown_firm_is_rejected(store, manager) -> None:
    with pytest.raises(NotFoundError):
        await _create(manager, firm_id="firm-missing")

    seed_firm(store, {}, firm_id="firm-empty")
    with pytest.raises(ValidationError) as exc_info:
        await _create(manager, firm_id="firm-empty")
    assert exc_info.value.error == "FIRM_INACTIVE"


@pytest.mark.unit
async def test_custom_split_by_firm_admin(store, manager) -> None:
    seed_firm(store, {"m-1": None, "m-2": None}, split_policy=SplitPolicy.CUSTOM)
    request = await _create(manager, firm_id="firm-1")

    shares = await manager.set_custom_split(
        request.request_id, _provider("m-1"), {"m-1": 60, "m-2": 40}
    )

    assert shares == {"m-1": 60.0, "m-2": 40.0}
    with pytest.raises(AuthorizationError):
        await manager.set_custom_split(request.request_id, _provider("m-2"), {"m-2": 100})
    with pytest.raises(ValidationError) as exc_info:
        await manager.set_custom_split(request.request_id, ADMIN, {"m-1": 50, "m-2": 40})
    assert exc_info.value.error == "INVALID_SPLIT"
    with pytest.raises(ValidationError):
        await manager.set_custom_split(request.request_id, ADMIN, {"m-1": 50, "x-9": 50})


@pytest.mark.unit
async def test_custom_split_needs_custom_policy(store, manager) -> None:
    seed_firm(store, {"m-1": None, "m-2": None})
    request = await _create(manager, firm_id="firm-1")

    with pytest.raises(ValidationError) as exc_info:
        await manager.set_custom_split(request.request_id, ADMIN, {"m-1": 50, "m-2": 50})

    assert exc_info.value.error == "INVALID_SPLIT"


@pytest.mark.unit
async def test_reads_respect_visibility(store, manager) -> None:
    store.save_provider(make_provider("p-1"))
    mine = await _create(manager, requested_provider_id="p-1")
    await _create(manager, actor=OTHER_CLIENT)

    seen = await manager.get_request(mine.request_id, _provider("p-1"))
    assert seen.request_id == mine.request_id
    with pytest.raises(AuthorizationError):
        await manager.get_request(mine.request_id, OTHER_CLIENT)
    with pytest.raises(AuthorizationError):
        await manager.get_history(mine.request_id, _provider("p-2"))

    assert [r.request_id for r in await manager.list_requests(CLIENT)] == [mine.request_id]
    assert len(await manager.list_requests(ADMIN)) == 2
    assert len(await manager.list_requests(_provider("p-1"))) == 1
    with pytest.raises(ValidationError):
        await manager.list_requests(ADMIN, status="archived")

    stats = manager.get_stats()
    assert stats["total_requests"] == 2
    assert stats["requests_by_status"] == {"pending": 2}


@pytest.mark.unit
async def test_transitions_queue_notifications_without_pushing_inline(
    store, tracker, engine_config
) -> None:
    client = AsyncMock()
    dispatcher = NotificationDispatcher(store, client, batch_size=50, max_attempts=5)
    manager = RequestManager(store, tracker, engine_config, dispatcher)
    store.save_provider(make_provider("p-1"))

    request = await _create(manager, requested_provider_id="p-1")
    await manager.accept(request.request_id, _provider("p-1"))

    client.push.assert_not_awaited()
    assert store.count_pending_outbox() == 2

    assert await dispatcher.drain() == 2
    client.push.assert_any_await("p-1", "request.proposed", {"request_id": request.request_id})
    client.push.assert_any_await("c-1", "request.accepted", {"request_id": request.request_id})
    assert store.count_pending_outbox() == 0
