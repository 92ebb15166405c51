"""Unit test fixtures: fresh store and engine components per test."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from engagement_service.config import clear_settings_cache
from engagement_service.core.state import reset_app_state
from engagement_service.services.capacity_tracker import CapacityTracker
from engagement_service.services.engagement_store import EngagementStore
from engagement_service.services.escrow_coordinator import EscrowCoordinator
from engagement_service.services.payment_ledger import PaymentLedger
from engagement_service.services.request_manager import RequestManager
from tests.helpers import make_engine_config, make_gateway_mock

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from engagement_service.config import EngineConfig


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def engine_config() -> EngineConfig:
    return make_engine_config()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[EngagementStore]:
    engagement_store = EngagementStore(str(tmp_path / "engagement.db"))
    yield engagement_store
    engagement_store.close()


@pytest.fixture
def tracker(store: EngagementStore, engine_config: EngineConfig) -> CapacityTracker:
    return CapacityTracker(store, engine_config.capacity)


@pytest.fixture
def manager(
    store: EngagementStore,
    tracker: CapacityTracker,
    engine_config: EngineConfig,
) -> RequestManager:
    return RequestManager(store, tracker, engine_config)


@pytest.fixture
def gateway() -> Any:
    return make_gateway_mock()


@pytest.fixture
def ledger(
    store: EngagementStore,
    gateway: Any,
    manager: RequestManager,
    engine_config: EngineConfig,
) -> PaymentLedger:
    return PaymentLedger(store, gateway, manager, engine_config)


@pytest.fixture
def escrow(store: EngagementStore, ledger: PaymentLedger) -> EscrowCoordinator:
    return EscrowCoordinator(store, ledger)
