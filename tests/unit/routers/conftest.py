"""Router test fixtures with a mocked payment gateway and notification channel."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from engagement_service.app import create_app
from engagement_service.config import clear_settings_cache
from engagement_service.core.lifespan import lifespan
from engagement_service.core.state import get_app_state, reset_app_state
from tests.helpers import GATEWAY_SECRET, make_gateway_mock, make_provider, sign

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed actor IDs
# ---------------------------------------------------------------------------
CLIENT_ID = "c-alice"
OTHER_CLIENT_ID = "c-bob"
PROVIDER_ID = "p-carol"
ADMIN_ID = "admin-dave"


def headers(actor_id: str, role: str) -> dict[str, str]:
    """Identity headers set by the upstream authorization layer."""
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


CLIENT = headers(CLIENT_ID, "client")
OTHER_CLIENT = headers(OTHER_CLIENT_ID, "client")
PROVIDER = headers(PROVIDER_ID, "provider")
ADMIN = headers(ADMIN_ID, "admin")


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    config_content = f"""\
service:
  name: "engagement-engine"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
  busy_timeout_ms: 5000
request:
  max_body_size: 4096
payment_gateway:
  base_url: "http://localhost:9999"
  key_id: "key_test"
  key_secret: "{GATEWAY_SECRET}"
  currency: "INR"
  timeout_seconds: 5
  read_retry_attempts: 2
  retry_wait_seconds: 0
notifications:
  base_url: "http://localhost:9998"
  push_path: "/notifications"
  timeout_seconds: 5
  batch_size: 50
  max_attempts: 3
  lease_seconds: 30
  poll_interval_seconds: 0.05
fees:
  individual_pct: 10
  firm_pct: 15
tax:
  tds_pct: 10
  threshold: 3000000
refunds:
  pending_pct: 100
  accepted_pct: 95
  in_progress_pct: 40
  cancellation_fee_pct: 10
  completed_pct: 0
  processing_fee: 0
payments:
  minimum_amount: 10000
  estimate_band_pct: 50
escrow:
  auto_release_days: 7
capacity:
  default_max_active: 15
  abandon_penalty_accepted: 0.2
  abandon_penalty_in_progress: 0.3
limits:
  max_pending_per_client: 3
  max_description_length: 5000
  max_note_length: 1000
scoring:
  weights:
    specialization: 0.30
    experience: 0.15
    rating: 0.15
    reputation: 0.15
    availability: 0.15
    budget_fit: 0.10
  urgency_penalty:
    immediate: 0.15
    urgent: 0.10
    normal: 0.05
    flexible: 0.0
  experience_cap_years: 20
  secondary_match_factor: 0.7
  near_budget_factor: 0.5
  budget_band_pct: 20
  min_auto_assign_score: 0.3
  max_alternatives: 3
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        gateway = make_gateway_mock()
        state.payment_gateway_client = gateway
        if state.payment_ledger is not None:
            state.payment_ledger._gateway = gateway

        notifier = AsyncMock()
        notifier.close = AsyncMock()
        state.notification_client = notifier
        if state.dispatcher is not None:
            state.dispatcher._client = notifier

        if state.store is not None:
            state.store.save_provider(make_provider(PROVIDER_ID))

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------
async def create_request(client: AsyncClient, **overrides: Any) -> dict[str, Any]:
    """Open a request for the seeded provider and return its body."""
    body: dict[str, Any] = {
        "category": "gst_filing",
        "urgency": "normal",
        "description": "Monthly GST filing",
        "budget_hint": 100_000,
        "requested_provider_id": PROVIDER_ID,
    }
    body.update(overrides)
    response = await client.post("/requests", json=body, headers=CLIENT)
    assert response.status_code == 201, response.text
    result: dict[str, Any] = response.json()
    return result


async def setup_paid_request(client: AsyncClient) -> tuple[str, str]:
    """Accepted request with a captured payment; returns (request_id, payment_id)."""
    request_id = (await create_request(client))["request_id"]
    accepted = await client.post(f"/requests/{request_id}/accept", headers=PROVIDER)
    assert accepted.status_code == 200, accepted.text

    created = await client.post("/payments", json={"request_id": request_id}, headers=CLIENT)
    assert created.status_code == 201, created.text
    payment = created.json()

    verified = await client.post(
        f"/payments/{payment['payment_id']}/verify",
        json={
            "gateway_payment_id": "pay_gw_1",
            "signature": sign(payment["gateway_order_id"], "pay_gw_1"),
        },
        headers=CLIENT,
    )
    assert verified.status_code == 200, verified.text
    return request_id, payment["payment_id"]
