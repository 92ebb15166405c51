"""Architecture test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from pytestarch import EvaluableArchitecture, LayeredArchitecture, get_evaluable_architecture

# tests/architecture/conftest.py -> tests/ -> repository root
_ROOT = Path(__file__).resolve().parent.parent.parent
_PACKAGE = _ROOT / "src" / "engagement_service"


@pytest.fixture(scope="session")
def evaluable() -> EvaluableArchitecture:
    """Import graph of engagement_service with clean module names."""
    return get_evaluable_architecture(str(_PACKAGE), str(_PACKAGE))


@pytest.fixture(scope="session")
def layered_arch() -> LayeredArchitecture:
    """
    Layers, top to bottom.

        routers   - HTTP endpoint handlers
        services  - engine components, no FastAPI imports
        clients   - outbound HTTP to the gateway and notification channel
    """
    return (
        LayeredArchitecture()
        .layer("routers")
        .containing_modules(["engagement_service.routers"])
        .layer("services")
        .containing_modules(["engagement_service.services"])
        .layer("clients")
        .containing_modules(["engagement_service.clients"])
    )
