"""Unit tests for configuration loading."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from service_commons.config import REDACTION_MARKER, ConfigurationError

from engagement_service.config import (
    EngineConfig,
    clear_settings_cache,
    get_safe_config,
    get_settings,
)
from engagement_service.services import fee_calculator

SHIPPED_CONFIG = Path(__file__).resolve().parents[2] / "config.yaml"


def _write_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, raw: dict[str, Any]) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw))
    monkeypatch.setenv("CONFIG_PATH", str(path))
    clear_settings_cache()


def _shipped() -> dict[str, Any]:
    raw: dict[str, Any] = yaml.safe_load(SHIPPED_CONFIG.read_text())
    return raw


@pytest.mark.unit
def test_shipped_config_loads(tmp_path, monkeypatch) -> None:
    _write_config(tmp_path, monkeypatch, _shipped())

    settings = get_settings()

    assert settings.service.name == "engagement-engine"
    assert settings.fees.individual_pct == 10
    assert settings.scoring.weights.specialization == pytest.approx(0.30)
    engine = EngineConfig.from_settings(settings)
    assert engine.escrow.auto_release_days == 7
    assert engine.limits.max_pending_per_client == 3


@pytest.mark.unit
def test_settings_are_cached_until_cleared(tmp_path, monkeypatch) -> None:
    _write_config(tmp_path, monkeypatch, _shipped())
    first = get_settings()

    assert get_settings() is first
    clear_settings_cache()
    assert get_settings() is not first


@pytest.mark.unit
def test_unknown_field_is_rejected(tmp_path, monkeypatch) -> None:
    raw = _shipped()
    raw["fees"]["surge_pct"] = 5
    _write_config(tmp_path, monkeypatch, raw)

    with pytest.raises(ConfigurationError):
        get_settings()


@pytest.mark.unit
def test_missing_section_is_rejected(tmp_path, monkeypatch) -> None:
    raw = _shipped()
    del raw["escrow"]
    _write_config(tmp_path, monkeypatch, raw)

    with pytest.raises(ConfigurationError):
        get_settings()


@pytest.mark.unit
def test_every_urgency_level_needs_a_penalty(tmp_path, monkeypatch) -> None:
    raw = _shipped()
    del raw["scoring"]["urgency_penalty"]["flexible"]
    _write_config(tmp_path, monkeypatch, raw)

    with pytest.raises(ConfigurationError, match="flexible"):
        get_settings()


@pytest.mark.unit
def test_missing_file(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))
    clear_settings_cache()

    with pytest.raises(ConfigurationError, match="not found"):
        get_settings()


@pytest.mark.unit
def test_safe_config_redacts_secrets(tmp_path, monkeypatch) -> None:
    _write_config(tmp_path, monkeypatch, _shipped())

    safe = get_safe_config()

    assert safe["payment_gateway"]["key_secret"] == REDACTION_MARKER
    assert safe["payment_gateway"]["key_id"] == "rzp_test_key"
    assert safe["database"]["path"] == "data/engagement.db"


@pytest.mark.unit
def test_shipped_tax_threshold_is_in_paise(tmp_path, monkeypatch) -> None:
    """A Rs 1,000 payment's provider share sits under the Rs 30,000 threshold."""
    _write_config(tmp_path, monkeypatch, _shipped())

    tax = get_settings().tax

    assert tax.threshold == 3_000_000
    assert fee_calculator.compute_withholding(90_000, tax) == 0
    assert fee_calculator.compute_withholding(3_000_000, tax) == 300_000
