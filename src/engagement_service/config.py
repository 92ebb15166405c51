"""
Configuration management for the engagement service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from service_commons.config import (
    REDACTION_MARKER,
    create_settings_loader,
    get_safe_model_config,
)
from service_commons.config import (
    get_config_path as resolve_config_path,
)

if TYPE_CHECKING:
    from pathlib import Path


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    busy_timeout_ms: int = Field(gt=0)


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class PaymentGatewayConfig(BaseModel):
    """Third-party payment gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    key_id: str
    key_secret: str
    currency: str
    timeout_seconds: float = Field(gt=0)
    read_retry_attempts: int = Field(ge=1)
    retry_wait_seconds: float = Field(ge=0)


class NotificationsConfig(BaseModel):
    """Notification channel configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    push_path: str
    timeout_seconds: float = Field(gt=0)
    batch_size: int = Field(gt=0)
    max_attempts: int = Field(ge=1)
    lease_seconds: float = Field(gt=0)
    poll_interval_seconds: float = Field(gt=0)


class FeesConfig(BaseModel):
    """Platform fee percentages per provider type."""

    model_config = ConfigDict(extra="forbid")
    individual_pct: float = Field(ge=0, le=100)
    firm_pct: float = Field(ge=0, le=100)


class TaxConfig(BaseModel):
    """Withholding tax (TDS) applied to each payee share."""

    model_config = ConfigDict(extra="forbid")
    tds_pct: float = Field(ge=0, le=100)
    threshold: int = Field(ge=0)


class RefundsConfig(BaseModel):
    """Refund policy."""

    model_config = ConfigDict(extra="forbid")
    pending_pct: float = Field(ge=0, le=100)
    accepted_pct: float = Field(ge=0, le=100)
    in_progress_pct: float = Field(ge=0, le=100)
    cancellation_fee_pct: float = Field(ge=0, le=100)
    completed_pct: float = Field(ge=0, le=100)
    processing_fee: int = Field(ge=0)


class PaymentsConfig(BaseModel):
    """Payment creation rules."""

    model_config = ConfigDict(extra="forbid")
    minimum_amount: int = Field(gt=0)
    estimate_band_pct: float = Field(ge=0)


class EscrowConfig(BaseModel):
    """Escrow hold and auto-release configuration."""

    model_config = ConfigDict(extra="forbid")
    auto_release_days: int = Field(ge=0)


class CapacityConfig(BaseModel):
    """Provider workload limits and reputation penalties."""

    model_config = ConfigDict(extra="forbid")
    default_max_active: int = Field(gt=0)
    abandon_penalty_accepted: float = Field(ge=0)
    abandon_penalty_in_progress: float = Field(ge=0)


class LimitsConfig(BaseModel):
    """Input limits."""

    model_config = ConfigDict(extra="forbid")
    max_pending_per_client: int = Field(gt=0)
    max_description_length: int = Field(gt=0)
    max_note_length: int = Field(gt=0)


class ScoringWeights(BaseModel):
    """Weights of the assignment score components."""

    model_config = ConfigDict(extra="forbid")
    specialization: float = Field(ge=0)
    experience: float = Field(ge=0)
    rating: float = Field(ge=0)
    reputation: float = Field(ge=0)
    availability: float = Field(ge=0)
    budget_fit: float = Field(ge=0)


class ScoringConfig(BaseModel):
    """Assignment scoring configuration."""

    model_config = ConfigDict(extra="forbid")
    weights: ScoringWeights
    urgency_penalty: dict[str, float]
    experience_cap_years: int = Field(gt=0)
    secondary_match_factor: float = Field(ge=0, le=1)
    near_budget_factor: float = Field(ge=0, le=1)
    budget_band_pct: float = Field(ge=0)
    min_auto_assign_score: float = Field(ge=0)
    max_alternatives: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_urgency_levels(self) -> ScoringConfig:
        missing = {"immediate", "urgent", "normal", "flexible"} - set(self.urgency_penalty)
        if missing:
            msg = f"urgency_penalty is missing levels: {sorted(missing)}"
            raise ValueError(msg)
        return self


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    request: RequestConfig
    payment_gateway: PaymentGatewayConfig
    notifications: NotificationsConfig
    fees: FeesConfig
    tax: TaxConfig
    refunds: RefundsConfig
    payments: PaymentsConfig
    escrow: EscrowConfig
    capacity: CapacityConfig
    limits: LimitsConfig
    scoring: ScoringConfig


@dataclass(frozen=True)
class EngineConfig:
    """
    Business rules handed explicitly to every engine component.

    Built once from Settings at startup; tests build their own.
    """

    fees: FeesConfig
    tax: TaxConfig
    refunds: RefundsConfig
    payments: PaymentsConfig
    escrow: EscrowConfig
    capacity: CapacityConfig
    limits: LimitsConfig
    scoring: ScoringConfig

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            fees=settings.fees,
            tax=settings.tax,
            refunds=settings.refunds,
            payments=settings.payments,
            escrow=settings.escrow,
            capacity=settings.capacity,
            limits=settings.limits,
            scoring=settings.scoring,
        )


def get_config_path() -> Path:
    """Determine configuration file path."""
    return resolve_config_path(
        env_var_name="CONFIG_PATH",
        default_filename="config.yaml",
    )


get_settings, clear_settings_cache = create_settings_loader(Settings, get_config_path)  # nosemgrep


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return get_safe_model_config(get_settings(), REDACTION_MARKER)
