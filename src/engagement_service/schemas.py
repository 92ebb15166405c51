"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_requests: int
    requests_by_status: dict[str, int]
    payments_by_status: dict[str, int]
    pending_notifications: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class AutoReleaseResponse(BaseModel):
    """Response model for POST /escrow/auto-release."""

    model_config = ConfigDict(extra="forbid")
    released: list[str]
    failed: dict[str, str]
