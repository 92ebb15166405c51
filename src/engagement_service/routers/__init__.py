"""API routers."""

from engagement_service.routers import directory, escrow, health, payments, requests

__all__ = ["directory", "escrow", "health", "payments", "requests"]
