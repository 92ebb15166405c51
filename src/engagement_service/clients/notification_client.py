"""Async HTTP client for the notification channel."""

from __future__ import annotations

from typing import Any

import httpx
from service_commons.exceptions import ServiceError

from engagement_service.logging import get_logger


class NotificationClient:
    """Pushes one notification per call to the delivery service."""

    def __init__(
        self,
        base_url: str,
        push_path: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._push_path = push_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def push(self, recipient_id: str, topic: str, payload: dict[str, Any]) -> None:
        """
        Deliver a notification.

        Raises:
            ServiceError: NOTIFICATION_UNAVAILABLE (502) on connection errors,
                timeouts, or non-2xx responses
        """
        logger = get_logger(__name__)
        try:
            response = await self._client.post(
                self._push_path,
                json={"recipient_id": recipient_id, "topic": topic, "payload": payload},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification service request failed",
                extra={"error": str(exc), "base_url": self._base_url, "topic": topic},
            )
            raise ServiceError(
                error="NOTIFICATION_UNAVAILABLE",
                message="Cannot reach notification service",
                status_code=502,
                details={},
            ) from exc

        if response.status_code not in (200, 201, 202, 204):
            raise ServiceError(
                error="NOTIFICATION_UNAVAILABLE",
                message="Notification service returned unexpected status",
                status_code=502,
                details={"status_code": response.status_code},
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
