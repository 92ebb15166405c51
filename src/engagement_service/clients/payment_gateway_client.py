"""Async HTTP client for the third-party payment gateway."""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from engagement_service.core.exceptions import GatewayError
from engagement_service.logging import get_logger

_TRANSIENT_ERRORS = (httpx.ConnectError, httpx.TimeoutException)


class PaymentGatewayClient:
    """
    Client for gateway orders, payment status, and refunds.

    Two kinds of call:
    1. Mutating calls (create_order, create_refund) are sent exactly once.
       A timeout leaves the outcome unknown, so they are never retried here.
    2. Read-only polls (fetch_payment, fetch_refund) are retried with
       exponential backoff on connection errors and timeouts.
    """

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        currency: str,
        timeout_seconds: float,
        read_retry_attempts: int,
        retry_wait_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._key_secret = key_secret
        self._currency = currency
        self._read_retry_attempts = read_retry_attempts
        self._retry_wait_seconds = retry_wait_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(key_id, key_secret),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @property
    def currency(self) -> str:
        return self._currency

    def compute_signature(self, order_id: str, gateway_payment_id: str) -> str:
        """HMAC-SHA256 hex digest of ``order_id|gateway_payment_id``."""
        message = f"{order_id}|{gateway_payment_id}".encode()
        return hmac.new(self._key_secret.encode(), message, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, gateway_payment_id: str, signature: str) -> bool:
        """Constant-time check of a checkout signature."""
        expected = self.compute_signature(order_id, gateway_payment_id)
        return hmac.compare_digest(expected, signature)

    async def create_order(self, amount: int, receipt: str) -> dict[str, Any]:
        """
        Create a gateway order for ``amount`` minor units.

        Returns:
            dict with at least ``id`` (the gateway order id) and ``status``

        Raises:
            GatewayError: on connection errors, timeouts, or non-2xx responses
        """
        response = await self._send(
            "POST",
            "/v1/orders",
            json={"amount": amount, "currency": self._currency, "receipt": receipt},
            operation="create_order",
        )
        return self._expect_success(response, "create_order")

    async def create_refund(
        self,
        gateway_payment_id: str,
        amount: int,
        notes: dict[str, str],
    ) -> dict[str, Any]:
        """
        Refund ``amount`` minor units of a captured payment.

        Sent once. On any failure the caller must treat the refund as not
        issued and leave local state untouched.
        """
        response = await self._send(
            "POST",
            f"/v1/payments/{gateway_payment_id}/refund",
            json={"amount": amount, "notes": notes},
            operation="create_refund",
        )
        return self._expect_success(response, "create_refund")

    async def fetch_payment(self, gateway_payment_id: str) -> dict[str, Any]:
        """Read the gateway's view of a payment (retried)."""
        response = await self._get_with_retry(
            f"/v1/payments/{gateway_payment_id}", operation="fetch_payment"
        )
        return self._expect_success(response, "fetch_payment")

    async def fetch_refund(self, gateway_refund_id: str) -> dict[str, Any]:
        """Read the gateway's view of a refund (retried)."""
        response = await self._get_with_retry(
            f"/v1/refunds/{gateway_refund_id}", operation="fetch_refund"
        )
        return self._expect_success(response, "fetch_refund")

    async def _get_with_retry(self, path: str, *, operation: str) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._read_retry_attempts),
                wait=wait_exponential(
                    multiplier=self._retry_wait_seconds,
                    max=self._retry_wait_seconds * 8,
                ),
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "Retrying gateway read",
                            extra={
                                "operation": operation,
                                "attempt": attempt.retry_state.attempt_number,
                            },
                        )
                    return await self._client.get(path)
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise GatewayError(
                "Cannot connect to payment gateway", {"operation": operation}
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise GatewayError("Payment gateway request failed", {"operation": operation}) from exc
        msg = "retry loop exited without a result"
        raise RuntimeError(msg)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any],
        operation: str,
    ) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            return await self._client.request(method, path, json=json)
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise GatewayError(
                "Cannot connect to payment gateway", {"operation": operation}
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={"operation": operation, "error": str(exc), "base_url": self._base_url},
            )
            raise GatewayError("Payment gateway request failed", {"operation": operation}) from exc

    def _expect_success(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        if 200 <= response.status_code < 300:
            try:
                body = response.json()
            except ValueError as exc:
                raise self._unreadable(response, operation) from exc
            if not isinstance(body, dict):
                raise self._unreadable(response, operation)
            return body

        logger = get_logger(__name__)
        logger.warning(
            "Payment gateway unexpected status",
            extra={
                "operation": operation,
                "status_code": response.status_code,
                "base_url": self._base_url,
            },
        )
        raise GatewayError(
            "Payment gateway returned unexpected status",
            {"operation": operation, "status_code": response.status_code},
        )

    def _unreadable(self, response: httpx.Response, operation: str) -> GatewayError:
        """A 2xx whose body is not a JSON object; the call's outcome is unknown."""
        logger = get_logger(__name__)
        logger.warning(
            "Payment gateway unreadable response",
            extra={
                "operation": operation,
                "status_code": response.status_code,
                "base_url": self._base_url,
            },
        )
        return GatewayError(
            f"Payment gateway returned unexpected response (status {response.status_code})",
            {"operation": operation, "status_code": response.status_code},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
