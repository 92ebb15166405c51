"""Engine error taxonomy and FastAPI exception handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from service_commons.exceptions import ServiceError
from service_commons.exceptions import (
    register_exception_handlers as register_common_exception_handlers,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

from engagement_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = [
    "AuthorizationError",
    "CapacityExceededError",
    "DuplicatePaymentError",
    "GatewayError",
    "NotFoundError",
    "ServiceError",
    "StateConflictError",
    "ValidationError",
    "register_exception_handlers",
]


class ValidationError(ServiceError):
    """Malformed or out-of-range input."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(error, message, 400, details)


class AuthorizationError(ServiceError):
    """Caller lacks the ownership or role required for the action."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("FORBIDDEN", message, 403, details)


class NotFoundError(ServiceError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            "NOT_FOUND",
            f"{entity} not found",
            404,
            {"entity": entity.lower(), "id": entity_id},
        )


class StateConflictError(ServiceError):
    """Transition not legal from the current status."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_STATUS", message, 409, details)


class CapacityExceededError(ServiceError):
    """Provider is at its maximum active load."""

    def __init__(self, provider_id: str, active_count: int, max_active: int) -> None:
        super().__init__(
            "CAPACITY_EXCEEDED",
            f"Provider already has {active_count}/{max_active} active requests",
            409,
            {"provider_id": provider_id, "active_count": active_count, "max_active": max_active},
        )


class DuplicatePaymentError(ServiceError):
    """A live payment already exists for the request."""

    def __init__(self, request_id: str) -> None:
        super().__init__(
            "DUPLICATE_PAYMENT",
            "A payment already exists for this request",
            409,
            {"request_id": request_id},
        )


class GatewayError(ServiceError):
    """Third-party gateway call failed or timed out."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("PAYMENT_GATEWAY_UNAVAILABLE", message, 502, details)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (404/405 from the router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    register_common_exception_handlers(
        app,
        ServiceError,
        service_error_handler,
        unhandled_exception_handler,
    )
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
