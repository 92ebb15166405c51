"""Shared request validation helpers for engagement routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from engagement_service.core.exceptions import AuthorizationError, ValidationError
from engagement_service.models import Actor, ActorRole

if TYPE_CHECKING:
    from fastapi import Request

ACTOR_ID_HEADER = "x-actor-id"
ACTOR_ROLE_HEADER = "x-actor-role"


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ValidationError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Request body is not valid JSON", None, "INVALID_JSON") from exc

    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", None, "INVALID_JSON")

    return data


async def read_json_body(request: Request) -> dict[str, Any]:
    """Read the body, treating an empty one as an empty object."""
    body = await request.body()
    return {} if body.strip() == b"" else parse_json_body(body)


def get_actor(request: Request) -> Actor:
    """Caller identity from the headers set by the upstream authorization layer."""
    actor_id = request.headers.get(ACTOR_ID_HEADER, "").strip()
    role_raw = request.headers.get(ACTOR_ROLE_HEADER, "").strip().lower()
    if not actor_id:
        raise AuthorizationError("Missing caller identity")
    try:
        role = ActorRole(role_raw)
    except ValueError as exc:
        raise AuthorizationError("Unknown caller role", {"role": role_raw}) from exc
    return Actor(actor_id=actor_id, role=role)


def require_str(data: dict[str, Any], field_name: str) -> str:
    """Extract a required non-empty string field."""
    if field_name not in data or data[field_name] is None:
        raise ValidationError(f"Missing required field: {field_name}", {"field": field_name})
    value = data[field_name]
    if not isinstance(value, str):
        raise ValidationError(f"Field '{field_name}' must be a string", {"field": field_name})
    if not value.strip():
        raise ValidationError(f"Field '{field_name}' must not be empty", {"field": field_name})
    return value


def optional_str(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Field '{field_name}' must be a string", {"field": field_name})
    return value


def optional_int(data: dict[str, Any], field_name: str) -> int | None:
    """Extract an optional integer field (booleans rejected)."""
    value = data.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Field '{field_name}' must be an integer", {"field": field_name})
    return value


def optional_number(data: dict[str, Any], field_name: str) -> float | None:
    """Extract an optional numeric field (booleans rejected)."""
    value = data.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"Field '{field_name}' must be a number", {"field": field_name})
    return value


def parse_paging(request: Request) -> tuple[int | None, int]:
    """Read ``limit`` and ``offset`` query parameters."""
    limit_raw = request.query_params.get("limit")
    offset_raw = request.query_params.get("offset")

    limit: int | None = None
    offset = 0
    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ValidationError("limit must be an integer", {"field": "limit"}) from exc
        if limit <= 0:
            raise ValidationError("limit must be >= 1", {"field": "limit"})
    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ValidationError("offset must be an integer", {"field": "offset"}) from exc
        if offset < 0:
            raise ValidationError("offset must be >= 0", {"field": "offset"})
    return limit, offset
