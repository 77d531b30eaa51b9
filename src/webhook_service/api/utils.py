"""Helper utilities for API handlers."""
from __future__ import annotations

from typing import Any, TypeVar

from aiohttp import web
from pydantic import BaseModel, ValidationError

from webhook_service.core.exceptions import ValidationFailedError

TModel = TypeVar("TModel", bound=BaseModel)

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse JSON body from request, raising HTTPBadRequest on invalid input."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data


async def parse_body(request: web.Request, model: type[TModel]) -> TModel:
    body = await read_json(request)
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise ValidationFailedError(
            "Request validation failed",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def parse_bool(value: str | None, label: str) -> bool | None:
    if value is None or value == "":
        return None
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationFailedError(f"Invalid {label}: expected true or false", details={"field": label})


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", str(default_limit)))
        offset = int(query.get("offset", "0"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="limit and offset must be integers") from exc
    if limit <= 0:
        limit = default_limit
    return min(limit, max_limit), max(offset, 0)


def success_response(data: Any, *, status: int = 200, **extra: Any) -> web.Response:
    return web.json_response({"success": True, "data": data, **extra}, status=status)
