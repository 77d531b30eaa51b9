"""API-key authentication for ``/api/v1`` routes (key management routes excluded)."""
from __future__ import annotations

import structlog
from aiohttp import web
from aiohttp.typedefs import Handler

from webhook_service.core.exceptions import UnauthorizedError
from webhook_service.services.dependencies import get_api_key_service

API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY_PARAM = "api_key"
PROTECTED_PREFIX = "/api/v1/"
EXEMPT_PREFIX = "/api/v1/auth/"


def create_api_key_middleware(require_api_key: bool):
    """Validate a presented API key; a missing key is only rejected when *require_api_key*."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        path = request.path
        if (
            request.method == "OPTIONS"
            or not path.startswith(PROTECTED_PREFIX)
            or path.startswith(EXEMPT_PREFIX)
        ):
            return await handler(request)

        value = request.headers.get(API_KEY_HEADER) or request.query.get(API_KEY_QUERY_PARAM)
        if not value:
            if require_api_key:
                raise UnauthorizedError("API key is required")
            return await handler(request)

        service = await get_api_key_service(request)
        api_key = await service.authenticate(value)
        request["api_key"] = api_key
        structlog.contextvars.bind_contextvars(api_key_id=api_key.id)
        return await handler(request)

    return api_key_middleware
