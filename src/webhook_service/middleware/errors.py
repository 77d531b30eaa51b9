"""Middleware converting exceptions into the ``{"success": false, "error": ...}`` envelope."""
from __future__ import annotations

from typing import Any

import structlog
from aiohttp import web
from aiohttp.typedefs import Handler

from webhook_service.core.exceptions import ErrorCategory, ErrorCode, WebhookServiceError
from webhook_service.domain.models import utcnow

logger = structlog.get_logger(__name__)

_HTTP_STATUS_ERRORS: dict[int, tuple[ErrorCode, ErrorCategory]] = {
    400: (ErrorCode.BAD_REQUEST, ErrorCategory.VALIDATION),
    401: (ErrorCode.UNAUTHORIZED, ErrorCategory.AUTHENTICATION),
    403: (ErrorCode.FORBIDDEN, ErrorCategory.AUTHORIZATION),
    404: (ErrorCode.NOT_FOUND, ErrorCategory.NOT_FOUND),
    405: (ErrorCode.METHOD_NOT_ALLOWED, ErrorCategory.VALIDATION),
    409: (ErrorCode.CONFLICT, ErrorCategory.VALIDATION),
    413: (ErrorCode.BAD_REQUEST, ErrorCategory.VALIDATION),
    415: (ErrorCode.BAD_REQUEST, ErrorCategory.VALIDATION),
    503: (ErrorCode.SERVICE_UNAVAILABLE, ErrorCategory.EXTERNAL_SERVICE),
}


def error_response(
    request: web.Request,
    *,
    status: int,
    code: ErrorCode,
    category: ErrorCategory,
    message: str,
    details: dict[str, Any] | None = None,
) -> web.Response:
    error: dict[str, Any] = {
        "code": code.value,
        "category": category.value,
        "message": message,
        "timestamp": utcnow().isoformat(),
        "path": request.path,
        "request_id": request.get("request_id"),
    }
    if details:
        error["details"] = details
    return web.json_response({"success": False, "error": error}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except WebhookServiceError as exc:
        if exc.status >= 500:
            logger.error("Service error", code=exc.code.value, error=exc.message)
        return error_response(
            request,
            status=exc.status,
            code=exc.code,
            category=exc.category,
            message=exc.message,
            details=exc.details,
        )
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        code, category = _HTTP_STATUS_ERRORS.get(
            exc.status, (ErrorCode.INTERNAL_SERVER_ERROR, ErrorCategory.INTERNAL)
        )
        message = exc.reason if not exc.text or exc.text.startswith(f"{exc.status}:") else exc.text
        return error_response(
            request, status=exc.status, code=code, category=category, message=message
        )
    except Exception:
        logger.exception("Unhandled error while processing request")
        return error_response(
            request,
            status=500,
            code=ErrorCode.INTERNAL_SERVER_ERROR,
            category=ErrorCategory.INTERNAL,
            message="Internal server error",
        )
