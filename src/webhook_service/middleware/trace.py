"""Middleware binding trace_id / request_id to the structlog context."""
from __future__ import annotations

import time
from typing import Any, Mapping
from uuid import UUID, uuid4

import structlog
from aiohttp import web
from aiohttp.typedefs import Handler

TRACE_ID_HEADER = "X-Trace-Id"
REQUEST_ID_HEADER = "X-Request-Id"

logger = structlog.get_logger(__name__)

SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-auth-token",
        "x-webhook-signature",
    }
)
SENSITIVE_QUERY_PARAMS = frozenset({"api_key"})
REDACTED = "***"


def is_valid_uuid(value: str) -> bool:
    try:
        UUID(value)
        return True
    except (ValueError, AttributeError):
        return False


def get_safe_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Headers with sensitive values dropped."""
    return {k: v for k, v in headers.items() if k.lower() not in SENSITIVE_HEADERS}


def get_safe_query(request: web.Request) -> dict[str, str] | None:
    if not request.query:
        return None
    return {
        k: (REDACTED if k.lower() in SENSITIVE_QUERY_PARAMS else v)
        for k, v in request.query.items()
    }


def _incoming_id(request: web.Request, header: str) -> str:
    value = request.headers.get(header)
    return value if value and is_valid_uuid(value) else str(uuid4())


def create_trace_middleware(service_name: str):
    """Create trace middleware with specified service name."""

    @web.middleware
    async def trace_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        start_time = time.perf_counter()
        trace_id = _incoming_id(request, TRACE_ID_HEADER)
        request_id = _incoming_id(request, REQUEST_ID_HEADER)
        request["trace_id"] = trace_id
        request["request_id"] = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            trace_id=trace_id,
            request_id=request_id,
            service=service_name,
            method=request.method,
            path=request.path,
        )

        request_info: dict[str, Any] = {
            "query": get_safe_query(request),
            "remote": request.remote,
            "headers": get_safe_headers(request.headers),
        }
        if request.content_length:
            request_info["content_length"] = request.content_length
        logger.info("Incoming request", **request_info)

        try:
            response = await handler(request)
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            log = logger.warning if response.status >= 400 else logger.info
            log(
                "Request completed",
                status_code=response.status,
                duration_ms=duration_ms,
            )
            response.headers[TRACE_ID_HEADER] = trace_id
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except web.HTTPException as exc:
            logger.warning(
                "Request failed with HTTP exception",
                status_code=exc.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=exc.text or exc.reason,
            )
            raise
        except Exception as exc:
            logger.error(
                "Request failed with exception",
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    return trace_middleware
