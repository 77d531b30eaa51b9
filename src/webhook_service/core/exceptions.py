"""Common exceptions for domain, repository and API layers."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    EXTERNAL_SERVICE = "external_service"
    INTERNAL = "internal"


class WebhookServiceError(Exception):
    """Base error for service layer."""

    status: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailedError(WebhookServiceError):
    """Raised when input violates a structural rule (bad URL, empty events...)."""

    status = 400
    code = ErrorCode.VALIDATION_ERROR
    category = ErrorCategory.VALIDATION


class NotFoundError(WebhookServiceError):
    """Raised when requested entity is missing."""

    status = 404
    code = ErrorCode.NOT_FOUND
    category = ErrorCategory.NOT_FOUND

    def __init__(self, resource: str, identifier: str | None = None):
        message = f"{resource} not found: {identifier}" if identifier else f"{resource} not found"
        super().__init__(message, details={"resource": resource, "identifier": identifier})


class UnauthorizedError(WebhookServiceError):
    """Raised when an API key is missing, unknown, inactive or expired."""

    status = 401
    code = ErrorCode.UNAUTHORIZED
    category = ErrorCategory.AUTHENTICATION


class CircuitOpenError(WebhookServiceError):
    """Raised by the circuit breaker when a destination is blocked."""

    status = 503
    code = ErrorCode.CIRCUIT_BREAKER_OPEN
    category = ErrorCategory.EXTERNAL_SERVICE

    def __init__(self, key: str, retry_at: datetime | None):
        until = retry_at.isoformat() if retry_at else "trial in progress"
        super().__init__(
            f"Circuit breaker is open for {key} (until {until})",
            details={"destination": key, "retry_at": retry_at.isoformat() if retry_at else None},
        )
        self.key = key
        self.retry_at = retry_at


class StoreError(WebhookServiceError):
    """Raised when the backing store fails."""
