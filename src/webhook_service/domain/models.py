"""Webhook domain primitives."""
from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from webhook_service.core.exceptions import ValidationFailedError

WILDCARD_EVENT = "*"

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def generate_idempotency_key() -> str:
    return f"evt_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def validate_webhook_url(url: str) -> str:
    """Return *url* unchanged if it is an absolute http(s) URL."""
    try:
        _URL_ADAPTER.validate_python(url)
    except PydanticValidationError as exc:
        raise ValidationFailedError(
            "Invalid URL format", details={"field": "url", "value": url}
        ) from exc
    return url


def validate_events(events: Iterable[str]) -> list[str]:
    """Strip, de-duplicate and require at least one event name."""
    normalized = [e.strip() for e in events if e and e.strip()]
    normalized = list(dict.fromkeys(normalized))
    if not normalized:
        raise ValidationFailedError(
            "events must be a non-empty list", details={"field": "events"}
        )
    return normalized


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class Webhook(BaseModel):
    id: str = Field(default_factory=lambda: new_id("wh"))
    url: str
    events: list[str]
    active: bool = True
    secret: str = Field(default_factory=lambda: f"whsec_{uuid4()}")
    delivery_count: int = 0
    failure_count: int = 0
    last_delivery_at: datetime | None = None
    last_delivery_status: DeliveryStatus | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def subscribes_to(self, event: str) -> bool:
        return event in self.events or WILDCARD_EVENT in self.events


class WebhookPayload(BaseModel):
    event: str
    data: Any = None
    timestamp: datetime = Field(default_factory=utcnow)
    idempotency_key: str = Field(default_factory=generate_idempotency_key)


class WebhookQueueItem(BaseModel):
    id: str = Field(default_factory=lambda: new_id("q"))
    webhook_id: str
    event: str
    payload: WebhookPayload
    priority: int = 0
    scheduled_for: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    max_retries: int = 3
    delivery_id: str | None = None
    locked_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WebhookDelivery(BaseModel):
    id: str = Field(default_factory=lambda: new_id("del"))
    webhook_id: str
    queue_item_id: str | None = None
    event: str
    payload: WebhookPayload
    status: DeliveryStatus = DeliveryStatus.PENDING
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    attempt_count: int = 0
    idempotency_key: str | None = None
    duration_ms: float | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeadLetterWebhook(BaseModel):
    id: str = Field(default_factory=lambda: new_id("dl"))
    webhook_id: str
    event: str
    payload: WebhookPayload
    failure_reason: str
    last_attempt_at: datetime = Field(default_factory=utcnow)
    delivery_attempts: list[WebhookDelivery] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ApiKey(BaseModel):
    id: str = Field(default_factory=lambda: new_id("key"))
    name: str
    key: str = Field(default_factory=lambda: f"ak_{uuid4().hex}")
    permissions: list[str] = Field(default_factory=lambda: ["read"])
    active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


class CircuitBreakerStats(BaseModel):
    key: str
    state: CircuitState
    failure_count: int
    open_count: int
    cooldown_seconds: float
    next_retry_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    total_blocked: int = 0


class QueueStats(BaseModel):
    pending: int
    in_flight: int
    dead_letter: int
    next_scheduled: datetime | None = None
    is_processing: bool = False


class WebhookFilter(BaseModel):
    active: bool | None = None
    event: str | None = None


class DeliveryFilter(BaseModel):
    webhook_id: str | None = None
    status: DeliveryStatus | None = None
    queue_item_id: str | None = None
    limit: int | None = None
    offset: int = 0
