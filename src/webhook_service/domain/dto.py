"""Pydantic DTOs for the HTTP layer."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from webhook_service.domain.models import (
    ApiKey,
    DeadLetterWebhook,
    DeliveryStatus,
    QueueStats,
    Webhook,
    WebhookDelivery,
    WebhookQueueItem,
)


class WebhookCreateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    events: list[str] = Field(min_length=1)
    active: bool = True
    secret: str | None = None


class WebhookUpdateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    events: list[str] | None = None
    active: bool | None = None


class TriggerDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: str = Field(min_length=1)
    data: Any = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)


class ApiKeyCreateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    permissions: list[str] | None = None
    expires_at: datetime | None = None


class WebhookView(BaseModel):
    """Public projection of a webhook; never carries the secret."""

    id: str
    url: str
    events: list[str]
    active: bool
    delivery_count: int
    failure_count: int
    last_delivery_at: datetime | None
    last_delivery_status: DeliveryStatus | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> "WebhookView":
        return cls.model_validate(webhook.model_dump(exclude={"secret"}))


class ApiKeyView(BaseModel):
    """Public projection of an API key; never carries the key value."""

    id: str
    name: str
    permissions: list[str]
    active: bool
    expires_at: datetime | None
    last_used_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_api_key(cls, api_key: ApiKey) -> "ApiKeyView":
        return cls.model_validate(api_key.model_dump(exclude={"key"}))


class QueueItemView(BaseModel):
    id: str
    webhook_id: str
    event: str
    priority: int
    scheduled_for: datetime
    retry_count: int
    max_retries: int
    in_flight: bool
    last_error: str | None
    created_at: datetime

    @classmethod
    def from_item(cls, item: WebhookQueueItem) -> "QueueItemView":
        return cls(
            id=item.id,
            webhook_id=item.webhook_id,
            event=item.event,
            priority=item.priority,
            scheduled_for=item.scheduled_for,
            retry_count=item.retry_count,
            max_retries=item.max_retries,
            in_flight=item.locked_at is not None,
            last_error=item.last_error,
            created_at=item.created_at,
        )


class DeadLetterView(BaseModel):
    id: str
    webhook_id: str
    event: str
    failure_reason: str
    last_attempt_at: datetime
    delivery_attempts: int
    created_at: datetime

    @classmethod
    def from_dead_letter(cls, entry: DeadLetterWebhook) -> "DeadLetterView":
        return cls(
            id=entry.id,
            webhook_id=entry.webhook_id,
            event=entry.event,
            failure_reason=entry.failure_reason,
            last_attempt_at=entry.last_attempt_at,
            delivery_attempts=len(entry.delivery_attempts),
            created_at=entry.created_at,
        )


class DeliverySummary(BaseModel):
    id: str
    webhook_id: str
    status: DeliveryStatus
    attempt_count: int
    created_at: datetime

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> "DeliverySummary":
        return cls(
            id=delivery.id,
            webhook_id=delivery.webhook_id,
            status=delivery.status,
            attempt_count=delivery.attempt_count,
            created_at=delivery.created_at,
        )


class TriggerResult(BaseModel):
    triggered: int
    queued: int
    idempotency_key: str
    duplicate: bool = False
    existing_delivery: DeliverySummary | None = None
    queue_stats: QueueStats
