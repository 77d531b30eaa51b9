"""Webhook store contract shared by the in-memory and PostgreSQL backends."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Sequence

from webhook_service.domain.models import (
    ApiKey,
    DeadLetterWebhook,
    DeliveryFilter,
    DeliveryStatus,
    Webhook,
    WebhookDelivery,
    WebhookFilter,
    WebhookQueueItem,
    validate_events,
    validate_webhook_url,
)

# Fields callers may change through update_webhook / update_api_key.
WEBHOOK_MUTABLE_FIELDS = frozenset({"url", "events", "active"})
API_KEY_MUTABLE_FIELDS = frozenset({"name", "permissions", "active", "expires_at", "last_used_at"})


def normalize_webhook_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Drop unknown/None fields and re-validate url and events."""
    clean = {k: v for k, v in changes.items() if k in WEBHOOK_MUTABLE_FIELDS and v is not None}
    if "url" in clean:
        clean["url"] = validate_webhook_url(clean["url"])
    if "events" in clean:
        clean["events"] = validate_events(clean["events"])
    return clean


class WebhookStore(ABC):
    """Single source of truth for registrations, deliveries, queue and dead letters.

    Lookups return ``None`` / ``False`` / empty collections on a miss and never
    raise for "not found". Invalid webhook data raises
    :class:`~webhook_service.core.exceptions.ValidationFailedError`.
    """

    # -- webhooks -----------------------------------------------------------

    @abstractmethod
    async def create_webhook(self, webhook: Webhook) -> Webhook: ...

    @abstractmethod
    async def get_webhook_by_id(self, webhook_id: str) -> Webhook | None: ...

    @abstractmethod
    async def get_all_webhooks(self, filter: WebhookFilter | None = None) -> list[Webhook]: ...

    @abstractmethod
    async def get_webhooks_by_event(self, event: str) -> list[Webhook]:
        """Active webhooks subscribed to *event* directly or through the wildcard."""

    @abstractmethod
    async def update_webhook(self, webhook_id: str, changes: dict[str, Any]) -> Webhook | None: ...

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> bool: ...

    @abstractmethod
    async def record_webhook_attempt(
        self, webhook_id: str, *, success: bool, at: datetime
    ) -> Webhook | None:
        """Atomically bump delivery/failure counters and the last-delivery fields."""

    # -- api keys -----------------------------------------------------------

    @abstractmethod
    async def create_api_key(self, api_key: ApiKey) -> ApiKey: ...

    @abstractmethod
    async def get_api_key_by_id(self, key_id: str) -> ApiKey | None: ...

    @abstractmethod
    async def get_api_key_by_value(self, value: str) -> ApiKey | None: ...

    @abstractmethod
    async def get_all_api_keys(self) -> list[ApiKey]: ...

    @abstractmethod
    async def update_api_key(self, key_id: str, changes: dict[str, Any]) -> ApiKey | None: ...

    @abstractmethod
    async def delete_api_key(self, key_id: str) -> bool: ...

    # -- deliveries ---------------------------------------------------------

    @abstractmethod
    async def record_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery: ...

    @abstractmethod
    async def update_delivery(
        self, delivery_id: str, changes: dict[str, Any]
    ) -> WebhookDelivery | None: ...

    @abstractmethod
    async def get_all_deliveries(
        self, filter: DeliveryFilter | None = None
    ) -> list[WebhookDelivery]:
        """Deliveries matching *filter*, newest first."""

    @abstractmethod
    async def get_delivery_by_idempotency_key(self, key: str) -> WebhookDelivery | None:
        """Most recent delivery recorded with *key*."""

    @abstractmethod
    async def delete_deliveries_before(
        self, cutoff: datetime, *, status: DeliveryStatus
    ) -> int: ...

    # -- idempotency claims -------------------------------------------------

    @abstractmethod
    async def claim_idempotency_key(self, key: str, *, event: str, at: datetime) -> bool:
        """Record *key* as used. Only the first caller for a key gets True."""

    @abstractmethod
    async def delete_idempotency_keys_before(self, cutoff: datetime) -> int: ...

    # -- live queue ---------------------------------------------------------

    @abstractmethod
    async def get_queue(self) -> list[WebhookQueueItem]:
        """All live items ordered by priority desc, scheduled_for asc."""

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> WebhookQueueItem | None: ...

    @abstractmethod
    async def enqueue(self, item: WebhookQueueItem) -> WebhookQueueItem: ...

    @abstractmethod
    async def dequeue_ready(
        self, now: datetime, *, limit: int = 100
    ) -> list[WebhookQueueItem]:
        """Claim unclaimed items due at *now*; claimed items are skipped by other passes."""

    @abstractmethod
    async def update_queue_item(self, item: WebhookQueueItem) -> WebhookQueueItem | None:
        """Persist retry bookkeeping and release the claim."""

    @abstractmethod
    async def remove_from_queue(self, item_id: str) -> bool: ...

    @abstractmethod
    async def reclaim_expired_claims(self, locked_before: datetime) -> int:
        """Release claims older than *locked_before* (e.g. after a crash)."""

    # -- dead letter --------------------------------------------------------

    @abstractmethod
    async def get_dead_letter_queue(self) -> list[DeadLetterWebhook]: ...

    @abstractmethod
    async def get_dead_letter_by_id(self, entry_id: str) -> DeadLetterWebhook | None: ...

    @abstractmethod
    async def move_to_dead_letter(
        self,
        item: WebhookQueueItem,
        reason: str,
        attempts: Sequence[WebhookDelivery],
    ) -> DeadLetterWebhook:
        """Archive *item* with its attempts and drop it from the live queue."""

    @abstractmethod
    async def remove_from_dead_letter(self, entry_id: str) -> bool: ...

    async def close(self) -> None:
        """Release backend resources."""
