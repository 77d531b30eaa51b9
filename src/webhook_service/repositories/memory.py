"""In-memory webhook store (default backend, used by tests)."""
from __future__ import annotations

import asyncio
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
    utcnow,
    validate_events,
    validate_webhook_url,
)
from webhook_service.repositories.store import (
    API_KEY_MUTABLE_FIELDS,
    WebhookStore,
    normalize_webhook_changes,
)


def _queue_order(item: WebhookQueueItem) -> tuple[int, datetime, datetime]:
    return (-item.priority, item.scheduled_for, item.created_at)


class InMemoryWebhookStore(WebhookStore):
    """Dict-backed store. Returned models are copies; callers never alias internal state."""

    def __init__(self) -> None:
        self._webhooks: dict[str, Webhook] = {}
        self._api_keys: dict[str, ApiKey] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._queue: dict[str, WebhookQueueItem] = {}
        self._dead_letters: dict[str, DeadLetterWebhook] = {}
        self._idempotency_keys: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    # -- webhooks -----------------------------------------------------------

    async def create_webhook(self, webhook: Webhook) -> Webhook:
        validate_webhook_url(webhook.url)
        stored = webhook.model_copy(update={"events": validate_events(webhook.events)}, deep=True)
        async with self._lock:
            self._webhooks[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_webhook_by_id(self, webhook_id: str) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        return webhook.model_copy(deep=True) if webhook else None

    async def get_all_webhooks(self, filter: WebhookFilter | None = None) -> list[Webhook]:
        items = sorted(self._webhooks.values(), key=lambda w: w.created_at)
        if filter is not None:
            if filter.active is not None:
                items = [w for w in items if w.active is filter.active]
            if filter.event:
                items = [w for w in items if filter.event in w.events]
        return [w.model_copy(deep=True) for w in items]

    async def get_webhooks_by_event(self, event: str) -> list[Webhook]:
        items = sorted(self._webhooks.values(), key=lambda w: w.created_at)
        return [w.model_copy(deep=True) for w in items if w.active and w.subscribes_to(event)]

    async def update_webhook(self, webhook_id: str, changes: dict[str, Any]) -> Webhook | None:
        clean = normalize_webhook_changes(changes)
        async with self._lock:
            current = self._webhooks.get(webhook_id)
            if current is None:
                return None
            updated = current.model_copy(update={**clean, "updated_at": utcnow()}, deep=True)
            self._webhooks[webhook_id] = updated
        return updated.model_copy(deep=True)

    async def delete_webhook(self, webhook_id: str) -> bool:
        async with self._lock:
            return self._webhooks.pop(webhook_id, None) is not None

    async def record_webhook_attempt(
        self, webhook_id: str, *, success: bool, at: datetime
    ) -> Webhook | None:
        async with self._lock:
            current = self._webhooks.get(webhook_id)
            if current is None:
                return None
            current.delivery_count += 1
            if not success:
                current.failure_count += 1
            current.last_delivery_at = at
            current.last_delivery_status = DeliveryStatus.SUCCESS if success else DeliveryStatus.FAILED
            current.updated_at = utcnow()
            return current.model_copy(deep=True)

    # -- api keys -----------------------------------------------------------

    async def create_api_key(self, api_key: ApiKey) -> ApiKey:
        async with self._lock:
            self._api_keys[api_key.id] = api_key.model_copy(deep=True)
        return api_key

    async def get_api_key_by_id(self, key_id: str) -> ApiKey | None:
        api_key = self._api_keys.get(key_id)
        return api_key.model_copy(deep=True) if api_key else None

    async def get_api_key_by_value(self, value: str) -> ApiKey | None:
        for api_key in self._api_keys.values():
            if api_key.key == value:
                return api_key.model_copy(deep=True)
        return None

    async def get_all_api_keys(self) -> list[ApiKey]:
        items = sorted(self._api_keys.values(), key=lambda k: k.created_at)
        return [k.model_copy(deep=True) for k in items]

    async def update_api_key(self, key_id: str, changes: dict[str, Any]) -> ApiKey | None:
        clean = {k: v for k, v in changes.items() if k in API_KEY_MUTABLE_FIELDS}
        async with self._lock:
            current = self._api_keys.get(key_id)
            if current is None:
                return None
            updated = current.model_copy(update={**clean, "updated_at": utcnow()}, deep=True)
            self._api_keys[key_id] = updated
        return updated.model_copy(deep=True)

    async def delete_api_key(self, key_id: str) -> bool:
        async with self._lock:
            return self._api_keys.pop(key_id, None) is not None

    # -- deliveries ---------------------------------------------------------

    async def record_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        async with self._lock:
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery

    async def update_delivery(
        self, delivery_id: str, changes: dict[str, Any]
    ) -> WebhookDelivery | None:
        async with self._lock:
            current = self._deliveries.get(delivery_id)
            if current is None:
                return None
            updated = current.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            self._deliveries[delivery_id] = updated
        return updated.model_copy(deep=True)

    async def get_all_deliveries(
        self, filter: DeliveryFilter | None = None
    ) -> list[WebhookDelivery]:
        filter = filter or DeliveryFilter()
        items = list(self._deliveries.values())
        if filter.webhook_id:
            items = [d for d in items if d.webhook_id == filter.webhook_id]
        if filter.status is not None:
            items = [d for d in items if d.status == filter.status]
        if filter.queue_item_id:
            items = [d for d in items if d.queue_item_id == filter.queue_item_id]
        # dict preserves insertion order, so reversing keeps ties newest-first
        items = sorted(reversed(items), key=lambda d: d.created_at, reverse=True)
        end = filter.offset + filter.limit if filter.limit is not None else None
        return [d.model_copy(deep=True) for d in items[filter.offset:end]]

    async def get_delivery_by_idempotency_key(self, key: str) -> WebhookDelivery | None:
        matches = await self.get_all_deliveries()
        for delivery in matches:
            if delivery.idempotency_key == key:
                return delivery
        return None

    async def delete_deliveries_before(
        self, cutoff: datetime, *, status: DeliveryStatus
    ) -> int:
        async with self._lock:
            doomed = [
                d.id
                for d in self._deliveries.values()
                if d.status == status and d.created_at < cutoff
            ]
            for delivery_id in doomed:
                del self._deliveries[delivery_id]
        return len(doomed)

    # -- idempotency claims -------------------------------------------------

    async def claim_idempotency_key(self, key: str, *, event: str, at: datetime) -> bool:
        async with self._lock:
            if key in self._idempotency_keys:
                return False
            self._idempotency_keys[key] = at
        return True

    async def delete_idempotency_keys_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [k for k, at in self._idempotency_keys.items() if at < cutoff]
            for key in doomed:
                del self._idempotency_keys[key]
        return len(doomed)

    # -- live queue ---------------------------------------------------------

    async def get_queue(self) -> list[WebhookQueueItem]:
        return [i.model_copy(deep=True) for i in sorted(self._queue.values(), key=_queue_order)]

    async def get_queue_item(self, item_id: str) -> WebhookQueueItem | None:
        item = self._queue.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def enqueue(self, item: WebhookQueueItem) -> WebhookQueueItem:
        async with self._lock:
            self._queue[item.id] = item.model_copy(deep=True)
        return item

    async def dequeue_ready(
        self, now: datetime, *, limit: int = 100
    ) -> list[WebhookQueueItem]:
        async with self._lock:
            ready = sorted(
                (i for i in self._queue.values() if i.locked_at is None and i.scheduled_for <= now),
                key=_queue_order,
            )[:limit]
            for item in ready:
                item.locked_at = now
                item.updated_at = utcnow()
            return [i.model_copy(deep=True) for i in ready]

    async def update_queue_item(self, item: WebhookQueueItem) -> WebhookQueueItem | None:
        async with self._lock:
            if item.id not in self._queue:
                return None
            stored = item.model_copy(update={"locked_at": None, "updated_at": utcnow()}, deep=True)
            self._queue[item.id] = stored
        return stored.model_copy(deep=True)

    async def remove_from_queue(self, item_id: str) -> bool:
        async with self._lock:
            return self._queue.pop(item_id, None) is not None

    async def reclaim_expired_claims(self, locked_before: datetime) -> int:
        reclaimed = 0
        async with self._lock:
            for item in self._queue.values():
                if item.locked_at is not None and item.locked_at < locked_before:
                    item.locked_at = None
                    item.updated_at = utcnow()
                    reclaimed += 1
        return reclaimed

    # -- dead letter --------------------------------------------------------

    async def get_dead_letter_queue(self) -> list[DeadLetterWebhook]:
        items = sorted(self._dead_letters.values(), key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in items]

    async def get_dead_letter_by_id(self, entry_id: str) -> DeadLetterWebhook | None:
        entry = self._dead_letters.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def move_to_dead_letter(
        self,
        item: WebhookQueueItem,
        reason: str,
        attempts: Sequence[WebhookDelivery],
    ) -> DeadLetterWebhook:
        entry = DeadLetterWebhook(
            webhook_id=item.webhook_id,
            event=item.event,
            payload=item.payload,
            failure_reason=reason,
            last_attempt_at=attempts[-1].created_at if attempts else utcnow(),
            delivery_attempts=list(attempts),
            created_at=item.created_at,
        )
        async with self._lock:
            self._queue.pop(item.id, None)
            self._dead_letters[entry.id] = entry.model_copy(deep=True)
        return entry

    async def remove_from_dead_letter(self, entry_id: str) -> bool:
        async with self._lock:
            return self._dead_letters.pop(entry_id, None) is not None
