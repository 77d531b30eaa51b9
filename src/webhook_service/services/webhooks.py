"""Webhook domain service (registrations, trigger/dispatch, delivery history)."""
from __future__ import annotations

from typing import Any, Iterable, List

import structlog

from webhook_service.core.exceptions import NotFoundError, ValidationFailedError
from webhook_service.domain.dto import (
    DeadLetterView,
    DeliverySummary,
    QueueItemView,
    TriggerResult,
    WebhookCreateDTO,
    WebhookUpdateDTO,
)
from webhook_service.domain.models import (
    WILDCARD_EVENT,
    DeliveryFilter,
    DeliveryStatus,
    Webhook,
    WebhookDelivery,
    WebhookFilter,
    WebhookPayload,
    generate_idempotency_key,
    utcnow,
    validate_events,
)
from webhook_service.repositories.store import WebhookStore
from webhook_service.services.circuit_breaker import CircuitBreakerRegistry
from webhook_service.services.queue import WebhookQueueSystem

logger = structlog.get_logger(__name__)


class WebhookService:
    def __init__(
        self,
        store: WebhookStore,
        queue: WebhookQueueSystem,
        breakers: CircuitBreakerRegistry,
        *,
        allowed_events: Iterable[str],
    ):
        self._store = store
        self._queue = queue
        self._breakers = breakers
        self._allowed_events = frozenset(allowed_events)

    def _check_events(self, events: list[str]) -> list[str]:
        normalized = validate_events(events)
        unknown = [e for e in normalized if e != WILDCARD_EVENT and e not in self._allowed_events]
        if unknown:
            raise ValidationFailedError(
                f"Unknown event(s): {', '.join(unknown)}",
                details={"field": "events", "allowed": sorted(self._allowed_events)},
            )
        return normalized

    async def create_webhook(self, data: WebhookCreateDTO) -> Webhook:
        fields: dict[str, Any] = {
            "url": data.url,
            "events": self._check_events(data.events),
            "active": data.active,
        }
        if data.secret:
            fields["secret"] = data.secret
        webhook = await self._store.create_webhook(Webhook(**fields))
        logger.info("Webhook registered", webhook_id=webhook.id, events=webhook.events)
        return webhook

    async def get_webhook(self, webhook_id: str) -> Webhook:
        webhook = await self._store.get_webhook_by_id(webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook", webhook_id)
        return webhook

    async def list_webhooks(
        self, *, active: bool | None = None, event: str | None = None
    ) -> List[Webhook]:
        return await self._store.get_all_webhooks(WebhookFilter(active=active, event=event))

    async def update_webhook(self, webhook_id: str, data: WebhookUpdateDTO) -> Webhook:
        changes = data.model_dump(exclude_none=True)
        if "events" in changes:
            changes["events"] = self._check_events(changes["events"])
        webhook = await self._store.update_webhook(webhook_id, changes)
        if webhook is None:
            raise NotFoundError("Webhook", webhook_id)
        return webhook

    async def delete_webhook(self, webhook_id: str) -> None:
        if not await self._store.delete_webhook(webhook_id):
            raise NotFoundError("Webhook", webhook_id)
        logger.info("Webhook deleted", webhook_id=webhook_id)

    async def trigger(
        self, event: str, data: Any = None, *, idempotency_key: str | None = None
    ) -> TriggerResult:
        """Fan *event* out to every subscribed webhook, at most once per idempotency key."""
        if event not in self._allowed_events:
            raise ValidationFailedError(
                f"Unknown event: {event}",
                details={"field": "event", "allowed": sorted(self._allowed_events)},
            )
        key = idempotency_key or generate_idempotency_key()

        existing = await self._store.get_delivery_by_idempotency_key(key)
        if existing is not None:
            return await self._duplicate(event, key, existing)
        # the claim is atomic in the store; concurrent triggers with one key get one winner
        if not await self._store.claim_idempotency_key(key, event=event, at=utcnow()):
            return await self._duplicate(
                event, key, await self._store.get_delivery_by_idempotency_key(key)
            )

        webhooks = await self._store.get_webhooks_by_event(event)
        queued = 0
        if webhooks:
            payload = WebhookPayload(event=event, data=data, timestamp=utcnow(), idempotency_key=key)
            for webhook in webhooks:
                if await self._queue.deliver_webhook(
                    webhook,
                    payload,
                    async_=True,
                    max_retries=self._queue.config.max_retries,
                    priority=self._queue.config.default_priority,
                ):
                    queued += 1
        logger.info(
            "Event triggered",
            event_type=event,
            idempotency_key=key,
            triggered=len(webhooks),
            queued=queued,
        )
        return TriggerResult(
            triggered=len(webhooks),
            queued=queued,
            idempotency_key=key,
            queue_stats=await self._queue.get_queue_stats(),
        )

    async def _duplicate(
        self, event: str, key: str, existing: WebhookDelivery | None
    ) -> TriggerResult:
        logger.info(
            "Duplicate trigger ignored",
            event_type=event,
            idempotency_key=key,
            delivery_id=existing.id if existing else None,
        )
        return TriggerResult(
            triggered=0,
            queued=0,
            idempotency_key=key,
            duplicate=True,
            existing_delivery=DeliverySummary.from_delivery(existing) if existing else None,
            queue_stats=await self._queue.get_queue_stats(),
        )

    async def list_deliveries(
        self,
        *,
        webhook_id: str | None = None,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WebhookDelivery]:
        return await self._store.get_all_deliveries(
            DeliveryFilter(webhook_id=webhook_id, status=status, limit=limit, offset=offset)
        )

    async def queue_overview(self) -> dict[str, Any]:
        stats = await self._queue.get_queue_stats()
        items = await self._store.get_queue()
        dead_letters = await self._store.get_dead_letter_queue()
        return {
            "stats": stats.model_dump(mode="json"),
            "queue": [QueueItemView.from_item(i).model_dump(mode="json") for i in items],
            "dead_letter": [
                DeadLetterView.from_dead_letter(e).model_dump(mode="json") for e in dead_letters
            ],
            "circuit_breakers": {
                key: s.model_dump(mode="json") for key, s in self._breakers.get_all_stats().items()
            },
        }

    async def retry_dead_letter(self, entry_id: str) -> None:
        if not await self._queue.retry_dead_letter_webhook(entry_id):
            raise NotFoundError("Dead letter webhook", entry_id)
