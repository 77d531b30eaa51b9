"""Retry/backoff state machine that drives queued deliveries to completion or dead letter."""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Literal

import structlog

from webhook_service.core.exceptions import CircuitOpenError
from webhook_service.domain.models import (
    DeliveryFilter,
    DeliveryStatus,
    QueueStats,
    Webhook,
    WebhookDelivery,
    WebhookPayload,
    WebhookQueueItem,
    utcnow,
)
from webhook_service.repositories.store import WebhookStore
from webhook_service.services.circuit_breaker import CircuitBreakerRegistry, destination_key
from webhook_service.services.delivery import DeliveryExecutor, DeliveryResult
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

Outcome = Literal["succeeded", "retried", "dead_lettered", "dropped"]

MISSING_WEBHOOK_ERROR = "Webhook not found or inactive"


def calculate_backoff(
    retry_count: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds until the next attempt: ``base * 2**retry_count`` capped, then +/- ``jitter`` share."""
    delay = min(base * (2 ** retry_count), cap)
    if jitter:
        delay += delay * jitter * (2 * rand() - 1)
    return max(0.0, delay)


@dataclass(frozen=True)
class QueueConfig:
    max_retries: int = 3
    default_priority: int = 0
    dead_letter_retry_priority: int = 10
    retry_base_seconds: float = 60.0
    retry_max_seconds: float = 3600.0
    retry_jitter: float = 0.1
    batch_size: int = 100
    max_concurrency: int = 10
    target_max_concurrency: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueConfig":
        return cls(
            max_retries=settings.webhook_max_retries,
            default_priority=settings.webhook_default_priority,
            dead_letter_retry_priority=settings.webhook_dead_letter_retry_priority,
            retry_base_seconds=settings.webhook_retry_base_seconds,
            retry_max_seconds=settings.webhook_retry_max_seconds,
            retry_jitter=settings.webhook_retry_jitter,
            batch_size=settings.webhook_dispatch_batch_size,
            max_concurrency=settings.webhook_dispatch_max_concurrency,
            target_max_concurrency=settings.webhook_target_max_concurrency,
        )


@dataclass
class ProcessSummary:
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    dropped: int = 0
    errors: int = 0

    def __str__(self) -> str:
        return (
            f"claimed={self.claimed} succeeded={self.succeeded} retried={self.retried} "
            f"dead_lettered={self.dead_lettered} dropped={self.dropped} errors={self.errors}"
        )


class WebhookQueueSystem:
    """Owns the live queue lifecycle on top of a :class:`WebhookStore`.

    Items are claimed through ``store.dequeue_ready`` so concurrent passes (in
    this process or in other replicas sharing the postgres store) never work on
    the same item. Within one process, passes are additionally serialised.
    """

    def __init__(
        self,
        store: WebhookStore,
        executor: DeliveryExecutor,
        breakers: CircuitBreakerRegistry,
        config: QueueConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        rand: Callable[[], float] = random.random,
    ):
        self._store = store
        self._executor = executor
        self._breakers = breakers
        self._config = config or QueueConfig()
        self._clock = clock
        self._rand = rand
        self._pass_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(self._config.max_concurrency)
        self._target_slots: dict[str, asyncio.Semaphore] = {}
        self._processing = False

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def deliver_webhook(
        self,
        webhook: Webhook,
        payload: WebhookPayload,
        *,
        async_: bool = True,
        max_retries: int | None = None,
        priority: int | None = None,
    ) -> bool:
        """Queue a delivery (default) or, with ``async_=False``, attempt it once right away.

        The async return value means "accepted into the queue", not "delivered".
        """
        if not async_:
            return await self._deliver_now(webhook, payload)
        await self._enqueue(
            webhook,
            payload,
            max_retries=max_retries if max_retries is not None else self._config.max_retries,
            priority=priority if priority is not None else self._config.default_priority,
        )
        return True

    async def _enqueue(
        self, webhook: Webhook, payload: WebhookPayload, *, max_retries: int, priority: int
    ) -> WebhookQueueItem:
        now = self._clock()
        item = WebhookQueueItem(
            webhook_id=webhook.id,
            event=payload.event,
            payload=payload,
            priority=priority,
            scheduled_for=now,
            max_retries=max_retries,
        )
        receipt = WebhookDelivery(
            webhook_id=webhook.id,
            queue_item_id=item.id,
            event=payload.event,
            payload=payload,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            idempotency_key=payload.idempotency_key,
        )
        item.delivery_id = receipt.id
        await self._store.record_delivery(receipt)
        await self._store.enqueue(item)
        logger.info(
            "Webhook delivery queued",
            queue_item_id=item.id,
            webhook_id=webhook.id,
            event_type=payload.event,
            priority=priority,
            idempotency_key=payload.idempotency_key,
        )
        return item

    async def _deliver_now(self, webhook: Webhook, payload: WebhookPayload) -> bool:
        attempt = WebhookDelivery(
            webhook_id=webhook.id,
            event=payload.event,
            payload=payload,
            attempt_count=1,
            idempotency_key=payload.idempotency_key,
        )
        result = await self._attempt(webhook, payload, delivery_id=attempt.id)
        await self._record_attempt(attempt, result)
        return result.success

    async def _attempt(
        self, webhook: Webhook, payload: WebhookPayload, *, delivery_id: str
    ) -> DeliveryResult:
        """One breaker-guarded executor call; breaker rejections become failed results."""
        key = destination_key(webhook.url)
        try:
            self._breakers.before_call(key)
        except CircuitOpenError as exc:
            logger.info(
                "Delivery blocked by open circuit",
                webhook_id=webhook.id,
                destination=key,
                retry_at=exc.retry_at.isoformat(),
            )
            return DeliveryResult(success=False, error_message=exc.message)
        try:
            result = await self._executor.execute(webhook, payload, delivery_id=delivery_id)
        except BaseException:
            # cancellation too; a half-open trial must be released
            self._breakers.record_failure(key)
            raise
        if result.success:
            self._breakers.record_success(key)
        else:
            self._breakers.record_failure(key)
        return result

    async def _record_attempt(self, attempt: WebhookDelivery, result: DeliveryResult) -> WebhookDelivery:
        attempt.status = DeliveryStatus.SUCCESS if result.success else DeliveryStatus.FAILED
        attempt.status_code = result.status_code
        attempt.response_body = result.response_body
        attempt.error_message = result.error_message
        attempt.duration_ms = result.duration_ms
        recorded = await self._store.record_delivery(attempt)
        await self._store.record_webhook_attempt(
            attempt.webhook_id, success=result.success, at=self._clock()
        )
        return recorded

    def _target_slot(self, key: str) -> asyncio.Semaphore:
        slot = self._target_slots.get(key)
        if slot is None:
            slot = asyncio.Semaphore(self._config.target_max_concurrency)
            self._target_slots[key] = slot
        return slot

    async def process_queue(self, now: datetime | None = None) -> ProcessSummary:
        """Run one processing pass over items due at *now*."""
        async with self._pass_lock:
            self._processing = True
            try:
                now = now or self._clock()
                items = await self._store.dequeue_ready(now, limit=self._config.batch_size)
                summary = ProcessSummary(claimed=len(items))
                if not items:
                    return summary
                outcomes = await asyncio.gather(
                    *(self._process_item(item, now) for item in items),
                    return_exceptions=True,
                )
                for item, outcome in zip(items, outcomes):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    if isinstance(outcome, BaseException):
                        # the claim stays in place until the reclaim worker releases it
                        summary.errors += 1
                        logger.error(
                            "Queue item processing failed",
                            queue_item_id=item.id,
                            webhook_id=item.webhook_id,
                            exc_info=outcome,
                        )
                        continue
                    setattr(summary, outcome, getattr(summary, outcome) + 1)
                logger.info("Queue pass finished", summary=str(summary))
                return summary
            finally:
                self._processing = False

    async def _process_item(self, item: WebhookQueueItem, now: datetime) -> Outcome:
        webhook = await self._store.get_webhook_by_id(item.webhook_id)
        if webhook is None or not webhook.active:
            await self._store.remove_from_queue(item.id)
            await self._finalize_receipt(
                item, DeliveryStatus.FAILED, error_message=MISSING_WEBHOOK_ERROR
            )
            logger.warning(
                "Dropped queue item for missing or inactive webhook",
                queue_item_id=item.id,
                webhook_id=item.webhook_id,
            )
            return "dropped"

        attempt = WebhookDelivery(
            webhook_id=webhook.id,
            queue_item_id=item.id,
            event=item.event,
            payload=item.payload,
            attempt_count=item.retry_count + 1,
            idempotency_key=item.payload.idempotency_key,
        )
        # destination slot first: items waiting on a busy receiver hold no global slot
        async with self._target_slot(destination_key(webhook.url)):
            async with self._slots:
                result = await self._attempt(
                    webhook, item.payload, delivery_id=item.delivery_id or attempt.id
                )
        await self._record_attempt(attempt, result)

        if result.success:
            await self._finalize_receipt(
                item,
                DeliveryStatus.SUCCESS,
                attempt_count=attempt.attempt_count,
                status_code=result.status_code,
                response_body=result.response_body,
            )
            await self._store.remove_from_queue(item.id)
            logger.info(
                "Webhook delivered",
                queue_item_id=item.id,
                webhook_id=webhook.id,
                attempt=attempt.attempt_count,
                status_code=result.status_code,
            )
            return "succeeded"

        return await self._handle_failure(item, attempt, result, now)

    async def _handle_failure(
        self,
        item: WebhookQueueItem,
        attempt: WebhookDelivery,
        result: DeliveryResult,
        now: datetime,
    ) -> Outcome:
        item.retry_count += 1
        item.last_error = result.error_message
        if item.retry_count < item.max_retries:
            delay = calculate_backoff(
                item.retry_count,
                self._config.retry_base_seconds,
                self._config.retry_max_seconds,
                self._config.retry_jitter,
                self._rand,
            )
            item.scheduled_for = now + timedelta(seconds=delay)
            await self._store.update_queue_item(item)
            logger.info(
                "Webhook delivery rescheduled",
                queue_item_id=item.id,
                webhook_id=item.webhook_id,
                retry_count=item.retry_count,
                max_retries=item.max_retries,
                scheduled_for=item.scheduled_for.isoformat(),
                error=result.error_message,
            )
            return "retried"

        attempts = await self._store.get_all_deliveries(
            DeliveryFilter(queue_item_id=item.id, status=DeliveryStatus.FAILED)
        )
        attempts = [a for a in reversed(attempts) if a.id != item.delivery_id]
        reason = f"Max retries exceeded: {result.error_message or 'unknown error'}"
        entry = await self._store.move_to_dead_letter(item, reason, attempts)
        await self._finalize_receipt(
            item,
            DeliveryStatus.FAILED,
            attempt_count=attempt.attempt_count,
            status_code=result.status_code,
            error_message=reason,
        )
        logger.warning(
            "Webhook moved to dead letter queue",
            queue_item_id=item.id,
            dead_letter_id=entry.id,
            webhook_id=item.webhook_id,
            attempts=len(attempts),
            reason=reason,
        )
        return "dead_lettered"

    async def _finalize_receipt(
        self, item: WebhookQueueItem, status: DeliveryStatus, **changes: object
    ) -> None:
        if item.delivery_id is None:
            return
        await self._store.update_delivery(item.delivery_id, {"status": status, **changes})

    async def retry_dead_letter_webhook(self, entry_id: str) -> bool:
        """Re-enqueue a dead letter as a fresh item; ``False`` if it or its webhook is gone."""
        entry = await self._store.get_dead_letter_by_id(entry_id)
        if entry is None:
            return False
        webhook = await self._store.get_webhook_by_id(entry.webhook_id)
        if webhook is None:
            return False
        # removal is the claim: of concurrent retries only one gets True
        if not await self._store.remove_from_dead_letter(entry_id):
            return False
        item = await self._enqueue(
            webhook,
            entry.payload,
            max_retries=self._config.max_retries,
            priority=self._config.dead_letter_retry_priority,
        )
        logger.info(
            "Dead letter re-queued",
            dead_letter_id=entry_id,
            queue_item_id=item.id,
            webhook_id=webhook.id,
        )
        return True

    async def get_queue_stats(self) -> QueueStats:
        queue = await self._store.get_queue()
        dead_letters = await self._store.get_dead_letter_queue()
        return QueueStats(
            pending=len(queue),
            in_flight=sum(1 for item in queue if item.locked_at is not None),
            dead_letter=len(dead_letters),
            next_scheduled=min((item.scheduled_for for item in queue), default=None),
            is_processing=self._processing,
        )
