"""WebhookQueueSystem state machine with an in-memory store and a stubbed executor."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from webhook_service.domain.models import (
    DeliveryFilter,
    DeliveryStatus,
    Webhook,
    WebhookPayload,
)
from webhook_service.repositories.memory import InMemoryWebhookStore
from webhook_service.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from webhook_service.services.delivery import DeliveryResult
from webhook_service.services.queue import QueueConfig, WebhookQueueSystem, calculate_backoff

FAILED = DeliveryResult(success=False, status_code=500, error_message="HTTP 500: boom")
OK = DeliveryResult(success=True, status_code=200, response_body="ok")


@pytest.fixture
def memory_store() -> InMemoryWebhookStore:
    return InMemoryWebhookStore()


@pytest.fixture
def executor() -> AsyncMock:
    executor = AsyncMock()
    executor.execute = AsyncMock(return_value=FAILED)
    return executor


def _queue(store, executor, clock, *, threshold: int = 5, **config) -> WebhookQueueSystem:
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=threshold), clock=clock
    )
    return WebhookQueueSystem(
        store,
        executor,
        breakers,
        QueueConfig(retry_base_seconds=60, retry_jitter=0.0, **config),
        clock=clock,
    )


async def _webhook(store, url: str = "https://x.test/hook") -> Webhook:
    return await store.create_webhook(Webhook(url=url, events=["resource.created"]))


def _payload() -> WebhookPayload:
    return WebhookPayload(event="resource.created", data={"id": 1})


def test_calculate_backoff_doubles_and_caps():
    assert calculate_backoff(1, 60, 3600) == 120
    assert calculate_backoff(2, 60, 3600) == 240
    assert calculate_backoff(10, 60, 3600) == 3600


def test_calculate_backoff_jitter_stays_in_band():
    low = calculate_backoff(1, 60, 3600, 0.1, rand=lambda: 0.0)
    high = calculate_backoff(1, 60, 3600, 0.1, rand=lambda: 1.0)
    assert low == pytest.approx(108)
    assert high == pytest.approx(132)


@pytest.mark.asyncio
async def test_deliver_webhook_enqueues_with_pending_receipt(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    payload = _payload()

    assert await queue.deliver_webhook(webhook, payload) is True

    [item] = await memory_store.get_queue()
    assert item.retry_count == 0
    assert item.max_retries == 3
    assert item.priority == 0
    assert item.scheduled_for == clock.now
    receipt = await memory_store.get_delivery_by_idempotency_key(payload.idempotency_key)
    assert receipt.id == item.delivery_id
    assert receipt.status is DeliveryStatus.PENDING
    executor.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_removes_item_and_finalises_receipt(memory_store, executor, clock):
    executor.execute.return_value = OK
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    await queue.deliver_webhook(webhook, _payload())
    [item] = await memory_store.get_queue()

    summary = await queue.process_queue()

    assert summary.succeeded == 1
    assert await memory_store.get_queue() == []
    deliveries = await memory_store.get_all_deliveries(DeliveryFilter(webhook_id=webhook.id))
    statuses = sorted(d.status.value for d in deliveries)
    assert statuses == ["success", "success"]
    receipt = next(d for d in deliveries if d.id == item.delivery_id)
    assert receipt.attempt_count == 1
    stored = await memory_store.get_webhook_by_id(webhook.id)
    assert stored.delivery_count == 1
    assert stored.failure_count == 0
    assert stored.last_delivery_status is DeliveryStatus.SUCCESS


@pytest.mark.asyncio
async def test_failure_reschedules_with_backoff(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    await queue.deliver_webhook(webhook, _payload())

    summary = await queue.process_queue()

    assert summary.retried == 1
    [item] = await memory_store.get_queue()
    assert item.retry_count == 1
    assert item.locked_at is None
    assert item.last_error == "HTTP 500: boom"
    assert item.scheduled_for == clock.now + timedelta(seconds=120)
    stored = await memory_store.get_webhook_by_id(webhook.id)
    assert stored.failure_count == 1

    # not due yet
    assert (await queue.process_queue()).claimed == 0


@pytest.mark.asyncio
async def test_retry_exhaustion_moves_to_dead_letter(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    await queue.deliver_webhook(webhook, _payload())
    [item] = await memory_store.get_queue()

    for _ in range(3):
        await queue.process_queue()
        clock.advance(3600)

    assert executor.execute.await_count == 3
    assert await memory_store.get_queue() == []
    [entry] = await memory_store.get_dead_letter_queue()
    assert entry.webhook_id == webhook.id
    assert len(entry.delivery_attempts) == 3
    assert [a.attempt_count for a in entry.delivery_attempts] == [1, 2, 3]
    assert all(a.status is DeliveryStatus.FAILED for a in entry.delivery_attempts)
    assert entry.failure_reason.startswith("Max retries exceeded")
    receipt = await memory_store.get_delivery_by_idempotency_key(item.payload.idempotency_key)
    assert receipt is not None
    deliveries = await memory_store.get_all_deliveries(DeliveryFilter(webhook_id=webhook.id))
    final_receipt = next(d for d in deliveries if d.id == item.delivery_id)
    assert final_receipt.status is DeliveryStatus.FAILED
    assert final_receipt.attempt_count == 3

    # further passes do not touch dead letters
    await queue.process_queue()
    assert executor.execute.await_count == 3


@pytest.mark.asyncio
async def test_retry_dead_letter_round_trip(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock, max_retries=1)
    webhook = await _webhook(memory_store)
    await queue.deliver_webhook(webhook, _payload(), max_retries=1)
    await queue.process_queue()
    [entry] = await memory_store.get_dead_letter_queue()

    assert await queue.retry_dead_letter_webhook(entry.id) is True

    assert await memory_store.get_dead_letter_by_id(entry.id) is None
    [item] = await memory_store.get_queue()
    assert item.retry_count == 0
    assert item.priority == 10
    assert item.payload == entry.payload
    assert await queue.retry_dead_letter_webhook(entry.id) is False


@pytest.mark.asyncio
async def test_retry_dead_letter_keeps_entry_when_webhook_is_gone(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    await queue.deliver_webhook(webhook, _payload(), max_retries=1)
    await queue.process_queue()
    [entry] = await memory_store.get_dead_letter_queue()
    await memory_store.delete_webhook(webhook.id)

    assert await queue.retry_dead_letter_webhook(entry.id) is False
    assert await memory_store.get_dead_letter_by_id(entry.id) is not None


@pytest.mark.asyncio
async def test_deleted_webhook_drops_item(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    await queue.deliver_webhook(webhook, _payload())
    await memory_store.update_webhook(webhook.id, {"active": False})

    summary = await queue.process_queue()

    assert summary.dropped == 1
    assert await memory_store.get_queue() == []
    assert await memory_store.get_dead_letter_queue() == []
    executor.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_open_circuit_counts_as_failed_attempt(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock, threshold=1)
    first = await _webhook(memory_store)
    second = await _webhook(memory_store, url="https://x.test/other-hook")
    await queue.deliver_webhook(first, _payload())
    clock.advance(1)
    await queue.deliver_webhook(second, _payload())

    summary = await queue.process_queue()

    assert summary.retried == 2
    assert executor.execute.await_count == 1
    [blocked] = await memory_store.get_all_deliveries(
        DeliveryFilter(webhook_id=second.id, status=DeliveryStatus.FAILED)
    )
    assert "Circuit breaker is open" in blocked.error_message
    assert (await memory_store.get_webhook_by_id(second.id)).failure_count == 1
    items = {i.webhook_id: i for i in await memory_store.get_queue()}
    assert items[second.id].retry_count == 1


@pytest.mark.asyncio
async def test_higher_priority_is_processed_first(memory_store, executor, clock):
    executor.execute.return_value = OK
    queue = _queue(memory_store, executor, clock, max_concurrency=1)
    low = await _webhook(memory_store, url="https://a.test/hook")
    high = await _webhook(memory_store, url="https://b.test/hook")
    await queue.deliver_webhook(low, _payload(), priority=0)
    await queue.deliver_webhook(high, _payload(), priority=5)

    await queue.process_queue()

    called = [call.args[0].id for call in executor.execute.await_args_list]
    assert called == [high.id, low.id]


@pytest.mark.asyncio
async def test_sync_delivery_records_single_attempt(memory_store, executor, clock):
    executor.execute.return_value = OK
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    payload = _payload()

    assert await queue.deliver_webhook(webhook, payload, async_=False) is True

    assert await memory_store.get_queue() == []
    delivery = await memory_store.get_delivery_by_idempotency_key(payload.idempotency_key)
    assert delivery.status is DeliveryStatus.SUCCESS
    assert delivery.attempt_count == 1


@pytest.mark.asyncio
async def test_queue_stats(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock)
    webhook = await _webhook(memory_store)
    assert (await queue.get_queue_stats()).next_scheduled is None

    await queue.deliver_webhook(webhook, _payload())
    stats = await queue.get_queue_stats()
    assert stats.pending == 1
    assert stats.in_flight == 0
    assert stats.dead_letter == 0
    assert stats.next_scheduled == clock.now
    assert stats.is_processing is False


class _YieldingStore(InMemoryWebhookStore):
    """Suspends on reads so concurrent callers interleave like they would against a database."""

    async def get_dead_letter_by_id(self, entry_id):
        await asyncio.sleep(0)
        return await super().get_dead_letter_by_id(entry_id)

    async def get_webhook_by_id(self, webhook_id):
        await asyncio.sleep(0)
        return await super().get_webhook_by_id(webhook_id)


@pytest.mark.asyncio
async def test_concurrent_dead_letter_retries_requeue_once(executor, clock):
    store = _YieldingStore()
    queue = _queue(store, executor, clock)
    webhook = await _webhook(store)
    await queue.deliver_webhook(webhook, _payload(), max_retries=1)
    await queue.process_queue()
    [entry] = await store.get_dead_letter_queue()

    results = await asyncio.gather(
        queue.retry_dead_letter_webhook(entry.id),
        queue.retry_dead_letter_webhook(entry.id),
    )

    assert sorted(results) == [False, True]
    assert len(await store.get_queue()) == 1
    assert await store.get_dead_letter_queue() == []


@pytest.mark.asyncio
async def test_slow_destination_does_not_stall_others(memory_store, executor, clock):
    loop = asyncio.get_running_loop()
    finished: dict[str, float] = {}

    async def execute(webhook, payload, *, delivery_id):
        if "slow.test" in webhook.url:
            await asyncio.sleep(0.2)
        finished.setdefault(webhook.url, loop.time())
        return OK

    executor.execute.side_effect = execute
    queue = _queue(memory_store, executor, clock, max_concurrency=2, target_max_concurrency=1)
    slow = await _webhook(memory_store, url="https://slow.test/hook")
    fast = await _webhook(memory_store, url="https://fast.test/hook")
    for _ in range(4):
        await queue.deliver_webhook(slow, _payload(), priority=5)
    await queue.deliver_webhook(fast, _payload())

    started = loop.time()
    summary = await queue.process_queue()

    assert summary.succeeded == 5
    assert finished[fast.url] - started < 0.15


@pytest.mark.asyncio
async def test_cancelled_half_open_trial_reopens_circuit(memory_store, executor, clock):
    queue = _queue(memory_store, executor, clock, threshold=1)
    webhook = await _webhook(memory_store)
    assert await queue.deliver_webhook(webhook, _payload(), async_=False) is False
    clock.advance(31)

    executor.execute.side_effect = asyncio.CancelledError
    with pytest.raises(asyncio.CancelledError):
        await queue.deliver_webhook(webhook, _payload(), async_=False)

    # the trial slot was released: once the longer cool-down passes a new trial is admitted
    executor.execute.side_effect = None
    executor.execute.return_value = OK
    clock.advance(61)
    assert await queue.deliver_webhook(webhook, _payload(), async_=False) is True
    assert executor.execute.await_count == 3
