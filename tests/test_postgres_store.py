"""PostgresWebhookStore against a mocked asyncpg pool (SQL shape and row mapping)."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import asyncpg  # type: ignore[import-untyped]
import pytest

from webhook_service.core.exceptions import StoreError, ValidationFailedError
from webhook_service.domain.models import (
    DeliveryFilter,
    DeliveryStatus,
    WebhookDelivery,
    WebhookFilter,
    WebhookPayload,
    WebhookQueueItem,
    utcnow,
)
from webhook_service.repositories.postgres import PostgresWebhookStore


class _Acquire:
    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def conn():
    connection = AsyncMock()
    connection.transaction = MagicMock(return_value=_Acquire(None))
    return connection


@pytest.fixture
def pg_store(conn):
    pool = MagicMock()
    pool.acquire = MagicMock(side_effect=lambda: _Acquire(conn))
    return PostgresWebhookStore(pool)


def _webhook_row(**overrides):
    now = utcnow()
    row = {
        "id": "wh_1",
        "url": "https://example.com/hook",
        "events": ["resource.created"],
        "active": True,
        "secret": "whsec_x",
        "delivery_count": 0,
        "failure_count": 0,
        "last_delivery_at": None,
        "last_delivery_status": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def _payload_json():
    return WebhookPayload(event="resource.created", data={"id": 1}, idempotency_key="k-1").model_dump_json()


@pytest.mark.asyncio
async def test_get_webhook_maps_row(pg_store, conn):
    conn.fetchrow.return_value = _webhook_row(last_delivery_status="failed", failure_count=2)

    webhook = await pg_store.get_webhook_by_id("wh_1")

    assert webhook.id == "wh_1"
    assert webhook.failure_count == 2
    assert webhook.last_delivery_status is DeliveryStatus.FAILED
    assert conn.fetchrow.await_args.args[1] == "wh_1"


@pytest.mark.asyncio
async def test_missing_webhook_returns_none(pg_store, conn):
    conn.fetchrow.return_value = None
    assert await pg_store.get_webhook_by_id("wh_missing") is None
    assert await pg_store.delete_webhook("wh_missing") is False


@pytest.mark.asyncio
async def test_get_all_webhooks_builds_filters(pg_store, conn):
    conn.fetch.return_value = [_webhook_row()]

    webhooks = await pg_store.get_all_webhooks(WebhookFilter(active=True, event="resource.created"))

    assert [w.id for w in webhooks] == ["wh_1"]
    query, *args = conn.fetch.await_args.args
    assert "active = $1" in query
    assert "$2 = ANY(events)" in query
    assert args == [True, "resource.created"]


@pytest.mark.asyncio
async def test_update_webhook_rejects_invalid_url_before_sql(pg_store, conn):
    with pytest.raises(ValidationFailedError):
        await pg_store.update_webhook("wh_1", {"url": "ftp://nope"})
    conn.fetchrow.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_webhook_sets_only_mutable_columns(pg_store, conn):
    conn.fetchrow.return_value = _webhook_row(active=False)

    await pg_store.update_webhook("wh_1", {"active": False, "delivery_count": 99})

    query, *args = conn.fetchrow.await_args.args
    assert "active = $2" in query
    assert "delivery_count" not in query
    assert args == ["wh_1", False]


@pytest.mark.asyncio
async def test_delivery_payload_decoded_from_json_string(pg_store, conn):
    now = utcnow()
    conn.fetch.return_value = [
        {
            "id": "del_1",
            "seq": 1,
            "webhook_id": "wh_1",
            "queue_item_id": "q_1",
            "event": "resource.created",
            "payload": _payload_json(),
            "status": "failed",
            "status_code": 500,
            "response_body": "boom",
            "error_message": "HTTP 500: boom",
            "attempt_count": 1,
            "idempotency_key": "k-1",
            "duration_ms": 12.5,
            "created_at": now,
            "updated_at": now,
        }
    ]

    [delivery] = await pg_store.get_all_deliveries(
        DeliveryFilter(queue_item_id="q_1", status=DeliveryStatus.FAILED, limit=10)
    )

    assert delivery.payload.data == {"id": 1}
    assert delivery.status is DeliveryStatus.FAILED
    query, *args = conn.fetch.await_args.args
    assert "ORDER BY created_at DESC, seq DESC" in query
    assert args == ["failed", "q_1", 10, 0]


@pytest.mark.asyncio
async def test_record_delivery_serialises_payload(pg_store, conn):
    delivery = WebhookDelivery(
        webhook_id="wh_1",
        event="resource.created",
        payload=WebhookPayload(event="resource.created", data={"id": 1}, idempotency_key="k-1"),
        idempotency_key="k-1",
    )
    row = delivery.model_dump()
    row["payload"] = delivery.payload.model_dump()
    conn.fetchrow.return_value = row

    recorded = await pg_store.record_delivery(delivery)

    assert recorded.id == delivery.id
    args = conn.fetchrow.await_args.args
    assert json.loads(args[5])["idempotency_key"] == "k-1"
    assert args[6] == "pending"


@pytest.mark.asyncio
async def test_delete_deliveries_before_parses_command_tag(pg_store, conn):
    conn.execute.return_value = "DELETE 3"
    purged = await pg_store.delete_deliveries_before(utcnow(), status=DeliveryStatus.SUCCESS)
    assert purged == 3
    assert conn.execute.await_args.args[1] == "success"


@pytest.mark.asyncio
async def test_reclaim_expired_claims_counts_rows(pg_store, conn):
    conn.execute.return_value = "UPDATE 2"
    assert await pg_store.reclaim_expired_claims(utcnow()) == 2


@pytest.mark.asyncio
async def test_dequeue_ready_claims_in_transaction(pg_store, conn):
    now = utcnow()
    base = {
        "webhook_id": "wh_1",
        "event": "resource.created",
        "payload": _payload_json(),
        "scheduled_for": now,
        "retry_count": 0,
        "max_retries": 3,
        "delivery_id": None,
        "locked_at": now,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
    }
    conn.fetch.return_value = [
        {**base, "id": "q_low", "priority": 0},
        {**base, "id": "q_high", "priority": 10},
    ]

    items = await pg_store.dequeue_ready(now, limit=5)

    assert [i.id for i in items] == ["q_high", "q_low"]
    conn.transaction.assert_called_once()
    query, *args = conn.fetch.await_args.args
    assert "FOR UPDATE SKIP LOCKED" in query
    assert args == [now, 5]


@pytest.mark.asyncio
async def test_move_to_dead_letter_inserts_and_deletes(pg_store, conn):
    item = WebhookQueueItem(
        webhook_id="wh_1",
        event="resource.created",
        payload=WebhookPayload(event="resource.created", idempotency_key="k-1"),
    )
    attempt = WebhookDelivery(
        webhook_id="wh_1",
        queue_item_id=item.id,
        event=item.event,
        payload=item.payload,
        status=DeliveryStatus.FAILED,
        attempt_count=1,
    )
    now = utcnow()
    conn.fetchrow.return_value = {
        "id": "dl_1",
        "webhook_id": "wh_1",
        "event": "resource.created",
        "payload": item.payload.model_dump_json(),
        "failure_reason": "Max retries exceeded: boom",
        "last_attempt_at": now,
        "delivery_attempts": json.dumps([attempt.model_dump(mode="json")]),
        "created_at": now,
        "updated_at": now,
    }

    entry = await pg_store.move_to_dead_letter(item, "Max retries exceeded: boom", [attempt])

    assert entry.id == "dl_1"
    assert [a.id for a in entry.delivery_attempts] == [attempt.id]
    conn.transaction.assert_called_once()
    conn.execute.assert_awaited_once_with("DELETE FROM webhook_queue WHERE id = $1", item.id)


@pytest.mark.asyncio
async def test_driver_errors_become_store_errors(pg_store, conn):
    conn.fetchrow.side_effect = asyncpg.exceptions.UndefinedTableError('relation "webhooks" does not exist')

    with pytest.raises(StoreError) as exc_info:
        await pg_store.get_webhook_by_id("wh_1")

    assert exc_info.value.status == 500
    assert exc_info.value.details == {"error": "UndefinedTableError"}


@pytest.mark.asyncio
async def test_claim_idempotency_key_first_caller_wins(pg_store, conn):
    conn.fetchrow.return_value = {"key": "evt-1"}
    assert await pg_store.claim_idempotency_key("evt-1", event="resource.created", at=utcnow()) is True
    query = conn.fetchrow.await_args.args[0]
    assert "ON CONFLICT (key) DO NOTHING" in query

    conn.fetchrow.return_value = None
    assert await pg_store.claim_idempotency_key("evt-1", event="resource.created", at=utcnow()) is False


@pytest.mark.asyncio
async def test_delete_idempotency_keys_before_counts_rows(pg_store, conn):
    conn.execute.return_value = "DELETE 4"
    assert await pg_store.delete_idempotency_keys_before(utcnow()) == 4
