"""PostgreSQL webhook store (tables from migrations/001_webhooks.sql)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Sequence

from asyncpg import Pool, Record  # type: ignore[import-untyped]

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
from webhook_service.repositories.base import BaseRepository
from webhook_service.repositories.store import (
    API_KEY_MUTABLE_FIELDS,
    WebhookStore,
    normalize_webhook_changes,
)

_QUEUE_ORDER = "priority DESC, scheduled_for ASC, created_at ASC"


class PostgresWebhookStore(BaseRepository, WebhookStore):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_webhook(record: Record) -> Webhook:
        return Webhook.model_validate(dict(record))

    @staticmethod
    def _to_api_key(record: Record) -> ApiKey:
        return ApiKey.model_validate(dict(record))

    @classmethod
    def _to_delivery(cls, record: Record) -> WebhookDelivery:
        return WebhookDelivery.model_validate(cls._decode_json_columns(dict(record), "payload"))

    @classmethod
    def _to_queue_item(cls, record: Record) -> WebhookQueueItem:
        return WebhookQueueItem.model_validate(cls._decode_json_columns(dict(record), "payload"))

    @classmethod
    def _to_dead_letter(cls, record: Record) -> DeadLetterWebhook:
        return DeadLetterWebhook.model_validate(
            cls._decode_json_columns(dict(record), "payload", "delivery_attempts")
        )

    @staticmethod
    def _set_clause(changes: dict[str, Any], start: int) -> tuple[str, list[Any]]:
        parts = [f"{column} = ${start + i}" for i, column in enumerate(changes)]
        parts.append("updated_at = now()")
        return ", ".join(parts), list(changes.values())

    # -- webhooks -----------------------------------------------------------

    async def create_webhook(self, webhook: Webhook) -> Webhook:
        validate_webhook_url(webhook.url)
        record = await self._fetchrow(
            """
            INSERT INTO webhooks (id, url, events, active, secret, created_at, updated_at)
            VALUES ($1, $2, $3::text[], $4, $5, $6, $7)
            RETURNING *
            """,
            webhook.id,
            webhook.url,
            validate_events(webhook.events),
            webhook.active,
            webhook.secret,
            webhook.created_at,
            webhook.updated_at,
        )
        assert record is not None
        return self._to_webhook(record)

    async def get_webhook_by_id(self, webhook_id: str) -> Webhook | None:
        record = await self._fetchrow("SELECT * FROM webhooks WHERE id = $1", webhook_id)
        return self._to_webhook(record) if record else None

    async def get_all_webhooks(self, filter: WebhookFilter | None = None) -> list[Webhook]:
        where: list[str] = []
        values: list[Any] = []
        if filter is not None and filter.active is not None:
            values.append(filter.active)
            where.append(f"active = ${len(values)}")
        if filter is not None and filter.event:
            values.append(filter.event)
            where.append(f"${len(values)} = ANY(events)")
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        records = await self._fetch(
            f"SELECT * FROM webhooks {where_sql} ORDER BY created_at ASC", *values
        )
        return [self._to_webhook(r) for r in records]

    async def get_webhooks_by_event(self, event: str) -> list[Webhook]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhooks
            WHERE active = true
              AND ($1 = ANY(events) OR '*' = ANY(events))
            ORDER BY created_at ASC
            """,
            event,
        )
        return [self._to_webhook(r) for r in records]

    async def update_webhook(self, webhook_id: str, changes: dict[str, Any]) -> Webhook | None:
        clean = normalize_webhook_changes(changes)
        set_sql, values = self._set_clause(clean, start=2)
        record = await self._fetchrow(
            f"UPDATE webhooks SET {set_sql} WHERE id = $1 RETURNING *",
            webhook_id,
            *values,
        )
        return self._to_webhook(record) if record else None

    async def delete_webhook(self, webhook_id: str) -> bool:
        record = await self._fetchrow(
            "DELETE FROM webhooks WHERE id = $1 RETURNING id", webhook_id
        )
        return record is not None

    async def record_webhook_attempt(
        self, webhook_id: str, *, success: bool, at: datetime
    ) -> Webhook | None:
        record = await self._fetchrow(
            """
            UPDATE webhooks
            SET delivery_count = delivery_count + 1,
                failure_count = failure_count + CASE WHEN $2 THEN 0 ELSE 1 END,
                last_delivery_at = $3,
                last_delivery_status = CASE WHEN $2 THEN 'success' ELSE 'failed' END,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            webhook_id,
            success,
            at,
        )
        return self._to_webhook(record) if record else None

    # -- api keys -----------------------------------------------------------

    async def create_api_key(self, api_key: ApiKey) -> ApiKey:
        record = await self._fetchrow(
            """
            INSERT INTO api_keys (id, name, key, permissions, active, expires_at, created_at, updated_at)
            VALUES ($1, $2, $3, $4::text[], $5, $6, $7, $8)
            RETURNING *
            """,
            api_key.id,
            api_key.name,
            api_key.key,
            api_key.permissions,
            api_key.active,
            api_key.expires_at,
            api_key.created_at,
            api_key.updated_at,
        )
        assert record is not None
        return self._to_api_key(record)

    async def get_api_key_by_id(self, key_id: str) -> ApiKey | None:
        record = await self._fetchrow("SELECT * FROM api_keys WHERE id = $1", key_id)
        return self._to_api_key(record) if record else None

    async def get_api_key_by_value(self, value: str) -> ApiKey | None:
        record = await self._fetchrow("SELECT * FROM api_keys WHERE key = $1", value)
        return self._to_api_key(record) if record else None

    async def get_all_api_keys(self) -> list[ApiKey]:
        records = await self._fetch("SELECT * FROM api_keys ORDER BY created_at ASC")
        return [self._to_api_key(r) for r in records]

    async def update_api_key(self, key_id: str, changes: dict[str, Any]) -> ApiKey | None:
        clean = {k: v for k, v in changes.items() if k in API_KEY_MUTABLE_FIELDS}
        set_sql, values = self._set_clause(clean, start=2)
        record = await self._fetchrow(
            f"UPDATE api_keys SET {set_sql} WHERE id = $1 RETURNING *",
            key_id,
            *values,
        )
        return self._to_api_key(record) if record else None

    async def delete_api_key(self, key_id: str) -> bool:
        record = await self._fetchrow("DELETE FROM api_keys WHERE id = $1 RETURNING id", key_id)
        return record is not None

    # -- deliveries ---------------------------------------------------------

    async def record_delivery(self, delivery: WebhookDelivery) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                id, webhook_id, queue_item_id, event, payload, status, status_code,
                response_body, error_message, attempt_count, idempotency_key,
                duration_ms, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING *
            """,
            delivery.id,
            delivery.webhook_id,
            delivery.queue_item_id,
            delivery.event,
            delivery.payload.model_dump_json(),
            delivery.status.value,
            delivery.status_code,
            delivery.response_body,
            delivery.error_message,
            delivery.attempt_count,
            delivery.idempotency_key,
            delivery.duration_ms,
            delivery.created_at,
            delivery.updated_at,
        )
        assert record is not None
        return self._to_delivery(record)

    async def update_delivery(
        self, delivery_id: str, changes: dict[str, Any]
    ) -> WebhookDelivery | None:
        clean = {
            k: (v.value if isinstance(v, DeliveryStatus) else v)
            for k, v in changes.items()
            if k in {"status", "status_code", "response_body", "error_message", "attempt_count", "duration_ms"}
        }
        set_sql, values = self._set_clause(clean, start=2)
        record = await self._fetchrow(
            f"UPDATE webhook_deliveries SET {set_sql} WHERE id = $1 RETURNING *",
            delivery_id,
            *values,
        )
        return self._to_delivery(record) if record else None

    async def get_all_deliveries(
        self, filter: DeliveryFilter | None = None
    ) -> list[WebhookDelivery]:
        filter = filter or DeliveryFilter()
        where: list[str] = []
        values: list[Any] = []
        if filter.webhook_id:
            values.append(filter.webhook_id)
            where.append(f"webhook_id = ${len(values)}")
        if filter.status is not None:
            values.append(filter.status.value)
            where.append(f"status = ${len(values)}")
        if filter.queue_item_id:
            values.append(filter.queue_item_id)
            where.append(f"queue_item_id = ${len(values)}")
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        values.append(filter.limit)
        values.append(filter.offset)
        query = f"""
            SELECT *
            FROM webhook_deliveries
            {where_sql}
            ORDER BY created_at DESC, seq DESC
            LIMIT ${len(values) - 1} OFFSET ${len(values)}
        """
        records = await self._fetch(query, *values)
        return [self._to_delivery(r) for r in records]

    async def get_delivery_by_idempotency_key(self, key: str) -> WebhookDelivery | None:
        record = await self._fetchrow(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE idempotency_key = $1
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
            """,
            key,
        )
        return self._to_delivery(record) if record else None

    async def delete_deliveries_before(
        self, cutoff: datetime, *, status: DeliveryStatus
    ) -> int:
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE status = $1 AND created_at < $2",
            status.value,
            cutoff,
        )
        return self._affected_rows(result)

    # -- idempotency claims -------------------------------------------------

    async def claim_idempotency_key(self, key: str, *, event: str, at: datetime) -> bool:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_idempotency_keys (key, event, created_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (key) DO NOTHING
            RETURNING key
            """,
            key,
            event,
            at,
        )
        return record is not None

    async def delete_idempotency_keys_before(self, cutoff: datetime) -> int:
        result = await self._execute(
            "DELETE FROM webhook_idempotency_keys WHERE created_at < $1", cutoff
        )
        return self._affected_rows(result)

    # -- live queue ---------------------------------------------------------

    async def get_queue(self) -> list[WebhookQueueItem]:
        records = await self._fetch(f"SELECT * FROM webhook_queue ORDER BY {_QUEUE_ORDER}")
        return [self._to_queue_item(r) for r in records]

    async def get_queue_item(self, item_id: str) -> WebhookQueueItem | None:
        record = await self._fetchrow("SELECT * FROM webhook_queue WHERE id = $1", item_id)
        return self._to_queue_item(record) if record else None

    async def enqueue(self, item: WebhookQueueItem) -> WebhookQueueItem:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_queue (
                id, webhook_id, event, payload, priority, scheduled_for, retry_count,
                max_retries, delivery_id, last_error, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11, $12)
            RETURNING *
            """,
            item.id,
            item.webhook_id,
            item.event,
            item.payload.model_dump_json(),
            item.priority,
            item.scheduled_for,
            item.retry_count,
            item.max_retries,
            item.delivery_id,
            item.last_error,
            item.created_at,
            item.updated_at,
        )
        assert record is not None
        return self._to_queue_item(record)

    async def dequeue_ready(
        self, now: datetime, *, limit: int = 100
    ) -> list[WebhookQueueItem]:
        """
        Atomically claim due items for processing.

        Uses row-level locking (FOR UPDATE SKIP LOCKED) so multiple dispatchers
        won't process the same item concurrently.
        """
        async with self._connection() as conn:
            async with conn.transaction():
                records = await conn.fetch(
                    f"""
                    WITH cte AS (
                        SELECT id
                        FROM webhook_queue
                        WHERE locked_at IS NULL
                          AND scheduled_for <= $1
                        ORDER BY {_QUEUE_ORDER}
                        FOR UPDATE SKIP LOCKED
                        LIMIT $2
                    )
                    UPDATE webhook_queue q
                    SET locked_at = $1,
                        updated_at = now()
                    FROM cte
                    WHERE q.id = cte.id
                    RETURNING q.*
                    """,
                    now,
                    limit,
                )
        items = [self._to_queue_item(r) for r in records]
        items.sort(key=lambda i: (-i.priority, i.scheduled_for, i.created_at))
        return items

    async def update_queue_item(self, item: WebhookQueueItem) -> WebhookQueueItem | None:
        record = await self._fetchrow(
            """
            UPDATE webhook_queue
            SET scheduled_for = $2,
                retry_count = $3,
                priority = $4,
                last_error = $5,
                locked_at = NULL,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            item.id,
            item.scheduled_for,
            item.retry_count,
            item.priority,
            item.last_error,
        )
        return self._to_queue_item(record) if record else None

    async def remove_from_queue(self, item_id: str) -> bool:
        record = await self._fetchrow(
            "DELETE FROM webhook_queue WHERE id = $1 RETURNING id", item_id
        )
        return record is not None

    async def reclaim_expired_claims(self, locked_before: datetime) -> int:
        result = await self._execute(
            """
            UPDATE webhook_queue
            SET locked_at = NULL,
                updated_at = now()
            WHERE locked_at IS NOT NULL
              AND locked_at < $1
            """,
            locked_before,
        )
        return self._affected_rows(result)

    # -- dead letter --------------------------------------------------------

    async def get_dead_letter_queue(self) -> list[DeadLetterWebhook]:
        records = await self._fetch("SELECT * FROM webhook_dead_letters ORDER BY created_at ASC")
        return [self._to_dead_letter(r) for r in records]

    async def get_dead_letter_by_id(self, entry_id: str) -> DeadLetterWebhook | None:
        record = await self._fetchrow("SELECT * FROM webhook_dead_letters WHERE id = $1", entry_id)
        return self._to_dead_letter(record) if record else None

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
        attempts_json = json.dumps([a.model_dump(mode="json") for a in entry.delivery_attempts])
        async with self._connection() as conn:
            async with conn.transaction():
                record = await conn.fetchrow(
                    """
                    INSERT INTO webhook_dead_letters (
                        id, webhook_id, event, payload, failure_reason, last_attempt_at,
                        delivery_attempts, created_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7::jsonb, $8, now())
                    RETURNING *
                    """,
                    entry.id,
                    entry.webhook_id,
                    entry.event,
                    entry.payload.model_dump_json(),
                    entry.failure_reason,
                    entry.last_attempt_at,
                    attempts_json,
                    entry.created_at,
                )
                await conn.execute("DELETE FROM webhook_queue WHERE id = $1", item.id)
        assert record is not None
        return self._to_dead_letter(record)

    async def remove_from_dead_letter(self, entry_id: str) -> bool:
        record = await self._fetchrow(
            "DELETE FROM webhook_dead_letters WHERE id = $1 RETURNING id", entry_id
        )
        return record is not None


__all__: List[str] = ["PostgresWebhookStore"]
