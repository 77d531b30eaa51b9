"""Worker: delete expired idempotency keys."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_service.repositories.store import WebhookStore


async def idempotency_cleanup(store: WebhookStore, ttl_hours: int, now: datetime) -> str | None:
    """Delete idempotency claims older than *ttl_hours*."""
    cutoff = now - timedelta(hours=ttl_hours)
    deleted = await store.delete_idempotency_keys_before(cutoff)
    return f"deleted={deleted}" if deleted else None
