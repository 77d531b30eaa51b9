"""Worker: purge old successful delivery records."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_service.domain.models import DeliveryStatus
from webhook_service.repositories.store import WebhookStore


async def webhook_purge_succeeded(
    store: WebhookStore, retention_days: int, now: datetime
) -> str | None:
    """Delete ``success`` deliveries older than *retention_days*."""
    cutoff = now - timedelta(days=retention_days)
    purged = await store.delete_deliveries_before(cutoff, status=DeliveryStatus.SUCCESS)
    return f"purged={purged}" if purged else None
