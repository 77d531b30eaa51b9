"""Worker: release queue claims left behind by an interrupted processing pass."""
from __future__ import annotations

from datetime import datetime, timedelta

from webhook_service.repositories.store import WebhookStore


async def webhook_reclaim_stuck(
    store: WebhookStore, stuck_minutes: int, now: datetime
) -> str | None:
    """Release items claimed longer than *stuck_minutes* ago so the next pass retries them."""
    cutoff = now - timedelta(minutes=stuck_minutes)
    reclaimed = await store.reclaim_expired_claims(cutoff)
    return f"reclaimed={reclaimed}" if reclaimed else None
