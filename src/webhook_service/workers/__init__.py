"""Background workers for webhook-service.

Each worker module exports one async task function taking the store, its
tuning knob and the sweep time. :func:`create_worker` binds them to the
application's store; ``start_background_worker`` / ``stop_background_worker``
are the lifecycle hooks.
"""
from __future__ import annotations

from functools import partial

from aiohttp import web

from webhook_service.services.dependencies import SETTINGS_KEY, get_store
from webhook_service.settings import Settings
from webhook_service.worker import BackgroundWorker, WorkerTask
from webhook_service.workers.idempotency_cleanup import idempotency_cleanup
from webhook_service.workers.webhook_purge import webhook_purge_succeeded
from webhook_service.workers.webhook_reclaim import webhook_reclaim_stuck

_WORKER_KEY = "background_worker"


def create_worker(app: web.Application) -> BackgroundWorker:
    settings: Settings = app[SETTINGS_KEY]
    store = get_store(app)
    return BackgroundWorker(
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_reclaim_stuck",
                fn=partial(webhook_reclaim_stuck, store, settings.webhook_stuck_minutes),
            ),
            WorkerTask(
                name="webhook_purge_succeeded",
                fn=partial(
                    webhook_purge_succeeded, store, settings.webhook_succeeded_retention_days
                ),
            ),
            WorkerTask(
                name="idempotency_cleanup",
                fn=partial(idempotency_cleanup, store, settings.idempotency_ttl_hours),
            ),
        ],
    )


async def start_background_worker(app: web.Application) -> None:
    worker = create_worker(app)
    app[_WORKER_KEY] = worker
    await worker.start(app)


async def stop_background_worker(app: web.Application) -> None:
    worker: BackgroundWorker | None = app.get(_WORKER_KEY)
    if worker is not None:
        await worker.stop(app)


__all__ = [
    "create_worker",
    "start_background_worker",
    "stop_background_worker",
]
