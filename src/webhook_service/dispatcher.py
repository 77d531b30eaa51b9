"""Background queue dispatcher (runs processing passes on a timer)."""
from __future__ import annotations

import asyncio

import structlog
from aiohttp import web

from webhook_service.services.dependencies import SETTINGS_KEY, get_queue_system
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

_DISPATCHER_TASK_KEY = "webhook_dispatcher_task"


async def _dispatcher_loop(app: web.Application) -> None:
    settings: Settings = app[SETTINGS_KEY]
    queue = get_queue_system(app)
    logger.info(
        "webhook_dispatcher started",
        interval_seconds=settings.webhook_dispatch_interval_seconds,
        batch_size=settings.webhook_dispatch_batch_size,
    )
    while True:
        try:
            summary = await queue.process_queue()
        except asyncio.CancelledError:
            logger.info("webhook_dispatcher stopped")
            raise
        except Exception:
            logger.exception("webhook_dispatcher pass failed")
        else:
            # a full batch means more items may be due right now
            if summary.claimed >= settings.webhook_dispatch_batch_size:
                continue
        await asyncio.sleep(settings.webhook_dispatch_interval_seconds)


async def start_webhook_dispatcher(app: web.Application) -> None:
    app[_DISPATCHER_TASK_KEY] = asyncio.create_task(_dispatcher_loop(app))


async def stop_webhook_dispatcher(app: web.Application) -> None:
    task = app.get(_DISPATCHER_TASK_KEY)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
