"""Periodic in-process background worker for the aiohttp app.

Usage::

    async def purge(now: datetime) -> str | None:
        purged = await store.delete_deliveries_before(now - retention, status=DeliveryStatus.SUCCESS)
        return f"purged={purged}" if purged else None

    worker = BackgroundWorker(interval_seconds=60.0, tasks=[WorkerTask(name="purge", fn=purge)])
    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

from webhook_service.domain.models import utcnow

logger = structlog.get_logger(__name__)

# Receives the sweep time (UTC); returns an optional summary that is logged when non-empty.
TaskFn = Callable[[datetime], Awaitable[str | None]]

_WORKER_TASK_KEY = "background_worker_task"


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """Runs every task once per sweep; a failing task never stops the others."""

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)
    clock: Callable[[], datetime] = utcnow

    async def start(self, app: web.Application) -> None:
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        task = app.get(_WORKER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> dict[str, str | None]:
        """Run a single sweep; returns each task's summary (``None`` for quiet or failed tasks)."""
        now = now or self.clock()
        summaries: dict[str, str | None] = {}
        for task in self.tasks:
            summaries[task.name] = None
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task failed", task=task.name)
                continue
            summaries[task.name] = summary
            if summary:
                logger.info("background_task completed", task=task.name, summary=summary)
        return summaries

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker stopped")
                raise
