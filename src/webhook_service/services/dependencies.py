"""Application-scoped components and per-request service providers."""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

import structlog
from aiohttp import web

from webhook_service.db.migrations import create_migration_runner
from webhook_service.db.pool import close_pool, init_pool
from webhook_service.repositories.memory import InMemoryWebhookStore
from webhook_service.repositories.postgres import PostgresWebhookStore
from webhook_service.repositories.store import WebhookStore
from webhook_service.services.api_keys import ApiKeyService
from webhook_service.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from webhook_service.services.delivery import DeliveryExecutor
from webhook_service.services.queue import QueueConfig, WebhookQueueSystem
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

TService = TypeVar("TService")

SETTINGS_KEY = "settings"
_STORE_KEY = "webhook_store"
_EXECUTOR_KEY = "delivery_executor"
_BREAKERS_KEY = "circuit_breakers"
_QUEUE_KEY = "webhook_queue"

_WEBHOOK_SERVICE_KEY = "webhook_service"
_API_KEY_SERVICE_KEY = "api_key_service"


async def _create_store(app: web.Application, settings: Settings) -> WebhookStore:
    if settings.store_backend == "postgres":
        await create_migration_runner(settings)(app)
        pool = await init_pool(settings)
        return PostgresWebhookStore(pool)
    return InMemoryWebhookStore()


async def init_components(app: web.Application) -> None:
    """Build store, executor, breakers and queue. Register with ``app.on_startup``."""
    settings: Settings = app[SETTINGS_KEY]
    store = app.get(_STORE_KEY) or await _create_store(app, settings)
    executor = DeliveryExecutor(timeout_seconds=settings.webhook_request_timeout_seconds)
    await executor.start()
    breakers = CircuitBreakerRegistry(CircuitBreakerConfig.from_settings(settings))

    app[_STORE_KEY] = store
    app[_EXECUTOR_KEY] = executor
    app[_BREAKERS_KEY] = breakers
    app[_QUEUE_KEY] = WebhookQueueSystem(
        store, executor, breakers, QueueConfig.from_settings(settings)
    )
    logger.info("Components initialised", store_backend=type(store).__name__)


async def close_components(app: web.Application) -> None:
    """Release outbound HTTP session and store resources. Register with ``app.on_cleanup``."""
    executor: DeliveryExecutor | None = app.get(_EXECUTOR_KEY)
    if executor is not None:
        await executor.close()
    store: WebhookStore | None = app.get(_STORE_KEY)
    if store is not None:
        await store.close()
    if isinstance(store, PostgresWebhookStore):
        await close_pool(app)


def get_store(app: web.Application) -> WebhookStore:
    return app[_STORE_KEY]


def get_breakers(app: web.Application) -> CircuitBreakerRegistry:
    return app[_BREAKERS_KEY]


def get_queue_system(app: web.Application) -> WebhookQueueSystem:
    return app[_QUEUE_KEY]


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


async def get_webhook_service(request: web.Request) -> WebhookService:
    async def builder(req: web.Request) -> WebhookService:
        settings: Settings = req.app[SETTINGS_KEY]
        return WebhookService(
            get_store(req.app),
            get_queue_system(req.app),
            get_breakers(req.app),
            allowed_events=settings.webhook_allowed_events,
        )

    return await _get_or_create_service(request, _WEBHOOK_SERVICE_KEY, builder)


async def get_api_key_service(request: web.Request) -> ApiKeyService:
    async def builder(req: web.Request) -> ApiKeyService:
        settings: Settings = req.app[SETTINGS_KEY]
        return ApiKeyService(
            get_store(req.app), default_permissions=settings.api_key_default_permissions
        )

    return await _get_or_create_service(request, _API_KEY_SERVICE_KEY, builder)
