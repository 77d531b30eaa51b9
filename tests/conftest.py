from __future__ import annotations

import pytest
from aiohttp import web

from webhook_service.main import create_app
from webhook_service.services.dependencies import get_queue_system, get_store
from webhook_service.settings import Settings

from tests.utils import FakeClock, Receiver


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        webhook_dispatcher_enabled=False,
        worker_interval_seconds=3600,
        webhook_retry_jitter=0.0,
    )


@pytest.fixture
async def service_client(aiohttp_client, settings):
    """Client for calling the service API (in-memory store, dispatcher off)."""
    app = create_app(settings)
    return await aiohttp_client(app)


@pytest.fixture
def queue_system(service_client):
    return get_queue_system(service_client.server.app)


@pytest.fixture
def store(service_client):
    return get_store(service_client.server.app)


@pytest.fixture
async def receiver(aiohttp_server) -> Receiver:
    rec = Receiver()
    app = web.Application()
    app.router.add_post("/hook", rec.handle)
    server = await aiohttp_server(app)
    rec.url = str(server.make_url("/hook"))
    return rec


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
