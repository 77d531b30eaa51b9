from __future__ import annotations

import asyncio

import pytest

from webhook_service.main import create_app


@pytest.fixture
async def dispatching_client(aiohttp_client, settings):
    app = create_app(
        settings.model_copy(
            update={"webhook_dispatcher_enabled": True, "webhook_dispatch_interval_seconds": 0.05}
        )
    )
    return await aiohttp_client(app)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_dispatcher_delivers_triggered_events(dispatching_client, receiver):
    resp = await dispatching_client.post(
        "/api/v1/webhooks", json={"url": receiver.url, "events": ["*"]}
    )
    assert resp.status == 201

    resp = await dispatching_client.post(
        "/api/v1/webhooks/trigger", json={"event": "user.registered", "data": {"user": "u1"}}
    )
    assert resp.status == 202

    await _wait_for(lambda: len(receiver.requests) == 1)
    headers, _ = receiver.requests[0]
    assert headers["X-Webhook-Event"] == "user.registered"

    async def queue_drained() -> bool:
        overview = await (await dispatching_client.get("/api/v1/webhooks/queue")).json()
        return overview["data"]["stats"]["pending"] == 0

    for _ in range(50):
        if await queue_drained():
            break
        await asyncio.sleep(0.02)
    assert await queue_drained()


@pytest.mark.asyncio
async def test_dispatcher_retries_failed_delivery_later(dispatching_client, receiver):
    receiver.statuses = [500]
    await dispatching_client.post("/api/v1/webhooks", json={"url": receiver.url, "events": ["*"]})
    await dispatching_client.post("/api/v1/webhooks/trigger", json={"event": "resource.created"})

    await _wait_for(lambda: len(receiver.requests) == 1)
    await asyncio.sleep(0.2)
    # the retry is scheduled a backoff interval away, not on the next tick
    assert len(receiver.requests) == 1

    overview = await (await dispatching_client.get("/api/v1/webhooks/queue")).json()
    [item] = overview["data"]["queue"]
    assert item["retry_count"] == 1
    assert item["last_error"].startswith("HTTP 500")
