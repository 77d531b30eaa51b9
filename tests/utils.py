from __future__ import annotations

from datetime import datetime, timedelta

from aiohttp import web

from webhook_service.domain.models import utcnow


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class Receiver:
    """Local webhook endpoint recording every request it receives."""

    def __init__(self) -> None:
        self.requests: list[tuple[dict[str, str], bytes]] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.url = ""

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append((dict(request.headers), body))
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return web.Response(status=status, text="received" if status < 300 else "boom")


def later(now: datetime, *, hours: float = 0, seconds: float = 0) -> datetime:
    return now + timedelta(hours=hours, seconds=seconds)
