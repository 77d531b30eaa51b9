"""Single HTTP delivery attempt of a signed webhook payload."""
from __future__ import annotations

import asyncio
import hmac
import json
import time
from dataclasses import dataclass
from hashlib import sha256

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout

from webhook_service.domain.models import Webhook, WebhookPayload
from webhook_service.otel import get_tracer

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

MAX_RESPONSE_BODY = 2000


def encode_payload(payload: WebhookPayload) -> bytes:
    return json.dumps(
        payload.model_dump(mode="json"), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def sign_payload(secret: str, body_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body_bytes: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body_bytes), signature)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: float = 0.0


class DeliveryExecutor:
    """Performs exactly one POST per call; retrying is the queue's job."""

    def __init__(self, timeout_seconds: float = 10.0, session: ClientSession | None = None):
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=self._timeout_seconds))
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def execute(
        self, webhook: Webhook, payload: WebhookPayload, *, delivery_id: str
    ) -> DeliveryResult:
        if self._session is None:
            await self.start()
        assert self._session is not None

        body_bytes = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": payload.event,
            "X-Webhook-Delivery-Id": delivery_id,
            "X-Webhook-Timestamp": payload.timestamp.isoformat(),
            "X-Webhook-Idempotency-Key": payload.idempotency_key,
            "X-Webhook-Signature": sign_payload(webhook.secret, body_bytes),
        }

        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("webhook.id", webhook.id)
            span.set_attribute("webhook.event", payload.event)
            span.set_attribute("webhook.delivery_id", delivery_id)
            started = time.perf_counter()
            try:
                async with self._session.post(
                    webhook.url,
                    data=body_bytes,
                    headers=headers,
                    timeout=ClientTimeout(total=self._timeout_seconds),
                ) as resp:
                    text = (await resp.text(errors="replace"))[:MAX_RESPONSE_BODY]
                    duration_ms = (time.perf_counter() - started) * 1000
                    span.set_attribute("http.status_code", resp.status)
                    if 200 <= resp.status < 300:
                        return DeliveryResult(
                            success=True,
                            status_code=resp.status,
                            response_body=text,
                            duration_ms=duration_ms,
                        )
                    return DeliveryResult(
                        success=False,
                        status_code=resp.status,
                        response_body=text,
                        error_message=f"HTTP {resp.status}: {text}" if text else f"HTTP {resp.status}",
                        duration_ms=duration_ms,
                    )
            except asyncio.TimeoutError:
                error = f"Request timed out after {self._timeout_seconds:g}s"
            except (ClientError, ValueError) as exc:
                error = str(exc) or exc.__class__.__name__
            duration_ms = (time.perf_counter() - started) * 1000
            span.set_attribute("webhook.error", error)
            logger.warning(
                "Webhook request failed",
                webhook_id=webhook.id,
                delivery_id=delivery_id,
                error=error,
            )
            return DeliveryResult(success=False, error_message=error, duration_ms=duration_ms)
