"""Webhook registration, trigger, queue and delivery endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import (
    pagination_params,
    parse_body,
    parse_bool,
    success_response,
)
from webhook_service.core.exceptions import ValidationFailedError
from webhook_service.domain.dto import (
    TriggerDTO,
    WebhookCreateDTO,
    WebhookUpdateDTO,
    WebhookView,
)
from webhook_service.domain.models import DeliveryStatus
from webhook_service.services.dependencies import get_webhook_service

routes = web.RouteTableDef()

# Fixed paths are registered before /api/v1/webhooks/{webhook_id} so they win the match.


@routes.post("/api/v1/webhooks/trigger")
async def trigger_event(request: web.Request):
    dto = await parse_body(request, TriggerDTO)
    service = await get_webhook_service(request)
    result = await service.trigger(dto.event, dto.data, idempotency_key=dto.idempotency_key)
    status = 200 if result.duplicate else 202
    return success_response(result.model_dump(mode="json"), status=status)


@routes.get("/api/v1/webhooks/queue")
async def queue_overview(request: web.Request):
    service = await get_webhook_service(request)
    return success_response(await service.queue_overview())


@routes.post("/api/v1/webhooks/dead-letter/{dead_letter_id}/retry")
async def retry_dead_letter(request: web.Request):
    dead_letter_id = request.match_info["dead_letter_id"]
    service = await get_webhook_service(request)
    await service.retry_dead_letter(dead_letter_id)
    return success_response({"id": dead_letter_id, "requeued": True})


@routes.get("/api/v1/webhooks/deliveries")
async def list_deliveries(request: web.Request):
    query = request.rel_url.query
    status_param = query.get("status")
    try:
        status = DeliveryStatus(status_param) if status_param else None
    except ValueError as exc:
        raise ValidationFailedError(
            f"Invalid status: {status_param}",
            details={"field": "status", "allowed": [s.value for s in DeliveryStatus]},
        ) from exc
    limit, offset = pagination_params(request)
    service = await get_webhook_service(request)
    deliveries = await service.list_deliveries(
        webhook_id=query.get("webhook_id") or None,
        status=status,
        limit=limit,
        offset=offset,
    )
    return success_response(
        [d.model_dump(mode="json") for d in deliveries],
        count=len(deliveries),
        limit=limit,
        offset=offset,
    )


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    query = request.rel_url.query
    service = await get_webhook_service(request)
    webhooks = await service.list_webhooks(
        active=parse_bool(query.get("active"), "active"),
        event=query.get("event") or None,
    )
    return success_response(
        [WebhookView.from_webhook(w).model_dump(mode="json") for w in webhooks],
        count=len(webhooks),
    )


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    dto = await parse_body(request, WebhookCreateDTO)
    service = await get_webhook_service(request)
    webhook = await service.create_webhook(dto)
    # the secret is returned on creation only
    data = {**WebhookView.from_webhook(webhook).model_dump(mode="json"), "secret": webhook.secret}
    return success_response(data, status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    service = await get_webhook_service(request)
    webhook = await service.get_webhook(request.match_info["webhook_id"])
    return success_response(WebhookView.from_webhook(webhook).model_dump(mode="json"))


@routes.put("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    dto = await parse_body(request, WebhookUpdateDTO)
    service = await get_webhook_service(request)
    webhook = await service.update_webhook(request.match_info["webhook_id"], dto)
    return success_response(WebhookView.from_webhook(webhook).model_dump(mode="json"))


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    webhook_id = request.match_info["webhook_id"]
    service = await get_webhook_service(request)
    await service.delete_webhook(webhook_id)
    return success_response({"id": webhook_id, "deleted": True})
