"""API key management endpoints."""
from __future__ import annotations

from aiohttp import web

from webhook_service.api.utils import parse_body, success_response
from webhook_service.domain.dto import ApiKeyCreateDTO, ApiKeyView
from webhook_service.services.dependencies import get_api_key_service

routes = web.RouteTableDef()


@routes.post("/api/v1/auth/api-keys")
async def create_api_key(request: web.Request):
    dto = await parse_body(request, ApiKeyCreateDTO)
    service = await get_api_key_service(request)
    api_key = await service.create_api_key(dto.name, dto.permissions, dto.expires_at)
    data = {**ApiKeyView.from_api_key(api_key).model_dump(mode="json"), "key": api_key.key}
    return success_response(data, status=201)


@routes.get("/api/v1/auth/api-keys")
async def list_api_keys(request: web.Request):
    service = await get_api_key_service(request)
    keys = await service.list_api_keys()
    return success_response(
        [ApiKeyView.from_api_key(k).model_dump(mode="json") for k in keys],
        count=len(keys),
    )


@routes.delete("/api/v1/auth/api-keys/{key_id}")
async def delete_api_key(request: web.Request):
    key_id = request.match_info["key_id"]
    service = await get_api_key_service(request)
    await service.delete_api_key(key_id)
    return success_response({"id": key_id, "deleted": True})
