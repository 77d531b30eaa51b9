"""API key management and request authentication."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

import structlog

from webhook_service.core.exceptions import NotFoundError, UnauthorizedError
from webhook_service.domain.models import ApiKey, utcnow
from webhook_service.repositories.store import WebhookStore

logger = structlog.get_logger(__name__)


class ApiKeyService:
    def __init__(self, store: WebhookStore, *, default_permissions: Iterable[str] = ("read",)):
        self._store = store
        self._default_permissions = list(default_permissions)

    async def create_api_key(
        self,
        name: str,
        permissions: list[str] | None = None,
        expires_at: datetime | None = None,
    ) -> ApiKey:
        api_key = await self._store.create_api_key(
            ApiKey(
                name=name,
                permissions=permissions if permissions is not None else list(self._default_permissions),
                expires_at=expires_at,
            )
        )
        logger.info("API key created", api_key_id=api_key.id, name=name)
        return api_key

    async def list_api_keys(self) -> List[ApiKey]:
        return await self._store.get_all_api_keys()

    async def delete_api_key(self, key_id: str) -> None:
        if not await self._store.delete_api_key(key_id):
            raise NotFoundError("API key", key_id)
        logger.info("API key deleted", api_key_id=key_id)

    async def authenticate(self, value: str) -> ApiKey:
        """Resolve *value* to an active, unexpired key and stamp ``last_used_at``."""
        api_key = await self._store.get_api_key_by_value(value)
        if api_key is None:
            raise UnauthorizedError("Invalid API key")
        if not api_key.active:
            raise UnauthorizedError("API key is inactive")
        now = utcnow()
        if api_key.is_expired(now):
            raise UnauthorizedError("API key has expired")
        updated = await self._store.update_api_key(api_key.id, {"last_used_at": now})
        return updated or api_key
