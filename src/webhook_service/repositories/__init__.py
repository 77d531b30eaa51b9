"""Webhook store backends."""

from webhook_service.repositories.memory import InMemoryWebhookStore
from webhook_service.repositories.postgres import PostgresWebhookStore
from webhook_service.repositories.store import WebhookStore

__all__ = [
    "WebhookStore",
    "InMemoryWebhookStore",
    "PostgresWebhookStore",
]
