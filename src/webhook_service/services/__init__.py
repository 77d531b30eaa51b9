"""Domain services exports."""

from webhook_service.services.api_keys import ApiKeyService
from webhook_service.services.circuit_breaker import CircuitBreakerRegistry
from webhook_service.services.delivery import DeliveryExecutor
from webhook_service.services.queue import WebhookQueueSystem
from webhook_service.services.webhooks import WebhookService

__all__ = [
    "ApiKeyService",
    "CircuitBreakerRegistry",
    "DeliveryExecutor",
    "WebhookQueueSystem",
    "WebhookService",
]
