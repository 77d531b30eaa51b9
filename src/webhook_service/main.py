"""aiohttp application entrypoint."""
from __future__ import annotations

from aiohttp import web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from webhook_service.api.router import setup_routes
from webhook_service.dispatcher import start_webhook_dispatcher, stop_webhook_dispatcher
from webhook_service.logging_config import configure_logging
from webhook_service.middleware.api_auth import create_api_key_middleware
from webhook_service.middleware.errors import error_middleware
from webhook_service.middleware.trace import create_trace_middleware
from webhook_service.otel import setup_otel, shutdown_otel
from webhook_service.services.dependencies import SETTINGS_KEY, close_components, init_components
from webhook_service.settings import Settings, get_settings
from webhook_service.workers import start_background_worker, stop_background_worker

configure_logging(get_settings().log_level)

_ALLOWED_HEADERS = (
    "Accept",
    "Accept-Language",
    "Content-Language",
    "Content-Type",
    "X-API-Key",
    "X-Trace-Id",
    "X-Request-Id",
)
_ALLOWED_METHODS = ("GET", "HEAD", "POST", "PUT", "DELETE", "OPTIONS")
_EXPOSED_HEADERS = ("X-Trace-Id", "X-Request-Id")


def create_app(settings: Settings | None = None) -> web.Application:
    settings = settings or get_settings()
    app = web.Application(
        middlewares=[
            create_trace_middleware(settings.app_name),
            error_middleware,
            create_api_key_middleware(settings.require_api_key),
        ]
    )
    app[SETTINGS_KEY] = settings

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers=_EXPOSED_HEADERS,
                allow_headers=_ALLOWED_HEADERS,
                allow_methods=_ALLOWED_METHODS,
            )
            for origin in settings.cors_allowed_origins
        },
    )

    async def healthcheck(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})

    app.router.add_get("/health", healthcheck)
    setup_routes(app)
    setup_otel(app, settings)

    app.on_startup.append(init_components)
    if settings.webhook_dispatcher_enabled:
        app.on_startup.append(start_webhook_dispatcher)
        app.on_cleanup.append(stop_webhook_dispatcher)
    app.on_startup.append(start_background_worker)
    app.on_cleanup.append(stop_background_worker)
    app.on_cleanup.append(close_components)
    app.on_cleanup.append(shutdown_otel)

    for route in list(app.router.routes()):
        cors.add(route)

    return app


def main() -> None:
    settings = get_settings()
    web.run_app(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
