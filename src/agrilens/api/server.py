"""Field-monitoring API server.

Fronts the geospatial analysis backend and the generative-text backend.
Every request runs through the defense middleware chain before it
reaches the thin proxy handlers.
"""

from __future__ import annotations

import asyncio
from typing import Any

from aiohttp import web

from agrilens.api.clients import GenerativeTextClient, GeospatialClient
from agrilens.api.middleware import (
    create_access_log_middleware,
    create_auth_middleware,
    create_body_guard_middleware,
    create_cors_middleware,
    create_error_middleware,
    create_payload_middleware,
    create_rate_limit_middleware,
    create_security_headers_middleware,
    security_headers,
)
from agrilens.api.routes.ai import handle_advice
from agrilens.api.routes.analysis import handle_analysis, handle_validate_area
from agrilens.api.routes.auth import handle_auth_status, handle_login
from agrilens.api.routes.health import handle_health
from agrilens.config import Settings
from agrilens.logging import get_logger
from agrilens.security.pipeline import DefensePipeline

log = get_logger("agrilens.api.server")


class FieldMonitorAPIServer:
    """REST API server with the request defense layer in front of every route."""

    def __init__(
        self,
        settings: Settings,
        *,
        pipeline: DefensePipeline | None = None,
        generative_client: GenerativeTextClient | None = None,
        geospatial_client: GeospatialClient | None = None,
    ) -> None:
        self._settings = settings
        self._pipeline = pipeline or DefensePipeline.from_settings(settings)
        self._generative_client = generative_client or GenerativeTextClient(
            settings.generative_backend_url,
            (
                settings.generative_api_key.get_secret_value()
                if settings.generative_api_key
                else None
            ),
            default_model=settings.default_model,
            timeout=settings.generative_timeout_seconds,
        )
        self._geospatial_client = geospatial_client or GeospatialClient(
            settings.geospatial_backend_url,
            timeout=settings.geospatial_timeout_seconds,
        )
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

        log.info("field_monitor_api_initialized", host=settings.host, port=settings.port)

    @property
    def pipeline(self) -> DefensePipeline:
        return self._pipeline

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp application."""
        settings = self._settings
        middlewares: list[Any] = [
            # Hardening headers (outermost)
            create_security_headers_middleware(
                security_headers(
                    content_security_policy=settings.content_security_policy,
                    hsts_max_age=settings.hsts_max_age if settings.is_production else None,
                )
            ),
            create_access_log_middleware(
                slow_request_ms=settings.slow_request_ms,
                very_slow_request_ms=settings.very_slow_request_ms,
            ),
            # Error rendering
            create_error_middleware(
                expose_details=settings.expose_error_details,
                trust_proxy=settings.trust_proxy,
            ),
            create_cors_middleware(settings.allowed_origins),
            create_body_guard_middleware(self._pipeline),
            create_rate_limit_middleware(self._pipeline),
            create_auth_middleware(settings.jwt_secret.get_secret_value()),
            # Payload validation (innermost)
            create_payload_middleware(self._pipeline),
        ]

        # Streamed bodies beyond the ceiling fail on read
        app = web.Application(middlewares=middlewares, client_max_size=settings.max_body_bytes)

        # Store shared state on app for handlers to access
        app["settings"] = settings
        app["pipeline"] = self._pipeline
        app["generative_client"] = self._generative_client
        app["geospatial_client"] = self._geospatial_client
        app.on_cleanup.append(self._close_clients)

        # Health
        app.router.add_get("/api/health", handle_health)

        # Generative advice
        app.router.add_post("/api/ai/advice", handle_advice)
        app.router.add_post("/api/ai/gemini-advice", handle_advice)

        # Geospatial analysis
        app.router.add_post("/api/analysis", handle_analysis)
        app.router.add_post("/api/analysis/validate-area", handle_validate_area)

        # Auth
        app.router.add_post("/api/auth/login", handle_login)
        app.router.add_get("/api/auth/status", handle_auth_status)

        self._app = app
        return app

    async def _close_clients(self, app: web.Application) -> None:
        await self._generative_client.close()
        await self._geospatial_client.close()

    async def start(self) -> None:
        """Start the server."""
        if self._app is None:
            self.create_app()

        if self._app is None:  # pragma: no cover
            raise RuntimeError("create_app() must be called first")

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._settings.host, self._settings.port)
        await site.start()

        log.info("field_monitor_api_started", host=self._settings.host, port=self._settings.port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("field_monitor_api_stopped")


async def run_server(settings: Settings) -> None:
    """Run the API server until cancelled."""
    server = FieldMonitorAPIServer(settings)
    await server.start()

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()


def main() -> None:
    """Main entry point for the field-monitoring API."""
    from agrilens.config import get_settings
    from agrilens.logging import setup_logging

    setup_logging()
    settings = get_settings()

    if settings.is_production and not settings.jwt_secret.get_secret_value():
        log.warning("jwt_secret_missing", detail="login and bearer tokens are disabled")

    try:
        asyncio.run(run_server(settings))
    except KeyboardInterrupt:
        log.info("field_monitor_api_shutdown")


if __name__ == "__main__":
    main()
