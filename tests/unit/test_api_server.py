"""Unit tests for API server wiring and middleware helpers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from agrilens.api.middleware import (
    EXEMPT_PATHS,
    client_identity,
    cors_headers,
    create_access_log_middleware,
    create_security_headers_middleware,
    endpoint_class_for,
    security_headers,
)
from agrilens.api.server import FieldMonitorAPIServer, run_server
from agrilens.security.models import EndpointClass


class TestFieldMonitorAPIServerCreateApp:
    def test_create_app_registers_routes(self, settings) -> None:
        app = FieldMonitorAPIServer(settings).create_app()
        paths = {resource.canonical for resource in app.router.resources()}
        assert paths == {
            "/api/health",
            "/api/ai/advice",
            "/api/ai/gemini-advice",
            "/api/analysis",
            "/api/analysis/validate-area",
            "/api/auth/login",
            "/api/auth/status",
        }

    def test_create_app_installs_full_chain(self, settings) -> None:
        app = FieldMonitorAPIServer(settings).create_app()
        # security headers, access log, error, CORS, body guard, rate limit, auth, payload
        assert len(app.middlewares) == 8
        assert app._client_max_size == settings.max_body_bytes

    def test_create_app_stores_shared_state(self, settings) -> None:
        generative = MagicMock()
        server = FieldMonitorAPIServer(settings, generative_client=generative)
        app = server.create_app()
        assert app["settings"] is settings
        assert app["pipeline"] is server.pipeline
        assert app["generative_client"] is generative


class TestServerLifecycle:
    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, settings) -> None:
        server = FieldMonitorAPIServer(settings)
        await server.stop()

    @pytest.mark.asyncio
    async def test_run_server_stops_on_cancel(self, settings, monkeypatch) -> None:
        server = MagicMock()
        server.start = AsyncMock()
        server.stop = AsyncMock()
        monkeypatch.setattr(
            "agrilens.api.server.FieldMonitorAPIServer", MagicMock(return_value=server)
        )
        sleep = AsyncMock(side_effect=asyncio.CancelledError)
        monkeypatch.setattr("agrilens.api.server.asyncio.sleep", sleep)

        await run_server(settings)

        server.start.assert_awaited_once()
        server.stop.assert_awaited_once()


class TestMiddlewareHelpers:
    def test_endpoint_classes(self) -> None:
        assert endpoint_class_for("/api/ai/advice") is EndpointClass.AI
        assert endpoint_class_for("/api/analysis") is EndpointClass.ANALYSIS
        assert endpoint_class_for("/api/auth/login") is EndpointClass.AUTH
        assert endpoint_class_for("/api/analysis/validate-area") is EndpointClass.GENERAL
        assert endpoint_class_for("/api/auth/status") is EndpointClass.GENERAL
        assert "/api/health" in EXEMPT_PATHS

    def test_client_identity_uses_forwarded_only_when_trusted(self) -> None:
        request = make_mocked_request(
            "GET", "/api/health", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        )
        assert client_identity(request, trust_proxy=True) == "203.0.113.5"
        assert client_identity(request, trust_proxy=False) != "203.0.113.5"

    def test_client_identity_empty_forwarded_header(self) -> None:
        request = make_mocked_request("GET", "/", headers={"X-Forwarded-For": " "})
        assert client_identity(request, trust_proxy=True) == (request.remote or "unknown")

    def test_cors_headers(self) -> None:
        allowed = ["https://fields.example"]
        assert cors_headers("https://fields.example", allowed)["Access-Control-Allow-Origin"] == (
            "https://fields.example"
        )
        assert cors_headers("https://evil.example", allowed) == {}
        assert cors_headers("https://any.example", ["*"])
        assert cors_headers("https://fields.example", None) == {}


class TestSecurityHeaders:
    def test_hardening_headers(self) -> None:
        headers = security_headers(content_security_policy="default-src 'none'")
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["Content-Security-Policy"] == "default-src 'none'"
        assert "Strict-Transport-Security" not in headers

    def test_hsts_only_when_requested(self) -> None:
        headers = security_headers(content_security_policy="x", hsts_max_age=600)
        assert headers["Strict-Transport-Security"] == "max-age=600; includeSubDomains"

    @pytest.mark.asyncio
    async def test_headers_added_to_response(self) -> None:
        middleware = create_security_headers_middleware({"X-Frame-Options": "DENY"})
        request = make_mocked_request("GET", "/api/health")
        handler = AsyncMock(return_value=web.json_response({"ok": True}))
        response = await middleware(request, handler)
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.asyncio
    async def test_headers_added_to_routing_errors(self) -> None:
        middleware = create_security_headers_middleware({"X-Frame-Options": "DENY"})
        request = make_mocked_request("GET", "/missing")
        handler = AsyncMock(side_effect=web.HTTPNotFound())
        with pytest.raises(web.HTTPNotFound) as exc_info:
            await middleware(request, handler)
        assert exc_info.value.headers["X-Frame-Options"] == "DENY"


class TestAccessLog:
    @staticmethod
    def _clock(*readings: float):
        return iter(readings).__next__

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "elapsed", "level", "event"),
        [
            (200, 0.05, "info", "request_completed"),
            (200, 6.0, "warning", "slow_request"),
            (200, 12.0, "warning", "very_slow_request"),
            (429, 0.01, "warning", "request_completed"),
            (500, 0.01, "error", "request_completed"),
        ],
    )
    async def test_level_follows_status_and_duration(
        self, monkeypatch, status, elapsed, level, event
    ) -> None:
        access_log = MagicMock()
        monkeypatch.setattr("agrilens.api.middleware.access_log", access_log)
        middleware = create_access_log_middleware(clock=self._clock(100.0, 100.0 + elapsed))
        request = make_mocked_request("POST", "/api/analysis")
        handler = AsyncMock(return_value=web.json_response({}, status=status))

        response = await middleware(request, handler)

        assert response.status == status
        log_method = getattr(access_log, level)
        log_method.assert_called_once()
        args, kwargs = log_method.call_args
        assert args == (event,)
        assert kwargs["status"] == status
        assert kwargs["path"] == "/api/analysis"
        assert kwargs["duration_ms"] == pytest.approx(elapsed * 1000)
        assert kwargs["authenticated"] is False

    @pytest.mark.asyncio
    async def test_routing_errors_are_logged_and_reraised(self, monkeypatch) -> None:
        access_log = MagicMock()
        monkeypatch.setattr("agrilens.api.middleware.access_log", access_log)
        middleware = create_access_log_middleware(clock=self._clock(1.0, 1.0))
        request = make_mocked_request("GET", "/missing")
        handler = AsyncMock(side_effect=web.HTTPNotFound())

        with pytest.raises(web.HTTPNotFound):
            await middleware(request, handler)

        assert access_log.warning.call_args.kwargs["status"] == 404
