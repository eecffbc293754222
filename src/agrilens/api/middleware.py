"""Middleware for the field-monitoring API.

Implements the defense chain, outermost first:

    security headers -> access log -> error rendering -> CORS -> body guard
    -> rate limit -> auth -> payload -> handler

Each factory returns an aiohttp middleware closed over its collaborators.
Inner middlewares raise :class:`DefenseError`; only the error middleware
turns errors into responses.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any

import jwt  # type: ignore[import-not-found]
from aiohttp import web

from agrilens.api.auth import validate_session_token
from agrilens.logging import get_logger
from agrilens.security import errors
from agrilens.security.errors import DefenseError
from agrilens.security.forensics import log_defense_error
from agrilens.security.models import EndpointClass
from agrilens.security.pipeline import DefensePipeline

log = get_logger("agrilens.api.middleware")
access_log = get_logger("agrilens.api.access")

# Paths that skip rate limiting entirely
EXEMPT_PATHS = frozenset({"/api/health"})

# Endpoint class per path; anything else is GENERAL
ROUTE_CLASSES: dict[str, EndpointClass] = {
    "/api/ai/advice": EndpointClass.AI,
    "/api/ai/gemini-advice": EndpointClass.AI,
    "/api/analysis": EndpointClass.ANALYSIS,
    "/api/auth/login": EndpointClass.AUTH,
}

# Paths whose bodies go through the injection detector
PROMPT_PATHS = frozenset({"/api/ai/advice", "/api/ai/gemini-advice"})

# Paths whose bodies go through the geometry validator
GEOMETRY_PATHS = frozenset({"/api/analysis", "/api/analysis/validate-area"})

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def endpoint_class_for(path: str) -> EndpointClass:
    return ROUTE_CLASSES.get(path, EndpointClass.GENERAL)


def client_identity(request: web.Request, trust_proxy: bool = False) -> str:
    """Key used for rate limiting and security events.

    The first ``X-Forwarded-For`` entry is only honoured behind a trusted proxy.
    """
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.remote or "unknown"


def _client(request: web.Request) -> str:
    client: str | None = request.get("client")
    return client or request.remote or "unknown"


def security_headers(
    *, content_security_policy: str, hsts_max_age: int | None = None
) -> dict[str, str]:
    """Hardening headers sent on every response.

    ``Strict-Transport-Security`` is only included when *hsts_max_age* is
    given, which the server does in production.
    """
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "X-Permitted-Cross-Domain-Policies": "none",
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-site",
        "X-DNS-Prefetch-Control": "off",
        "X-Download-Options": "noopen",
        "Permissions-Policy": "geolocation=(), microphone=(), camera=(), payment=(), usb=()",
        "Content-Security-Policy": content_security_policy,
    }
    if hsts_max_age:
        headers["Strict-Transport-Security"] = f"max-age={hsts_max_age}; includeSubDomains"
    return headers


def create_security_headers_middleware(headers: dict[str, str]) -> Any:
    """Create the outermost middleware stamping *headers* on every response.

    aiohttp's own errors (404, 405) are raised past the chain, so the
    headers are attached to the exception before it propagates.
    """

    @web.middleware
    async def security_headers_middleware(
        request: web.Request, handler: Any
    ) -> web.StreamResponse:
        try:
            response: web.StreamResponse = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(headers)
            raise
        if not response.prepared:
            response.headers.update(headers)
        return response

    return security_headers_middleware


def create_access_log_middleware(
    *,
    slow_request_ms: float = 5000.0,
    very_slow_request_ms: float = 10000.0,
    clock: Callable[[], float] = time.perf_counter,
) -> Any:
    """Create request/response logging with timing.

    Server errors log at error, client errors and slow requests at
    warning, everything else at info.

    Args:
        slow_request_ms: Duration above which a request is ``slow_request``.
        very_slow_request_ms: Duration above which it is ``very_slow_request``.
        clock: Time source in seconds.
    """

    def _log(request: web.Request, status: int, started: float) -> None:
        duration_ms = round((clock() - started) * 1000, 2)
        fields = {
            "method": request.method,
            "path": request.path,
            "status": status,
            "duration_ms": duration_ms,
            "client": _client(request),
            "user_agent": request.headers.get("User-Agent", ""),
            "authenticated": "session" in request,
        }
        if status >= 500:
            access_log.error("request_completed", **fields)
        elif status >= 400:
            access_log.warning("request_completed", **fields)
        elif duration_ms > very_slow_request_ms:
            access_log.warning("very_slow_request", **fields)
        elif duration_ms > slow_request_ms:
            access_log.warning("slow_request", **fields)
        else:
            access_log.info("request_completed", **fields)

    @web.middleware
    async def access_log_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        started = clock()
        try:
            response: web.StreamResponse = await handler(request)
        except web.HTTPException as exc:
            _log(request, exc.status, started)
            raise
        _log(request, response.status, started)
        return response

    return access_log_middleware


def create_error_middleware(*, expose_details: bool = False, trust_proxy: bool = False) -> Any:
    """Create the middleware that renders every error.

    Args:
        expose_details: Include ``details`` and ``stack`` in bodies
            (never enabled in production).
        trust_proxy: Derive client identity from ``X-Forwarded-For``.
    """

    @web.middleware
    async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        request["client"] = client_identity(request, trust_proxy)
        try:
            return await handler(request)  # type: ignore[no-any-return]
        except web.HTTPException:
            # Routing errors (404, 405) keep aiohttp's own responses
            raise
        except DefenseError as err:
            return _render(request, err, expose_details)
        except Exception as exc:
            log.exception("unhandled_request_error", path=request.path)
            return _render(request, errors.internal_error(exc, unexpected=True), expose_details)

    return error_middleware


def _render(request: web.Request, err: DefenseError, expose_details: bool) -> web.Response:
    log_defense_error(
        err,
        client=_client(request),
        endpoint=request.path,
        request_info={
            "method": request.method,
            "user_agent": request.headers.get("User-Agent", ""),
        },
    )
    headers = dict(request.get("cors_headers") or {})
    headers.update(errors.response_headers(err))
    return web.json_response(
        errors.render_error(err, expose_details=expose_details),
        status=err.http_status,
        headers=headers,
    )


def cors_headers(origin: str, allowed_origins: list[str] | None) -> dict[str, str]:
    """CORS headers for *origin*, or an empty dict when it is not allowed."""
    if not allowed_origins or not origin:
        return {}
    if origin not in allowed_origins and "*" not in allowed_origins:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
        "Access-Control-Max-Age": "86400",
    }


def create_cors_middleware(allowed_origins: list[str] | None = None) -> Any:
    """Create CORS middleware.

    Args:
        allowed_origins: List of allowed origins, or None for no CORS headers.
    """

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        headers = cors_headers(request.headers.get("Origin", ""), allowed_origins)
        # Error responses rendered further out reuse these
        request["cors_headers"] = headers

        # Handle preflight
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
        else:
            response = await handler(request)

        response.headers.update(headers)
        return response

    return cors_middleware


def create_body_guard_middleware(pipeline: DefensePipeline) -> Any:
    """Reject oversized bodies and non-JSON writes before anything is read."""

    @web.middleware
    async def body_guard_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        pipeline.check_envelope(
            method=request.method,
            content_length=request.content_length,
            content_type=request.headers.get("Content-Type"),
            client=_client(request),
            endpoint=request.path,
        )
        return await handler(request)  # type: ignore[no-any-return]

    return body_guard_middleware


def create_rate_limit_middleware(pipeline: DefensePipeline) -> Any:
    """Create the class-specific rate limiting middleware.

    Successful responses on skip-successful classes (login) give their
    slot back, so only failed attempts count against the budget.
    """

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        if request.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await handler(request)  # type: ignore[no-any-return]

        client = _client(request)
        endpoint_class = endpoint_class_for(request.path)
        decision = pipeline.admit(client, endpoint_class, endpoint=request.path)

        response: web.StreamResponse = await handler(request)
        pipeline.settle(
            client,
            endpoint_class,
            succeeded=response.status < 400,
            window_start=decision.window_start,
        )

        if not response.prepared:
            response.headers["RateLimit-Limit"] = str(decision.limit)
            response.headers["RateLimit-Remaining"] = str(decision.remaining)
        return response

    return rate_limit_middleware


def create_auth_middleware(jwt_secret: str) -> Any:
    """Create optional bearer-token authentication.

    Requests without an ``Authorization`` header pass through anonymously.
    A present but invalid token is rejected. A valid token attaches
    ``request["session"]``.
    """

    @web.middleware
    async def auth_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        auth_header = request.headers.get("Authorization")
        if auth_header is None:
            return await handler(request)  # type: ignore[no-any-return]

        if not auth_header.startswith("Bearer ") or not jwt_secret:
            raise errors.authentication_required("Missing or invalid Authorization header")

        token = auth_header[7:]
        try:
            request["session"] = validate_session_token(token, jwt_secret)
        except jwt.ExpiredSignatureError:
            raise errors.authentication_required("Session token has expired") from None
        except jwt.InvalidTokenError:
            raise errors.authentication_required("Invalid session token") from None

        return await handler(request)  # type: ignore[no-any-return]

    return auth_middleware


async def read_json_body(request: web.Request, max_size: int) -> Any:
    """Read and decode the request body as JSON.

    Raises:
        DefenseError: ``REQUEST_TOO_LARGE`` when the stream exceeds the
            server ceiling, ``VALIDATION_FAILED`` for malformed JSON or
            JSON the decoder refuses to build (nesting or integer size
            beyond interpreter limits).
    """
    try:
        raw = await request.read()
    except web.HTTPRequestEntityTooLarge:
        raise errors.request_too_large(None, max_size) from None
    try:
        return json.loads(raw)
    except RecursionError:
        raise errors.validation_failed(
            "Request body is not valid JSON",
            [{"field": "body", "message": "nesting too deep"}],
        ) from None
    except ValueError:
        # JSONDecodeError, UnicodeDecodeError and the integer digit limit
        raise errors.validation_failed(
            "Request body is not valid JSON",
            [{"field": "body", "message": "malformed JSON"}],
        ) from None


def create_payload_middleware(pipeline: DefensePipeline) -> Any:
    """Parse JSON bodies and route them to the detector or geometry validator.

    Attaches ``request["body"]`` for every body-carrying request, plus
    ``request["prompt_request"]`` or ``request["analysis_request"]`` on
    the guarded paths.
    """

    @web.middleware
    async def payload_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        if request.method not in _BODY_METHODS:
            return await handler(request)  # type: ignore[no-any-return]

        body = await read_json_body(request, pipeline.max_body_bytes)
        request["body"] = body
        client = _client(request)

        if request.path in PROMPT_PATHS:
            prompt_request, assessment = pipeline.inspect_prompt(
                body, client=client, endpoint=request.path
            )
            request["prompt_request"] = prompt_request
            request["risk_assessment"] = assessment
        elif request.path in GEOMETRY_PATHS:
            analysis_request, _ = pipeline.inspect_geometry(
                body, client=client, endpoint=request.path
            )
            request["analysis_request"] = analysis_request

        return await handler(request)  # type: ignore[no-any-return]

    return payload_middleware
