"""Login and session status endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

from aiohttp import web
from pydantic import ValidationError

from agrilens.api.auth import create_session_token, verify_api_key
from agrilens.logging import get_logger
from agrilens.security import errors
from agrilens.security.forensics import record
from agrilens.security.models import Severity
from agrilens.security.payloads import LoginRequest, field_errors

log = get_logger("agrilens.api.routes.auth")


async def handle_login(request: web.Request) -> web.Response:
    """POST /api/auth/login: exchange the API key for a session token.

    Failed attempts count against the auth rate budget; successful ones
    are refunded by the rate limit middleware.
    """
    settings = request.app["settings"]
    try:
        body = LoginRequest.model_validate(request.get("body"))
    except ValidationError as e:
        raise errors.validation_failed(errors=field_errors(e)) from None

    jwt_secret = settings.jwt_secret.get_secret_value()
    if not settings.auth_api_key_hash or not jwt_secret:
        log.error("login_not_configured")
        raise errors.authentication_required("Login is not available")

    if not verify_api_key(body.apiKey, settings.auth_api_key_hash):
        record(
            "auth_failed",
            Severity.MEDIUM,
            client=request.get("client", "unknown"),
            endpoint=request.path,
            detail={"reason": "invalid api key"},
        )
        raise errors.authentication_required("Invalid API key")

    token = create_session_token(jwt_secret, expiry_seconds=settings.session_expiry_seconds)
    log.info("login_succeeded", client=request.get("client", "unknown"))
    return web.json_response(
        {
            "success": True,
            "token": token,
            "expiresIn": settings.session_expiry_seconds,
        }
    )


async def handle_auth_status(request: web.Request) -> web.Response:
    """GET /api/auth/status: report whether the bearer token is valid."""
    session = request.get("session")
    if session is None:
        return web.json_response({"authenticated": False})
    return web.json_response(
        {
            "authenticated": True,
            "subject": session.get("sub"),
            "expiresAt": datetime.fromtimestamp(session["exp"], UTC).isoformat(),
        }
    )
