"""Authentication utilities for the field-monitoring API.

Handles login API key verification (bcrypt) and session token
management (JWT).
"""

from __future__ import annotations

import secrets
import time
from typing import Any

import bcrypt  # type: ignore[import-not-found]
import jwt  # type: ignore[import-not-found]

from agrilens.logging import get_logger

log = get_logger("agrilens.api.auth")

# ---------------------------------------------------------------------------
# API Key management
# ---------------------------------------------------------------------------


def hash_api_key(api_key: str) -> str:
    """Return the bcrypt hash to configure as ``AUTH_API_KEY_HASH``."""
    return bcrypt.hashpw(api_key.encode(), bcrypt.gensalt()).decode()


def verify_api_key(provided_key: str, stored_hash: str) -> bool:
    """Verify an API key against its stored bcrypt hash."""
    try:
        result: bool = bcrypt.checkpw(provided_key.encode(), stored_hash.encode())
        return result
    except (ValueError, TypeError):
        return False


# ---------------------------------------------------------------------------
# Session token management (JWT)
# ---------------------------------------------------------------------------

SESSION_TOKEN_PREFIX = "al_sess_"  # nosec B105
_DEFAULT_EXPIRY_SECONDS = 86400  # 24 hours


def create_session_token(
    secret: str,
    *,
    subject: str = "field-monitor",
    expiry_seconds: int = _DEFAULT_EXPIRY_SECONDS,
) -> str:
    """Create a signed JWT session token.

    Args:
        secret: JWT signing secret.
        subject: Principal the session belongs to.
        expiry_seconds: Token lifetime in seconds (default 24h).

    Returns:
        Prefixed JWT string (``al_sess_<jwt>``).
    """
    now = int(time.time())
    payload = {
        "sub": subject,
        "sid": secrets.token_hex(8),
        "iat": now,
        "exp": now + expiry_seconds,
    }
    encoded = jwt.encode(payload, secret, algorithm="HS256")
    return f"{SESSION_TOKEN_PREFIX}{encoded}"


def validate_session_token(token: str, secret: str) -> dict[str, Any]:
    """Validate and decode a session token.

    Raises:
        jwt.ExpiredSignatureError: Token has expired.
        jwt.InvalidTokenError: Token is invalid.
    """
    if token.startswith(SESSION_TOKEN_PREFIX):
        token = token[len(SESSION_TOKEN_PREFIX) :]
    result: dict[str, Any] = jwt.decode(token, secret, algorithms=["HS256"])
    return result
