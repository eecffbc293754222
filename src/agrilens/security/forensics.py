"""Security event logging.

Events go to the ``agrilens.security.events`` logger, which
:func:`agrilens.logging.setup_logging` routes to its own rotating file.
Sensitive fields are masked before anything is emitted.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any

from agrilens.config import get_settings
from agrilens.logging import SECURITY_LOGGER_NAME, get_logger, mask_sensitive
from agrilens.security.errors import DefenseError
from agrilens.security.models import SecurityEvent, Severity

log = get_logger(SECURITY_LOGGER_NAME)

EXCERPT_LENGTH = 200


def excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    """Truncate *text* for inclusion in a log record."""
    if len(text) <= length:
        return text
    return text[:length] + "..."


def content_fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_event(
    event_type: str,
    severity: Severity,
    *,
    client: str,
    endpoint: str,
    detail: dict[str, Any] | None = None,
) -> SecurityEvent:
    return SecurityEvent(
        event_type=event_type,
        severity=severity,
        client=client,
        endpoint=endpoint,
        timestamp=datetime.now(UTC).isoformat(),
        detail=dict(detail or {}),
    )


def log_security_event(event: SecurityEvent) -> None:
    """Emit *event* at a log level chosen by its severity."""
    detail = mask_sensitive(event.detail, get_settings().sensitive_fields)
    fields = {
        "event_type": event.event_type,
        "severity": event.severity.value,
        "client": event.client,
        "endpoint": event.endpoint,
        "timestamp": event.timestamp,
        "detail": detail,
    }
    if event.severity.rank >= Severity.HIGH.rank:
        log.error("security_event", **fields)
    elif event.severity is Severity.MEDIUM:
        log.warning("security_event", **fields)
    else:
        log.info("security_event", **fields)


def record(
    event_type: str,
    severity: Severity,
    *,
    client: str,
    endpoint: str,
    detail: dict[str, Any] | None = None,
) -> SecurityEvent:
    """Build and log a security event in one step."""
    event = build_event(event_type, severity, client=client, endpoint=endpoint, detail=detail)
    log_security_event(event)
    return event


def log_defense_error(
    err: DefenseError,
    *,
    client: str,
    endpoint: str,
    request_info: dict[str, Any] | None = None,
) -> SecurityEvent:
    """Record a rendered :class:`DefenseError` as a security event."""
    detail: dict[str, Any] = {"error": err.to_log_dict()}
    if request_info:
        detail["request"] = request_info
    return record(
        f"error.{err.kind.value.lower()}",
        err.severity,
        client=client,
        endpoint=endpoint,
        detail=detail,
    )
