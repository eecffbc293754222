"""Closed error taxonomy for the defense layer.

Every component raises :class:`DefenseError` and nothing else. The
``kind`` tag fixes the HTTP status and default severity; rendering
matches exhaustively over :class:`ErrorKind` so a new kind cannot be
added without deciding how it is shown to clients.
"""

from __future__ import annotations

import math
import traceback
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, assert_never

from agrilens.security.models import EndpointClass, Severity


class ErrorKind(StrEnum):
    """All error kinds the defense layer can produce."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    AUTHORIZATION_INSUFFICIENT = "AUTHORIZATION_INSUFFICIENT"
    EXTERNAL_SERVICE_FAILURE = "EXTERNAL_SERVICE_FAILURE"
    OPERATION_TIMED_OUT = "OPERATION_TIMED_OUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class KindProfile:
    """Fixed properties of one :class:`ErrorKind`."""

    http_status: int
    severity: Severity
    default_message: str


KIND_PROFILES: dict[ErrorKind, KindProfile] = {
    ErrorKind.VALIDATION_FAILED: KindProfile(400, Severity.LOW, "Request data is invalid"),
    ErrorKind.REQUEST_TOO_LARGE: KindProfile(413, Severity.LOW, "Request body is too large"),
    ErrorKind.UNSUPPORTED_MEDIA_TYPE: KindProfile(
        415, Severity.LOW, "Unsupported Content-Type, expected application/json"
    ),
    ErrorKind.RATE_LIMIT_EXCEEDED: KindProfile(429, Severity.LOW, "Rate limit exceeded"),
    ErrorKind.AUTHENTICATION_REQUIRED: KindProfile(401, Severity.MEDIUM, "Authentication required"),
    ErrorKind.AUTHORIZATION_INSUFFICIENT: KindProfile(403, Severity.MEDIUM, "Insufficient permissions"),
    ErrorKind.EXTERNAL_SERVICE_FAILURE: KindProfile(
        502, Severity.MEDIUM, "An upstream service failed to handle the request"
    ),
    ErrorKind.OPERATION_TIMED_OUT: KindProfile(408, Severity.LOW, "The operation timed out"),
    ErrorKind.INTERNAL_ERROR: KindProfile(500, Severity.MEDIUM, "Internal server error"),
}

_ALLOWED_SEVERITIES = frozenset({Severity.LOW, Severity.MEDIUM, Severity.HIGH})


class DefenseError(Exception):
    """The single error shape crossing the defense layer boundary.

    Attributes are read-only once constructed.
    """

    __slots__ = (
        "_kind",
        "_message",
        "_code",
        "_severity",
        "_details",
        "_errors",
        "_retry_after",
        "_timestamp",
    )

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        code: str | None = None,
        severity: Severity | None = None,
        details: dict[str, Any] | None = None,
        errors: list[dict[str, str]] | None = None,
        retry_after: float | None = None,
    ) -> None:
        profile = KIND_PROFILES[kind]
        resolved = severity or profile.severity
        if resolved not in _ALLOWED_SEVERITIES:
            raise ValueError(f"DefenseError severity must be LOW, MEDIUM or HIGH, got {resolved}")
        text = message or profile.default_message
        super().__init__(text)
        self._kind = kind
        self._message = text
        self._code = code or kind.value
        self._severity = resolved
        self._details = dict(details) if details else None
        self._errors = tuple(dict(e) for e in errors) if errors else ()
        self._retry_after = retry_after
        self._timestamp = datetime.now(UTC)

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def http_status(self) -> int:
        return KIND_PROFILES[self._kind].http_status

    @property
    def message(self) -> str:
        return self._message

    @property
    def code(self) -> str:
        return self._code

    @property
    def severity(self) -> Severity:
        return self._severity

    @property
    def details(self) -> dict[str, Any] | None:
        return dict(self._details) if self._details else None

    @property
    def errors(self) -> list[dict[str, str]]:
        return [dict(e) for e in self._errors]

    @property
    def retry_after(self) -> float | None:
        return self._retry_after

    @property
    def retry_after_seconds(self) -> int | None:
        """Whole seconds for the ``retryAfter`` field and header (at least 1)."""
        if self._retry_after is None:
            return None
        return max(1, math.ceil(self._retry_after))

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    def __repr__(self) -> str:
        return f"DefenseError(kind={self._kind.value}, code={self._code!r}, message={self._message!r})"

    def to_log_dict(self) -> dict[str, Any]:
        """Unredacted representation for the security log (masked downstream)."""
        data: dict[str, Any] = {
            "kind": self._kind.value,
            "code": self._code,
            "http_status": self.http_status,
            "message": self._message,
            "severity": self._severity.value,
            "timestamp": self._timestamp.isoformat(),
        }
        if self._details:
            data["details"] = dict(self._details)
        if self._errors:
            data["errors"] = self.errors
        if self._retry_after is not None:
            data["retry_after"] = round(self._retry_after, 3)
        return data


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def validation_failed(
    message: str = "Request data is invalid",
    errors: list[dict[str, str]] | None = None,
    *,
    details: dict[str, Any] | None = None,
) -> DefenseError:
    return DefenseError(ErrorKind.VALIDATION_FAILED, message, errors=errors, details=details)


def request_too_large(size: int | None, max_size: int) -> DefenseError:
    return DefenseError(
        ErrorKind.REQUEST_TOO_LARGE,
        f"Request body exceeds the {max_size} byte limit",
        details={"size": size, "maxSize": max_size},
    )


def unsupported_media_type(content_type: str | None) -> DefenseError:
    return DefenseError(
        ErrorKind.UNSUPPORTED_MEDIA_TYPE,
        details={"contentType": content_type or ""},
    )


def rate_limit_exceeded(endpoint_class: EndpointClass, retry_after: float) -> DefenseError:
    """429 for one endpoint class; the auth class is treated as a brute-force signal."""
    severity = Severity.HIGH if endpoint_class is EndpointClass.AUTH else Severity.LOW
    return DefenseError(
        ErrorKind.RATE_LIMIT_EXCEEDED,
        f"Rate limit exceeded for {endpoint_class.value} requests",
        code=f"RATE_LIMIT_{endpoint_class.value.upper()}",
        severity=severity,
        retry_after=retry_after,
        details={"endpointClass": endpoint_class.value},
    )


def authentication_required(message: str = "Authentication required") -> DefenseError:
    return DefenseError(ErrorKind.AUTHENTICATION_REQUIRED, message)


def authorization_insufficient(required_role: str | None = None) -> DefenseError:
    return DefenseError(
        ErrorKind.AUTHORIZATION_INSUFFICIENT,
        details={"requiredRole": required_role} if required_role else None,
    )


def external_service_failure(
    service: str,
    *,
    reason: str,
    upstream_status: int | None = None,
    cause: str | None = None,
) -> DefenseError:
    """Upstream failure; *reason* is ``"unavailable"`` or ``"rejected"``."""
    details: dict[str, Any] = {"service": service, "reason": reason}
    if upstream_status is not None:
        details["upstreamStatus"] = upstream_status
    if cause:
        details["cause"] = cause
    if reason == "rejected":
        message = f"{service} rejected the request"
    else:
        message = f"{service} is unavailable"
    return DefenseError(ErrorKind.EXTERNAL_SERVICE_FAILURE, message, details=details)


def operation_timed_out(operation: str, timeout_seconds: float) -> DefenseError:
    return DefenseError(
        ErrorKind.OPERATION_TIMED_OUT,
        f"{operation} timed out after {timeout_seconds:g}s",
        details={"operation": operation, "timeoutSeconds": timeout_seconds},
    )


def internal_error(exc: BaseException | None = None, *, unexpected: bool = False) -> DefenseError:
    """Wrap an internal failure; unexpected exceptions are HIGH severity."""
    details = None
    if exc is not None:
        details = {
            "exception": type(exc).__name__,
            "error": str(exc),
            "stack": "".join(traceback.format_exception(exc)),
        }
    err = DefenseError(
        ErrorKind.INTERNAL_ERROR,
        severity=Severity.HIGH if unexpected else Severity.MEDIUM,
        details=details,
    )
    if exc is not None:
        err.__cause__ = exc
    return err


def ensure_defense_error(exc: BaseException) -> DefenseError:
    """Return *exc* if already typed, otherwise wrap it as an unexpected internal error."""
    if isinstance(exc, DefenseError):
        return exc
    return internal_error(exc, unexpected=True)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_error(err: DefenseError, *, expose_details: bool = False) -> dict[str, Any]:
    """Build the client-facing JSON body for *err*.

    ``details`` and ``stack`` are only included when *expose_details* is
    set (non-production configurations).
    """
    body: dict[str, Any] = {
        "error": True,
        "code": err.code,
        "message": err.message,
        "timestamp": err.timestamp.isoformat(),
    }

    kind = err.kind
    match kind:
        case ErrorKind.VALIDATION_FAILED:
            body["errors"] = err.errors
        case ErrorKind.RATE_LIMIT_EXCEEDED:
            body["retryAfter"] = err.retry_after_seconds
        case ErrorKind.REQUEST_TOO_LARGE:
            if err.details:
                body["maxSize"] = err.details.get("maxSize")
        case ErrorKind.AUTHORIZATION_INSUFFICIENT:
            if err.details and err.details.get("requiredRole"):
                body["requiredRole"] = err.details["requiredRole"]
        case ErrorKind.EXTERNAL_SERVICE_FAILURE:
            if err.details:
                body["service"] = err.details.get("service")
                body["reason"] = err.details.get("reason")
        case (
            ErrorKind.UNSUPPORTED_MEDIA_TYPE
            | ErrorKind.AUTHENTICATION_REQUIRED
            | ErrorKind.OPERATION_TIMED_OUT
            | ErrorKind.INTERNAL_ERROR
        ):
            pass
        case _:
            assert_never(kind)

    if expose_details:
        details = err.details
        if details:
            stack = details.pop("stack", None)
            body["details"] = details
            if stack:
                body["stack"] = stack
        elif err.__traceback__ is not None:
            body["stack"] = "".join(traceback.format_tb(err.__traceback__))

    return body


def response_headers(err: DefenseError) -> dict[str, str]:
    """Extra HTTP headers for *err* (``Retry-After`` on 429)."""
    if err.kind is ErrorKind.RATE_LIMIT_EXCEEDED and err.retry_after_seconds is not None:
        return {"Retry-After": str(err.retry_after_seconds)}
    return {}
