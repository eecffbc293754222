"""Data models for the request defense layer."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Severity(StrEnum):
    """Coarse triage ordinal attached to security-relevant events."""

    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = (
    Severity.MINIMAL,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
)


class PatternCategory(StrEnum):
    """Categories of the injection pattern catalogue."""

    INSTRUCTION_OVERRIDE = "instruction_override"
    IDENTITY_HIJACK = "identity_hijack"
    EXFILTRATION = "exfiltration"
    ROLE_DELIMITER = "role_delimiter"
    SCRIPT_INJECTION = "script_injection"
    COMMAND_INJECTION = "command_injection"
    SQL_INJECTION = "sql_injection"
    ENCODING = "encoding"
    REPETITION = "repetition"
    OVERSIZED_TOKEN = "oversized_token"  # nosec B105


class EndpointClass(StrEnum):
    """Route categories sharing one rate-limit policy."""

    AI = "ai"
    ANALYSIS = "analysis"
    AUTH = "auth"
    GENERAL = "general"


class GeometryKind(StrEnum):
    """Geometry types the validator knows how to check."""

    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"


@dataclass(frozen=True)
class RiskFinding:
    """One matched catalogue entry."""

    pattern_id: str
    category: PatternCategory
    occurrences: tuple[str, ...]
    weight: int


@dataclass(frozen=True)
class RiskAssessment:
    """Aggregate result of injection detection over one text."""

    is_flagged: bool
    findings: tuple[RiskFinding, ...]
    score: int
    severity: Severity

    @property
    def pattern_ids(self) -> list[str]:
        return [f.pattern_id for f in self.findings]


@dataclass(frozen=True)
class GeoPayload:
    """Untrusted geometry taken from a request body."""

    kind: Any
    coordinates: Any

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> GeoPayload:
        """Build from a GeoJSON-style ``{"type": ..., "coordinates": ...}`` mapping."""
        return cls(kind=data.get("type"), coordinates=data.get("coordinates"))


@dataclass(frozen=True)
class GeometryValidationResult:
    """Outcome of validating one :class:`GeoPayload`."""

    valid: bool
    reason: str | None = None
    measured_depth: int = 0
    measured_coordinate_count: int = 0


@dataclass
class RateWindow:
    """Fixed-window counter for one (client key, endpoint class) pair."""

    key: str
    endpoint_class: EndpointClass
    window_start: float
    count: int
    limit: int
    window_seconds: float
    last_seen: float = 0.0

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def retry_after(self, now: float) -> float:
        return max(0.0, self.window_start + self.window_seconds - now)


@dataclass(frozen=True)
class RateDecision:
    """Result of one admission check."""

    accepted: bool
    limit: int
    remaining: int
    retry_after: float | None = None
    # Start of the window that counted the request
    window_start: float | None = None


@dataclass(frozen=True)
class SecurityEvent:
    """Structured record handed to the security log."""

    event_type: str
    severity: Severity
    client: str
    endpoint: str
    timestamp: str
    detail: dict[str, Any] = field(default_factory=dict)
