"""Request defense package: injection detection, geometry validation, rate limiting.

Public API
----------
- :class:`DefensePipeline`: compose the checks in their fixed order
- :class:`InjectionDetector`: score free text against the pattern catalogue
- :class:`GeometryValidator`: structural GeoJSON validation
- :class:`FixedWindowRateLimiter`, :class:`InMemoryRateWindowStore`: per-class budgets
- :class:`DefenseError`, :class:`ErrorKind`: the closed error taxonomy
"""

from agrilens.security.detector import InjectionDetector, severity_for_score
from agrilens.security.errors import DefenseError, ErrorKind, render_error
from agrilens.security.geometry import GeometryValidator
from agrilens.security.models import (
    EndpointClass,
    GeometryValidationResult,
    GeoPayload,
    RateDecision,
    RiskAssessment,
    RiskFinding,
    Severity,
)
from agrilens.security.pipeline import DefensePipeline
from agrilens.security.rate_limiter import (
    FixedWindowRateLimiter,
    InMemoryRateWindowStore,
    RatePolicy,
)

__all__ = [
    "DefenseError",
    "DefensePipeline",
    "EndpointClass",
    "ErrorKind",
    "FixedWindowRateLimiter",
    "GeoPayload",
    "GeometryValidationResult",
    "GeometryValidator",
    "InMemoryRateWindowStore",
    "InjectionDetector",
    "RateDecision",
    "RatePolicy",
    "RiskAssessment",
    "RiskFinding",
    "Severity",
    "render_error",
    "severity_for_score",
]
