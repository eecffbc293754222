"""Defense pipeline composition.

Owns the rate-window store and the three checks, and exposes one method
per stage of the fixed chain:

    size / content-type -> rate limit -> payload validation -> handler

Every stage either returns normally or raises :class:`DefenseError`,
which short-circuits the chain. Nothing here retries.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from agrilens.config import Settings
from agrilens.logging import get_logger
from agrilens.security import errors
from agrilens.security.detector import InjectionDetector
from agrilens.security.forensics import record
from agrilens.security.geometry import GeometryValidator
from agrilens.security.models import (
    EndpointClass,
    GeometryValidationResult,
    GeoPayload,
    RateDecision,
    RiskAssessment,
    Severity,
)
from agrilens.security.payloads import AnalysisRequest, PromptRequest, field_errors
from agrilens.security.rate_limiter import (
    Clock,
    FixedWindowRateLimiter,
    InMemoryRateWindowStore,
    RatePolicy,
    RateWindowStore,
)

log = get_logger("agrilens.security.pipeline")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})
JSON_CONTENT_TYPE = "application/json"


class DefensePipeline:
    """Run the request defense checks in order."""

    def __init__(
        self,
        *,
        detector: InjectionDetector,
        geometry_validator: GeometryValidator,
        rate_limiter: FixedWindowRateLimiter,
        max_body_bytes: int = 1024 * 1024,
        prompt_min_length: int = 1,
        allowed_models: list[str] | None = None,
        rate_limit_enabled: bool = True,
    ) -> None:
        self._detector = detector
        self._geometry_validator = geometry_validator
        self._rate_limiter = rate_limiter
        self._max_body_bytes = max_body_bytes
        self._prompt_min_length = prompt_min_length
        self._allowed_models = list(allowed_models) if allowed_models else []
        self._rate_limit_enabled = rate_limit_enabled

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: RateWindowStore | None = None,
        clock: Clock | None = None,
    ) -> DefensePipeline:
        """Build a pipeline that owns a fresh (or the given) window store."""
        policies = {
            EndpointClass.AI: RatePolicy(
                settings.rate_limit_ai_max, settings.rate_limit_ai_window_seconds
            ),
            EndpointClass.ANALYSIS: RatePolicy(
                settings.rate_limit_analysis_max, settings.rate_limit_analysis_window_seconds
            ),
            EndpointClass.AUTH: RatePolicy(
                settings.rate_limit_auth_max,
                settings.rate_limit_auth_window_seconds,
                skip_successful=True,
            ),
            EndpointClass.GENERAL: RatePolicy(
                settings.rate_limit_general_max, settings.rate_limit_general_window_seconds
            ),
        }
        limiter_kwargs: dict[str, Any] = {"sweep_interval": settings.rate_limit_sweep_seconds}
        if clock is not None:
            limiter_kwargs["clock"] = clock
        rate_limiter = FixedWindowRateLimiter(
            store if store is not None else InMemoryRateWindowStore(),
            policies,
            **limiter_kwargs,
        )

        rate_limit_enabled = True
        if settings.skip_rate_limit:
            if settings.is_development:
                log.warning("rate_limit_disabled", environment=settings.environment)
                rate_limit_enabled = False
            else:
                log.warning("skip_rate_limit_ignored", environment=settings.environment)

        return cls(
            detector=InjectionDetector(
                max_length=settings.prompt_max_length,
                flag_threshold=settings.injection_flag_threshold,
                repetition_threshold=settings.repetition_threshold,
            ),
            geometry_validator=GeometryValidator(
                allowed_kinds=settings.geo_allowed_types,
                max_coordinates=settings.geo_max_coordinates,
                max_nesting=settings.geo_max_nesting,
                lng_bounds=(settings.geo_lng_min, settings.geo_lng_max),
                lat_bounds=(settings.geo_lat_min, settings.geo_lat_max),
            ),
            rate_limiter=rate_limiter,
            max_body_bytes=settings.max_body_bytes,
            prompt_min_length=settings.prompt_min_length,
            allowed_models=settings.allowed_models,
            rate_limit_enabled=rate_limit_enabled,
        )

    @property
    def detector(self) -> InjectionDetector:
        return self._detector

    @property
    def geometry_validator(self) -> GeometryValidator:
        return self._geometry_validator

    @property
    def rate_limiter(self) -> FixedWindowRateLimiter:
        return self._rate_limiter

    @property
    def max_body_bytes(self) -> int:
        return self._max_body_bytes

    # ------------------------------------------------------------------
    # Stage 1: size and content type
    # ------------------------------------------------------------------

    def check_envelope(
        self,
        *,
        method: str,
        content_length: int | None,
        content_type: str | None,
        client: str,
        endpoint: str,
    ) -> None:
        """Reject oversized bodies and non-JSON mutating requests."""
        if content_length is not None and content_length > self._max_body_bytes:
            record(
                "request_too_large",
                Severity.LOW,
                client=client,
                endpoint=endpoint,
                detail={"content_length": content_length, "max_size": self._max_body_bytes},
            )
            raise errors.request_too_large(content_length, self._max_body_bytes)

        if method.upper() in MUTATING_METHODS:
            if not content_type or content_type.split(";")[0].strip().lower() != JSON_CONTENT_TYPE:
                raise errors.unsupported_media_type(content_type)

    # ------------------------------------------------------------------
    # Stage 2: rate limit
    # ------------------------------------------------------------------

    def admit(self, client: str, endpoint_class: EndpointClass, *, endpoint: str) -> RateDecision:
        """Count the request; raise ``RATE_LIMIT_EXCEEDED`` when over budget."""
        if not self._rate_limit_enabled:
            policy = self._rate_limiter.policy(endpoint_class)
            return RateDecision(accepted=True, limit=policy.limit, remaining=policy.limit)

        decision = self._rate_limiter.admit(client, endpoint_class)
        if decision.accepted:
            return decision

        retry_after = decision.retry_after or 0.0
        err = errors.rate_limit_exceeded(endpoint_class, retry_after)
        event_type = (
            "auth_rate_limit_exceeded"
            if endpoint_class is EndpointClass.AUTH
            else "rate_limit_exceeded"
        )
        detail: dict[str, Any] = {
            "endpoint_class": endpoint_class.value,
            "limit": decision.limit,
            "retry_after": round(retry_after, 3),
        }
        if endpoint_class is EndpointClass.AUTH:
            detail["signal"] = "possible credential guessing"
        record(event_type, err.severity, client=client, endpoint=endpoint, detail=detail)
        raise err

    def settle(
        self,
        client: str,
        endpoint_class: EndpointClass,
        *,
        succeeded: bool,
        window_start: float | None = None,
    ) -> None:
        """Refund the slot of a successful request on a skip-successful class.

        *window_start* comes from the admitting decision; a window that
        rolled over in the meantime is left untouched.
        """
        if not self._rate_limit_enabled or not succeeded:
            return
        if self._rate_limiter.policy(endpoint_class).skip_successful:
            self._rate_limiter.release(client, endpoint_class, window_start=window_start)

    # ------------------------------------------------------------------
    # Stage 3: payload validation
    # ------------------------------------------------------------------

    def inspect_prompt(
        self, body: Any, *, client: str, endpoint: str
    ) -> tuple[PromptRequest, RiskAssessment]:
        """Validate a free-text body and run the injection detector.

        Raises:
            DefenseError: ``VALIDATION_FAILED`` for malformed bodies,
                disallowed models, bad lengths, or flagged prompts.
        """
        try:
            request = PromptRequest.model_validate(body)
        except ValidationError as e:
            raise errors.validation_failed(errors=field_errors(e)) from None

        field_problems: list[dict[str, str]] = []
        if len(request.prompt) < self._prompt_min_length:
            field_problems.append(
                {
                    "field": "prompt",
                    "message": f"must be at least {self._prompt_min_length} characters",
                }
            )
        if len(request.prompt) > self._detector.max_length:
            field_problems.append(
                {
                    "field": "prompt",
                    "message": f"must be at most {self._detector.max_length} characters",
                }
            )
        if request.model is not None and self._allowed_models:
            if request.model not in self._allowed_models:
                field_problems.append({"field": "model", "message": "unsupported model"})
        if field_problems:
            raise errors.validation_failed(errors=field_problems)

        assessment = self._detector.assess(request.prompt, client=client, endpoint=endpoint)
        if assessment.is_flagged:
            raise errors.validation_failed(
                "The prompt was rejected for security reasons",
                [{"field": "prompt", "message": "prompt contains disallowed content"}],
                details={
                    "score": assessment.score,
                    "severity": assessment.severity.value,
                    "patterns": assessment.pattern_ids,
                },
            )
        return request, assessment

    def inspect_geometry(
        self, body: Any, *, client: str, endpoint: str
    ) -> tuple[AnalysisRequest, GeometryValidationResult]:
        """Validate a geometry body.

        Raises:
            DefenseError: ``VALIDATION_FAILED`` with the failing rule as
                the ``aoiGeoJSON`` field message.
        """
        try:
            request = AnalysisRequest.model_validate(body)
        except ValidationError as e:
            raise errors.validation_failed(errors=field_errors(e)) from None

        geometry = request.aoiGeoJSON
        result = self._geometry_validator.validate(
            GeoPayload(kind=geometry.type, coordinates=geometry.coordinates)
        )
        if not result.valid:
            record(
                "geometry_rejected",
                Severity.LOW,
                client=client,
                endpoint=endpoint,
                detail={
                    "geometry_type": str(geometry.type)[:40],
                    "reason": result.reason,
                    "depth": result.measured_depth,
                    "coordinate_count": result.measured_coordinate_count,
                },
            )
            raise errors.validation_failed(
                "Invalid GeoJSON geometry",
                [{"field": "aoiGeoJSON", "message": result.reason or "invalid geometry"}],
            )
        return request, result
