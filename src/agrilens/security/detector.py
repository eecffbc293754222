"""Prompt injection detector.

Scans free text bound for the generative-text backend against the
declarative catalogue in :mod:`agrilens.security.patterns`. Detection is
a pure function of the text: it either flags or it does not. The only
exception raised is ``VALIDATION_FAILED`` for non-string or oversized
input, so detector cost stays bounded.
"""

from __future__ import annotations

from agrilens.security import errors
from agrilens.security.decoders import decode_all
from agrilens.security.forensics import content_fingerprint, excerpt, record
from agrilens.security.models import (
    PatternCategory,
    RiskAssessment,
    RiskFinding,
    Severity,
)
from agrilens.security.patterns import TEXT_RULES, PatternRule, build_catalogue

DEFAULT_MAX_LENGTH = 5000
DEFAULT_FLAG_THRESHOLD = 5
DEFAULT_REPETITION_THRESHOLD = 50

# Occurrences beyond this count add nothing to the score
MAX_SCORED_OCCURRENCES = 5

# (minimum score, severity), highest first
SEVERITY_STEPS: tuple[tuple[int, Severity], ...] = (
    (20, Severity.CRITICAL),
    (15, Severity.HIGH),
    (10, Severity.MEDIUM),
    (5, Severity.LOW),
)


def severity_for_score(score: int) -> Severity:
    """Map a risk score onto the fixed severity ladder."""
    for floor, severity in SEVERITY_STEPS:
        if score >= floor:
            return severity
    return Severity.MINIMAL


def finding_score(weight: int, occurrences: int) -> int:
    """Score one finding with diminishing weight per repeated occurrence.

    The first occurrence counts in full; the i-th extra occurrence adds
    ``max(1, weight >> i)``. At most :data:`MAX_SCORED_OCCURRENCES` count.
    """
    if occurrences <= 0:
        return 0
    total = weight
    for i in range(1, min(occurrences, MAX_SCORED_OCCURRENCES)):
        total += max(1, weight >> i)
    return total


class InjectionDetector:
    """Assess free text for instruction override, exfiltration and smuggling."""

    def __init__(
        self,
        *,
        max_length: int = DEFAULT_MAX_LENGTH,
        flag_threshold: int = DEFAULT_FLAG_THRESHOLD,
        repetition_threshold: int = DEFAULT_REPETITION_THRESHOLD,
    ) -> None:
        self._max_length = max_length
        self._flag_threshold = flag_threshold
        self._catalogue = build_catalogue(repetition_threshold)

    @property
    def max_length(self) -> int:
        return self._max_length

    @property
    def catalogue(self) -> tuple[PatternRule, ...]:
        return self._catalogue

    def assess(self, text: object, *, client: str = "unknown", endpoint: str = "") -> RiskAssessment:
        """Assess *text* and log a security event when it is flagged.

        Args:
            text: Untrusted text.
            client: Client identity, for the security log only.
            endpoint: Request path, for the security log only.

        Raises:
            DefenseError: ``VALIDATION_FAILED`` if *text* is not a string
                or exceeds the configured maximum length.
        """
        if not isinstance(text, str):
            raise errors.validation_failed(
                "Text must be a string",
                [{"field": "prompt", "message": "must be a string"}],
            )
        if len(text) > self._max_length:
            raise errors.validation_failed(
                f"Text exceeds the maximum length of {self._max_length} characters",
                [
                    {
                        "field": "prompt",
                        "message": f"must be at most {self._max_length} characters",
                    }
                ],
            )

        findings = self._scan(text)
        score = sum(finding_score(f.weight, len(f.occurrences)) for f in findings)
        assessment = RiskAssessment(
            is_flagged=bool(findings) or score > self._flag_threshold,
            findings=tuple(findings),
            score=score,
            severity=severity_for_score(score),
        )

        if assessment.is_flagged:
            record(
                "prompt_injection_detected",
                assessment.severity,
                client=client,
                endpoint=endpoint,
                detail={
                    "score": assessment.score,
                    "patterns": assessment.pattern_ids,
                    "text_excerpt": excerpt(text),
                    "text_length": len(text),
                    "content_hash": content_fingerprint(text),
                },
            )
        return assessment

    def _scan(self, text: str) -> list[RiskFinding]:
        findings: list[RiskFinding] = []
        raw_counts: dict[str, int] = {}
        for rule in self._catalogue:
            occurrences = rule.occurrences(text)
            raw_counts[rule.id] = len(occurrences)
            if occurrences:
                findings.append(
                    RiskFinding(
                        pattern_id=rule.id,
                        category=rule.category,
                        occurrences=tuple(occurrences),
                        weight=rule.weight,
                    )
                )

        decoded = decode_all(text)
        if decoded != text:
            findings.extend(self._scan_decoded(decoded, raw_counts))
        return findings

    @staticmethod
    def _scan_decoded(decoded: str, raw_counts: dict[str, int]) -> list[RiskFinding]:
        """Findings that only appear once encoded sequences are unfolded."""
        hidden: list[RiskFinding] = []
        for rule in TEXT_RULES:
            occurrences = rule.occurrences(decoded)
            extra = len(occurrences) - raw_counts.get(rule.id, 0)
            if extra <= 0:
                continue
            hidden.append(
                RiskFinding(
                    pattern_id=f"encoded:{rule.id}",
                    category=PatternCategory.ENCODING,
                    occurrences=tuple(occurrences[-extra:]),
                    weight=rule.weight,
                )
            )
        return hidden
