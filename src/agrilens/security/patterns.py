"""Declarative catalogue of injection patterns.

Each :class:`PatternRule` pairs a compiled matcher with a category and an
integer weight. The detector evaluates the table in order and never
special-cases an entry, so rules can be added or tuned here without
touching control flow.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from agrilens.security.models import PatternCategory

# ---------------------------------------------------------------------------
# Category weights
# ---------------------------------------------------------------------------

CATEGORY_WEIGHTS: dict[PatternCategory, int] = {
    PatternCategory.INSTRUCTION_OVERRIDE: 10,
    PatternCategory.IDENTITY_HIJACK: 10,
    PatternCategory.EXFILTRATION: 8,
    PatternCategory.ROLE_DELIMITER: 7,
    PatternCategory.SCRIPT_INJECTION: 6,
    PatternCategory.COMMAND_INJECTION: 5,
    PatternCategory.SQL_INJECTION: 5,
    PatternCategory.REPETITION: 4,
    PatternCategory.ENCODING: 3,
    PatternCategory.OVERSIZED_TOKEN: 3,
}

# Upper bound on occurrences collected per rule in one pass
MAX_OCCURRENCES = 50


@dataclass(frozen=True)
class PatternRule:
    """One catalogue entry."""

    id: str
    category: PatternCategory
    matcher: re.Pattern[str]
    weight: int

    def occurrences(self, text: str) -> list[str]:
        """Return matched substrings (each capped at 100 chars)."""
        found: list[str] = []
        for match in self.matcher.finditer(text):
            found.append(match.group(0)[:100])
            if len(found) >= MAX_OCCURRENCES:
                break
        return found


def _rule(
    rule_id: str,
    category: PatternCategory,
    pattern: str,
    flags: int = re.IGNORECASE,
    weight: int | None = None,
) -> PatternRule:
    return PatternRule(
        id=rule_id,
        category=category,
        matcher=re.compile(pattern, flags),
        weight=CATEGORY_WEIGHTS[category] if weight is None else weight,
    )


_IGNORE_CASE_MULTILINE = re.IGNORECASE | re.MULTILINE

# ---------------------------------------------------------------------------
# Catalogue (evaluated in this order)
# ---------------------------------------------------------------------------

_OVERRIDE = PatternCategory.INSTRUCTION_OVERRIDE
_IDENTITY = PatternCategory.IDENTITY_HIJACK
_EXFIL = PatternCategory.EXFILTRATION
_DELIM = PatternCategory.ROLE_DELIMITER
_SCRIPT = PatternCategory.SCRIPT_INJECTION
_CMD = PatternCategory.COMMAND_INJECTION
_SQL = PatternCategory.SQL_INJECTION

TEXT_RULES: tuple[PatternRule, ...] = (
    # --- Instruction override ---
    _rule(
        "ignore_instructions",
        _OVERRIDE,
        r"\bignore\s+(?:all\s+)?(?:(?:previous|prior|earlier|above|the)\s+)?"
        r"(?:instructions?|commands?|rules?|prompts?)",
    ),
    _rule(
        "disregard_instructions",
        _OVERRIDE,
        r"\bdisregard\s+(?:all\s+|your\s+|the\s+)?(?:previous\s+|prior\s+)?"
        r"(?:instructions?|commands?|rules?)",
    ),
    _rule("forget_everything", _OVERRIDE, r"\bforget\s+(?:everything|all|previous|your\s+rules)\b"),
    _rule(
        "override_instructions",
        _OVERRIDE,
        r"\boverride\s+(?:your|all|the|system)\s+(?:instructions?|commands?|settings?|rules?)",
    ),
    _rule("new_instructions", _OVERRIDE, r"\bnew\s+(?:instructions?|rules?)\s*:"),
    # --- Role / identity hijacking ---
    _rule("you_are_now", _IDENTITY, r"\byou\s+are\s+now\b"),
    _rule(
        "act_as",
        _IDENTITY,
        r"\bact\s+as\s+(?:if\s+you|though\s+you|my\b|an?\s+(?:different|unrestricted|new)\b|"
        r"(?:an?\s+|the\s+)?(?:ai|assistant|system|admin(?:istrator)?|developer|dan)\b)",
    ),
    _rule("pretend_to_be", _IDENTITY, r"\bpretend\s+(?:to\s+be|you\s+are)\b"),
    _rule("roleplay_as", _IDENTITY, r"\brole-?play\s+as\b"),
    _rule("jailbreak", _IDENTITY, r"\bjailbreak(?:ing)?\b|\bdan\s+mode\b"),
    _rule(
        "developer_mode",
        _IDENTITY,
        r"\b(?:enable|activate)\s+developer\s+mode\b|\bdeveloper\s+mode\s+(?:on|enabled?)\b",
    ),
    # --- Exfiltration of internal state ---
    _rule(
        "reveal_prompt",
        _EXFIL,
        r"\b(?:reveal|show|print|repeat|tell)\s+(?:me\s+)?(?:your\s+|the\s+)?"
        r"(?:system\s+|internal\s+|hidden\s+|initial\s+)?(?:prompt|instructions)",
    ),
    _rule(
        "ask_prompt",
        _EXFIL,
        r"\bwhat\s+(?:is\s+|are\s+)?(?:your\s+)?(?:system\s+|internal\s+|hidden\s+)"
        r"(?:prompt|instructions)",
    ),
    # --- Role delimiter spoofing ---
    _rule(
        "role_prefix",
        _DELIM,
        r"^\s*(?:system|assistant|human|user)\s*:",
        flags=_IGNORE_CASE_MULTILINE,
    ),
    _rule(
        "chat_template_token",
        _DELIM,
        r"\[/?(?:INST|SYS)\]|<<\s*/?SYS\s*>>|<\|im_(?:start|end)\|>",
    ),
    # --- Markup / script injection ---
    _rule("script_tag", _SCRIPT, r"<\s*script\b[^>]*>"),
    _rule("javascript_scheme", _SCRIPT, r"\bjavascript\s*:"),
    _rule("event_handler", _SCRIPT, r"<[^>]*\bon[a-z]+\s*=", weight=5),
    _rule("eval_call", _SCRIPT, r"\beval\s*\("),
    _rule("function_literal", _SCRIPT, r"\bfunction\s*\("),
    _rule("dom_access", _SCRIPT, r"\b(?:document|window)\.[a-z_]", weight=4),
    # --- Command metacharacters and path traversal ---
    _rule(
        "shell_chain",
        _CMD,
        r"(?:\||;|&&)\s*(?:ls|cat|pwd|whoami|id|ps|netstat|rm|curl|wget)\b",
    ),
    _rule("path_traversal", _CMD, r"\.\./|\.\.\\|\.\.%2f|%2e%2e%2f"),
    _rule("sensitive_path", _CMD, r"/etc/passwd|/proc/self/environ"),
    # --- SQL ---
    _rule("union_select", _SQL, r"\bunion\s+(?:all\s+)?select\b"),
    _rule("drop_table", _SQL, r"\bdrop\s+table\b"),
    _rule("delete_from", _SQL, r"\bdelete\s+from\b"),
    _rule("insert_into", _SQL, r"\binsert\s+into\b"),
)

# Encoded sequences; decoded text is re-scanned against TEXT_RULES.
ENCODING_RULES: tuple[PatternRule, ...] = (
    _rule("percent_encoding", PatternCategory.ENCODING, r"(?:%[0-9a-f]{2})+"),
    _rule("unicode_escape", PatternCategory.ENCODING, r"(?:\\u[0-9a-f]{4})+"),
    _rule("html_entity", PatternCategory.ENCODING, r"(?:&#(?:x[0-9a-f]+|[0-9]+);)+"),
)

_OVERSIZED_TOKEN_LENGTH = 500


def oversized_token_rule(length: int = _OVERSIZED_TOKEN_LENGTH) -> PatternRule:
    return _rule("oversized_token", PatternCategory.OVERSIZED_TOKEN, rf"\S{{{length},}}", flags=0)


def repetition_rule(threshold: int) -> PatternRule:
    """Rule matching a 1-10 char substring repeated more than *threshold* times."""
    return _rule(
        "degenerate_repetition",
        PatternCategory.REPETITION,
        rf"(.{{1,10}}?)\1{{{threshold},}}",
        flags=re.DOTALL,
    )


def build_catalogue(repetition_threshold: int) -> tuple[PatternRule, ...]:
    """Full ordered catalogue for one detector configuration."""
    return (
        *TEXT_RULES,
        *ENCODING_RULES,
        repetition_rule(repetition_threshold),
        oversized_token_rule(),
    )

