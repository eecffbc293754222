"""Decoders for obfuscated prompt content.

Percent-encoding, ``\\uXXXX`` escapes and HTML entities are unfolded so
the pattern catalogue can be re-run on what the backend would actually
read.
"""

from __future__ import annotations

import html
import re
from urllib.parse import unquote

_UNICODE_ESCAPE = re.compile(r"\\u([0-9a-fA-F]{4})")

# Nested encodings (e.g. percent-encoded entities) are unfolded this many times
_MAX_PASSES = 3


def _decode_unicode_escapes(text: str) -> str:
    return _UNICODE_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), text)


def decode_once(text: str) -> str:
    """Apply every decoder a single time."""
    decoded = unquote(text)
    decoded = _decode_unicode_escapes(decoded)
    return html.unescape(decoded)


def decode_all(text: str) -> str:
    """Decode repeatedly until the text stops changing (bounded)."""
    current = text
    for _ in range(_MAX_PASSES):
        decoded = decode_once(current)
        if decoded == current:
            break
        current = decoded
    return current
