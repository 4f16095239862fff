"""Threat-pattern detection and field sanitization for untrusted tabular input."""

from __future__ import annotations

import html
import math
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum


class ThreatFamily(str, Enum):
    SQL_INJECTION = "sql_injection"
    SCRIPT_INJECTION = "script_injection"
    FORMULA_INJECTION = "formula_injection"
    COMMAND_INJECTION = "command_injection"
    PATH_TRAVERSAL = "path_traversal"
    BINARY_CONTENT = "binary_content"


@dataclass(frozen=True)
class ThreatMatch:
    family: ThreatFamily
    pattern: str
    column: str | None = None


_THREAT_PATTERNS: dict[ThreatFamily, tuple[re.Pattern[str], ...]] = {
    ThreatFamily.SQL_INJECTION: (
        re.compile(r"\bunion\b\s+(?:all\s+)?\bselect\b", re.IGNORECASE),
        re.compile(r"\bselect\s+(?:\*|\w+(?:\s*,\s*\w+)+)\s+from\b", re.IGNORECASE),
        re.compile(r"\binsert\s+into\b", re.IGNORECASE),
        re.compile(r"\bdelete\s+from\b", re.IGNORECASE),
        re.compile(r"\bdrop\s+(?:table|database)\b", re.IGNORECASE),
        re.compile(r"\bupdate\s+\w+\s+set\b", re.IGNORECASE),
        re.compile(r"\bexec(?:ute)?\s*\(", re.IGNORECASE),
        re.compile(r"'\s*or\s+'?\d+'?\s*=\s*'?\d+", re.IGNORECASE),
        re.compile(r";\s*--"),
        re.compile(r"/\*.*?\*/"),
    ),
    ThreatFamily.SCRIPT_INJECTION: (
        re.compile(r"<\s*script\b", re.IGNORECASE),
        re.compile(r"<\s*/\s*script\s*>", re.IGNORECASE),
        re.compile(r"<\s*(?:iframe|object|embed|svg)\b", re.IGNORECASE),
        re.compile(r"\b(?:javascript|vbscript)\s*:", re.IGNORECASE),
        re.compile(r"\bon(?:load|error|click|mouseover|focus)\s*=", re.IGNORECASE),
        re.compile(r"\beval\s*\(", re.IGNORECASE),
        re.compile(r"data:text/html", re.IGNORECASE),
    ),
    ThreatFamily.COMMAND_INJECTION: (
        re.compile(
            r"[;&|`]\s*(?:rm|cat|curl|wget|bash|sh|nc|chmod|powershell|cmd)\b",
            re.IGNORECASE,
        ),
        re.compile(r"\$\([^)]*\)"),
        re.compile(r"`[^`]+`"),
    ),
    ThreatFamily.PATH_TRAVERSAL: (
        re.compile(r"\.\.[/\\]"),
        re.compile(r"%2e%2e(?:%2f|%5c|/|\\)", re.IGNORECASE),
        re.compile(r"/etc/(?:passwd|shadow)", re.IGNORECASE),
        re.compile(r"[A-Za-z]:\\windows\\", re.IGNORECASE),
    ),
}

# Spreadsheet formula triggers; only meaningful at the start of a cell.
_FORMULA_PATTERN = re.compile(r"^\s*[=+@]")
_FORMULA_FUNCTION_PATTERN = re.compile(r"^\s*-\s*[A-Za-z]+\s*\(")
_NUMERIC_PATTERN = re.compile(r"^\s*[+-]?\d+(?:\.\d+)?\s*$")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9_-]")

BINARY_CONTROL_RATIO = 0.01
HIGH_ENTROPY_BITS = 7.5
# Long unbroken cells this random are treated as encoded payloads.
_ENCODED_MIN_LENGTH = 64
_ENCODED_ENTROPY_BITS = 4.5


def scan_value(value: str, column: str | None = None) -> list[ThreatMatch]:
    """Return every threat family the value matches (at most one match per family)."""
    matches: list[ThreatMatch] = []
    if "\x00" in value:
        matches.append(ThreatMatch(ThreatFamily.BINARY_CONTENT, "NUL byte", column))
    elif _looks_encoded(value):
        matches.append(ThreatMatch(ThreatFamily.BINARY_CONTENT, "high entropy", column))
    for family, patterns in _THREAT_PATTERNS.items():
        for pattern in patterns:
            if pattern.search(value):
                matches.append(ThreatMatch(family, pattern.pattern, column))
                break
    if _is_formula(value):
        matches.append(ThreatMatch(ThreatFamily.FORMULA_INJECTION, "leading formula", column))
    return matches


def looks_binary(text: str) -> bool:
    """NUL bytes, or control characters above 1% of the content."""
    if not text:
        return False
    if "\x00" in text:
        return True
    control = len(_CONTROL_CHARS.findall(text))
    return control / len(text) > BINARY_CONTROL_RATIO


def shannon_entropy(data: bytes) -> float:
    """Bits per byte, 0.0 for empty input."""
    if not data:
        return 0.0
    total = len(data)
    return -sum((count / total) * math.log2(count / total) for count in Counter(data).values())


def strip_control_chars(value: str) -> str:
    return _CONTROL_CHARS.sub("", value)


def sanitize_identifier(value: str, max_length: int) -> str:
    """Keep only ``[A-Za-z0-9_-]``."""
    return _NON_ALNUM.sub("", strip_control_chars(value).strip())[:max_length]


def sanitize_text(value: str, max_length: int) -> str:
    """Strip control characters and HTML-escape free text.

    ``max_length`` bounds the escaped result. A cut never splits an entity.
    """
    escaped = html.escape(strip_control_chars(value).strip(), quote=True)
    if len(escaped) <= max_length:
        return escaped
    cut = escaped[:max_length]
    amp = cut.rfind("&")
    if amp != -1 and ";" not in cut[amp:]:
        cut = cut[:amp]
    return cut


def neutralize_formula(value: str) -> str:
    """Prefix cells that a spreadsheet would evaluate."""
    if _is_formula(value):
        return "'" + value
    return value


def _is_formula(value: str) -> bool:
    if _NUMERIC_PATTERN.match(value):
        return False
    return bool(_FORMULA_PATTERN.match(value) or _FORMULA_FUNCTION_PATTERN.match(value))


def _looks_encoded(value: str) -> bool:
    if len(value) < _ENCODED_MIN_LENGTH or any(ch.isspace() for ch in value):
        return False
    return shannon_entropy(value.encode("utf-8")) > _ENCODED_ENTROPY_BITS
