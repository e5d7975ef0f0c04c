"""Redaction of secret material from diagnostic text."""

from __future__ import annotations

import re
from typing import Iterable

REDACTED = "[REDACTED]"

# Credential shapes masked even when the value was never resolved here
_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"gh[pousr]_[A-Za-z0-9_]{20,}"), REDACTED),
    (re.compile(r"(?i)sk-[A-Za-z0-9]{32,}"), REDACTED),
    (re.compile(r"xox[bpors]-[A-Za-z0-9\-]+"), REDACTED),
    (re.compile(r"(?i)(authorization:\s*bearer\s+)\S+"), r"\1" + REDACTED),
    (re.compile(r"(://[^:/@\s]+:)[^@\s]+@"), r"\1" + REDACTED + "@"),
    (re.compile(r"(?i)\b(password|passwd|pwd|secret|token|api[_\-]?key)(\s*[:=]\s*)['\"]?[^\s'\"]{8,}"),
     r"\1\2" + REDACTED),
]


def redact(text: str, secrets: Iterable[str] = ()) -> str:
    """Mask every value in *secrets* and any credential-shaped token in *text*."""
    if not text:
        return text
    # Longest first so a secret containing another is masked whole
    for value in sorted({s for s in secrets if s}, key=len, reverse=True):
        text = text.replace(value, REDACTED)
    for pattern, replacement in _PATTERNS:
        text = pattern.sub(replacement, text)
    return text
