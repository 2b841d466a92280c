"""Heuristic extraction of verification codes from mail text.

The scan is deliberately over-inclusive: a phone number or a year in the
body will match the bare-digit pattern. Callers get every candidate and
pick; recall matters more than precision here.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .transport import InboundMessage

_CODE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(\d{4,8})\b"),
    re.compile(r"code[:\s]+(\w{4,10})", re.IGNORECASE),
    re.compile(r"verification[:\s]+(\w{4,10})", re.IGNORECASE),
    re.compile(r"OTP[:\s]+(\d{4,8})", re.IGNORECASE),
    re.compile(r"pin[:\s]+(\d{4,8})", re.IGNORECASE),
)


def extract_codes(text: Optional[str]) -> set[str]:
    """Return every candidate verification code found in ``text``."""
    if not text:
        return set()
    codes: set[str] = set()
    for pattern in _CODE_PATTERNS:
        codes.update(match.group(1) for match in pattern.finditer(text))
    return codes


def message_codes(message: InboundMessage) -> list[str]:
    """Codes from a message's body and subject, sorted for stable output."""
    return sorted(extract_codes(f"{message.body or ''} {message.subject or ''}"))
