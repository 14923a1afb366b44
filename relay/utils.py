"""
Utility functions for the relay API.
"""

import hmac
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Container, Optional

logger = logging.getLogger(__name__)

# No 0/O or 1/I, so codes survive being read aloud or copied by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_NON_DIGITS = re.compile(r"\D")


def generate_code(prefix: str, length: int = 6) -> str:
    """Generate an invite code such as BABA-7KQ2XR."""
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def codes_match(candidate: Optional[str], expected: str) -> bool:
    """
    Case-insensitive, constant-time comparison of a submitted code.

    Args:
        candidate: Code as typed by the user (may be None)
        expected: Stored code

    Returns:
        True if the codes are equal ignoring case and surrounding whitespace
    """
    if not candidate:
        return False
    return hmac.compare_digest(
        candidate.strip().upper().encode("utf-8"),
        expected.strip().upper().encode("utf-8"),
    )


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Non-digits are stripped; a bare 10-digit number is treated as North
    American and gets +1, anything else non-empty gets a leading +.

    Returns:
        The normalized number, or None when no digits remain
    """
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return None
    if len(digits) == 10:
        return "+1" + digits
    return "+" + digits


def normalize_name(name: Optional[str]) -> str:
    """Key used for duplicate-name checks."""
    return (name or "").strip().lower()


def utc_now_iso() -> str:
    """Current time as ISO-8601 UTC with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def new_id(taken: Container[str]) -> str:
    """Millisecond timestamp id, bumped until it is not in `taken`."""
    candidate = time.time_ns() // 1_000_000
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)
