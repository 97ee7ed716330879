from __future__ import annotations

import logging
import re
from typing import Optional

from khata.errors import InvalidPhone

logger = logging.getLogger(__name__)

PHONE_LENGTH = 10

_NON_DIGITS = re.compile(r"\D")

# checked in order, first match wins
_PREFIXES = ("0091", "91", "0")


def _strip_prefix(digits: str) -> str:
    for prefix in _PREFIXES:
        if digits.startswith(prefix) and len(digits) - len(prefix) >= PHONE_LENGTH:
            return digits[len(prefix):]
    return digits


def normalize(raw: Optional[str]) -> str:
    """Canonicalize phone input into the 10-digit key accounts are stored under.

    Country (0091, 91) and trunk (0) prefixes are dropped only when at least
    10 digits remain. When that does not produce 10 digits but the bare digit
    string is exactly 10 long, the bare digits are accepted instead.
    """
    if raw is None:
        raise InvalidPhone(raw)
    digits = _NON_DIGITS.sub("", str(raw))
    if not digits:
        raise InvalidPhone(raw)

    candidate = _strip_prefix(digits)
    if len(candidate) == PHONE_LENGTH:
        return candidate
    if len(digits) == PHONE_LENGTH:
        return digits

    logger.debug("phone normalization failed raw=%r digits=%s", raw, digits)
    raise InvalidPhone(raw)
