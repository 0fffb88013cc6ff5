from __future__ import annotations

import re
from typing import Optional

_SEPARATORS = re.compile(r"[\s\-().\/]")
_E164 = re.compile(r"^\+[1-9]\d{7,14}$")


class PhoneValidationError(Exception):
    pass


def normalize_phone(value: Optional[str]) -> str:
    """Canonical ``+<country><number>`` form of a raw phone string.

    Separators (spaces, dashes, dots, slashes, parentheses) are dropped. Bare
    10-digit numbers are treated as North American and 11-digit numbers with a
    leading ``1`` get their ``+`` back; an ``00`` international prefix becomes
    ``+``. Anything that is not digits after that is rejected.
    """
    if not value or not value.strip():
        raise PhoneValidationError("phone number is empty")
    cleaned = _SEPARATORS.sub("", value.strip())
    has_plus = cleaned.startswith("+")
    digits = cleaned[1:] if has_plus else cleaned
    if not digits.isdigit():
        raise PhoneValidationError(f"phone number has non-numeric characters: {value!r}")

    if not has_plus:
        if digits.startswith("00"):
            digits = digits[2:]
        elif len(digits) == 10:
            digits = "1" + digits
    normalized = f"+{digits}"
    if not _E164.match(normalized):
        raise PhoneValidationError(f"phone number has an invalid length or prefix: {value!r}")
    return normalized


def is_valid_phone(value: Optional[str]) -> bool:
    try:
        normalize_phone(value)
    except PhoneValidationError:
        return False
    return True


def try_normalize_phone(value: Optional[str]) -> Optional[str]:
    try:
        return normalize_phone(value)
    except PhoneValidationError:
        return None
