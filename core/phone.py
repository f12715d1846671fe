"""
core/phone.py -- Phone number normalization.

Numbers are stored in a compact E.164-like form: a leading "+", the country
code, and digits only. A leading "00" international prefix becomes "+", and
the domestic trunk "0" is dropped for countries that dial it after the
country code (+61 0412... -> +61412...).
"""

from __future__ import annotations

import re

PHONE_INPUT_PATTERN = r"^[+0-9()\s-]{7,20}$"

_ZERO_TRUNK_COUNTRY_CODES = ("61", "44", "82")
_STRIP_RE = re.compile(r"[^\d+]")


def normalize_phone_number(value: str) -> str:
    digits = _STRIP_RE.sub("", value)
    if digits.startswith("00"):
        digits = "+" + digits[2:]
    for code in _ZERO_TRUNK_COUNTRY_CODES:
        prefix = f"+{code}"
        if digits.startswith(prefix):
            remainder = digits[len(prefix) :]
            if remainder.startswith("0") and len(remainder) > 1:
                digits = prefix + remainder[1:]
    return digits


def sanitize_phone_number(value: str | None, *, require_country_code: bool = True) -> str | None:
    """Trim and normalize user input. Returns None for blank input.

    Raises ValueError when a country code is required but missing.
    """
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    normalized = normalize_phone_number(trimmed)
    if not normalized:
        return None
    if require_country_code and not normalized.startswith("+"):
        raise ValueError("Phone numbers must include a leading + and country code.")
    return normalized
