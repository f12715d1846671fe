"""
core/masking.py -- Display-safe forms of contact destinations.

The masked value is what API responses show while a challenge is pending, so
it must never reveal more than the last four digits of a phone number or the
first/last character of an email local part.
"""

from __future__ import annotations

import re

_NON_DIGIT_RE = re.compile(r"\D")


def mask_phone(phone: str) -> str:
    digits = _NON_DIGIT_RE.sub("", phone)
    if len(digits) <= 4:
        return f"***{digits}"
    return f"***-***-{digits[-4:]}"


def mask_email(email: str) -> str:
    local, sep, domain = email.partition("@")
    if not sep or not domain:
        return "***"
    if len(local) <= 2:
        masked_local = f"{local[:1] or '*'}***"
    else:
        masked_local = f"{local[0]}***{local[-1]}"
    parts = domain.split(".")
    masked_parts = [part if i == len(parts) - 1 else f"{part[:1]}***" for i, part in enumerate(parts)]
    return f"{masked_local}@{'.'.join(masked_parts)}"
