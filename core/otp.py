"""
core/otp.py -- One-time numeric code generation.

secrets.randbelow draws from the OS CSPRNG, so codes are uniform over
[10**(length-1), 10**length - 1] and unpredictable across challenges.
"""

from __future__ import annotations

import secrets

MIN_CODE_LENGTH = 1
MAX_CODE_LENGTH = 10


def generate_numeric_code(length: int = 6) -> str:
    """Return a random numeric code of exactly `length` digits, zero-padded."""
    if length < MIN_CODE_LENGTH or length > MAX_CODE_LENGTH:
        raise ValueError(f"OTP length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH} digits")
    low = 10 ** (length - 1)
    high = 10**length - 1
    value = low + secrets.randbelow(high - low + 1)
    return str(value).zfill(length)
