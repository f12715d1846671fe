"""
core/errors.py -- Error taxonomy for the identity service.

Every domain failure raised by auth/ is an IdentityError subclass carrying a
stable machine-readable code, a human-readable message, and the HTTP status
the API layer renders it with. api/main.py registers one exception handler
for the whole hierarchy, so route handlers never build error responses by
hand.

    InvalidInput     400  malformed input, wrong verification code
    Unauthorized     401  missing/invalid session, bad credentials
    Forbidden        403  role change without explicit confirmation
    NotFound         404  unknown account, registration, or challenge
    Conflict         409  email already claimed
    Gone             410  challenge expired or already consumed
    AttemptsExhausted 429 the wrong guess used the last attempt
    RateLimited      429  cooldown or window exceeded (retry_after_seconds)
    InternalError    500  store or delivery failure

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from typing import Any


class IdentityError(Exception):
    """Base exception for every translated domain failure."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, code: str | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail


class InvalidInput(IdentityError):
    status_code = 400
    code = "validation_error"


class InvalidCode(InvalidInput):
    """A wrong verification code that did not exhaust the challenge.

    challenge is the updated VerificationChallenge so the caller can show the
    remaining attempt count.
    """

    code = "invalid_code"

    def __init__(self, challenge: Any) -> None:
        super().__init__("Incorrect verification code.")
        self.challenge = challenge

    @property
    def attempts_remaining(self) -> int:
        return self.challenge.attempts_remaining


class Unauthorized(IdentityError):
    status_code = 401
    code = "unauthorized"


class Forbidden(IdentityError):
    status_code = 403
    code = "forbidden"


class NotFound(IdentityError):
    status_code = 404
    code = "not_found"


class Conflict(IdentityError):
    status_code = 409
    code = "conflict"


class Gone(IdentityError):
    status_code = 410
    code = "gone"


class ChallengeExpired(Gone):
    code = "expired"

    def __init__(self, message: str = "Verification code expired.") -> None:
        super().__init__(message)


class AttemptsExhausted(IdentityError):
    """Terminal: the challenge is deleted, a new code must be requested."""

    status_code = 429
    code = "attempts_exhausted"

    def __init__(self, message: str = "Too many incorrect attempts. Request a new code.") -> None:
        super().__init__(message)


class RateLimited(IdentityError):
    status_code = 429
    code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: int,
        code: str | None = None,
        challenge: Any = None,
    ) -> None:
        super().__init__(message, code=code)
        self.retry_after_seconds = retry_after_seconds
        # Set when a resend hits its cooldown: the challenge that is still active.
        self.challenge = challenge


class InternalError(IdentityError):
    status_code = 500
    code = "internal_error"
