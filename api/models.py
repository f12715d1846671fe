"""
API request and response models for the IdeaBridge identity endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Validation here runs before any store is touched: a body that fails these
models is rejected with 400 validation_error by api/main.py.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, Role, VerificationChallenge
from core.phone import PHONE_INPUT_PATTERN

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^[0-9]{1,10}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    display_name: str = Field(min_length=2, max_length=80)
    bio: Optional[str] = Field(default=None, max_length=500)
    preferred_role: Optional[Role] = None
    verification_method: Literal["phone"] = "phone"
    phone_number: Optional[str] = Field(default=None, pattern=PHONE_INPUT_PATTERN)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)


class ProfileUpdateRequest(BaseModel):
    """Request body for PUT /api/v1/auth/me.

    Handlers dump this with exclude_unset=True, so a field the client omits
    is left untouched while an explicit null clears it.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, min_length=2, max_length=80)
    bio: Optional[str] = Field(default=None, max_length=500)
    preferred_role: Optional[Role] = None
    confirm_role_change: Optional[bool] = None
    phone_number: Optional[str] = Field(default=None, pattern=PHONE_INPUT_PATTERN)


class VerificationLookupRequest(BaseModel):
    request_id: UUID


class VerificationStartRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    method: Literal["phone"] = "phone"
    phone_number: Optional[str] = Field(default=None, pattern=PHONE_INPUT_PATTERN)


class VerificationConfirmRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    request_id: UUID
    code: str = Field(pattern=CODE_PATTERN)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account. Never carries the password hash."""

    id: str
    email: str
    display_name: str
    bio: Optional[str] = None
    preferred_role: Optional[Role] = None
    role_change_eligible_at: datetime
    phone_number: Optional[str] = None
    phone_verified: bool
    pending_verification_method: Optional[Literal["phone"]] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            bio=account.bio,
            preferred_role=account.preferred_role,
            role_change_eligible_at=account.role_change_eligible_at,
            phone_number=account.phone_number,
            phone_verified=account.phone_verified,
            pending_verification_method=account.pending_verification_method,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class VerificationPayload(BaseModel):
    """What a client may see of a challenge: never the code or raw destination."""

    request_id: str
    method: Literal["phone"]
    masked_destination: str
    expires_at: datetime
    resend_available_at: datetime
    attempts_remaining: int

    @classmethod
    def from_challenge(cls, challenge: VerificationChallenge) -> "VerificationPayload":
        return cls(
            request_id=challenge.id,
            method=challenge.method,
            masked_destination=challenge.masked_destination,
            expires_at=challenge.expires_at,
            resend_available_at=challenge.resend_available_at,
            attempts_remaining=challenge.attempts_remaining,
        )


class AuthResponse(BaseModel):
    """Response for register, login, verification start and confirm."""

    status: Literal["authenticated", "verification_required"]
    user: Optional[AccountResponse] = None
    token: Optional[str] = None
    verification: Optional[VerificationPayload] = None


class MeResponse(BaseModel):
    # null when the caller is not authenticated.
    user: Optional[AccountResponse] = None


class ProfileResponse(BaseModel):
    user: AccountResponse
    verification: Optional[VerificationPayload] = None


class VerificationResponse(BaseModel):
    verification: VerificationPayload


class LogoutResponse(BaseModel):
    success: bool = True


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    verification: Optional[VerificationPayload] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
