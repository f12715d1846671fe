"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
AuthService do the work; these classes only own domain shape.

Timestamps are timezone-aware UTC datetimes. The SQL backend serializes them
as ISO 8601 strings (see auth/table.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

Role = Literal["idea-creator", "developer"]
VerificationMethod = Literal["phone"]
SubjectKind = Literal["account", "pending_registration"]


@dataclass(frozen=True)
class Subject:
    """The owner of a verification challenge.

    A challenge is issued either to an existing account (re-verification,
    phone change) or to a staged registration that has no account yet. The
    kind is explicit so an account id and a registration id can never be
    confused, even if the raw id strings happened to collide.
    """

    kind: SubjectKind
    id: str

    @classmethod
    def account(cls, account_id: str) -> Subject:
        return cls(kind="account", id=account_id)

    @classmethod
    def pending_registration(cls, registration_id: str) -> Subject:
        return cls(kind="pending_registration", id=registration_id)


@dataclass
class Account:
    """A permanent identity.

    Created only after phone possession is proven (or directly when phone
    verification is disabled). deleted_at marks a soft delete: the record is
    retained but its email is released for reuse.
    """

    id: str
    email: str  # always lowercased
    password_hash: str
    display_name: str
    role_change_eligible_at: datetime
    created_at: datetime
    updated_at: datetime
    bio: str | None = None
    preferred_role: Role | None = None
    phone_number: str | None = None
    phone_verified: bool = False
    pending_verification_method: VerificationMethod | None = None
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    expires_at: datetime


@dataclass
class PendingRegistration:
    """A staged signup waiting for phone confirmation. One per email."""

    id: str
    email: str  # always lowercased
    password_hash: str
    display_name: str
    role_change_eligible_at: datetime
    phone_number: str
    created_at: datetime
    updated_at: datetime
    bio: str | None = None
    preferred_role: Role | None = None


@dataclass
class VerificationChallenge:
    """An active OTP challenge. Terminal states are represented by deletion."""

    id: str
    subject: Subject
    method: VerificationMethod
    code: str
    destination: str
    masked_destination: str  # safe to show to the end user
    expires_at: datetime
    resend_available_at: datetime
    attempts_remaining: int
    created_at: datetime
    updated_at: datetime
