"""
auth/registrations.py -- Pending Registration Staging.

A signup is staged here until the phone number is proven, so the permanent
account table never holds throwaway or abandoned registrations. Exactly one
staged record exists per email: registering the same unconfirmed email again
overwrites the record in place (id and created_at preserved), which lets a
user fix a mistyped phone number by simply resubmitting.

Two implementations share the PendingRegistrationStore contract:

  SqlPendingRegistrationStore    -- transactional backend on auth/table.py.
      The record and its email index row are written together; the index
      insert is conditional, so when two requests stage the same new email
      concurrently the loser re-reads the winner's record and overwrites it.

  MemoryPendingRegistrationStore -- plain dicts for tests and offline use.
      Single-threaded semantics only; no atomicity guarantee.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from auth.models import PendingRegistration, Role
from auth.table import ConditionFailed, Delete, ItemTable, Put, from_iso, to_iso

logger = logging.getLogger("ideabridge.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingRegistrationStore(ABC):
    """Contract shared by both staging backends."""

    @abstractmethod
    def upsert(
        self,
        *,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        phone_number: str,
        bio: str | None = None,
        preferred_role: Role | None = None,
    ) -> PendingRegistration:
        """Create or overwrite the staged registration for email."""

    @abstractmethod
    def get_by_id(self, registration_id: str) -> PendingRegistration | None: ...

    @abstractmethod
    def get_by_email(self, email: str) -> PendingRegistration | None: ...

    @abstractmethod
    def delete(self, registration_id: str) -> None: ...

    def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend (test/offline only)
# ---------------------------------------------------------------------------


class MemoryPendingRegistrationStore(PendingRegistrationStore):
    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._by_id: dict[str, PendingRegistration] = {}
        self._id_by_email: dict[str, str] = {}

    def upsert(
        self,
        *,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        phone_number: str,
        bio: str | None = None,
        preferred_role: Role | None = None,
    ) -> PendingRegistration:
        lowered = email.lower()
        now = self._clock()
        existing = self.get_by_email(lowered)
        if existing is not None:
            updated = replace(
                existing,
                password_hash=password_hash,
                display_name=display_name,
                bio=bio,
                preferred_role=preferred_role,
                role_change_eligible_at=role_change_eligible_at,
                phone_number=phone_number,
                updated_at=now,
            )
            self._by_id[existing.id] = updated
            return updated

        created = PendingRegistration(
            id=str(uuid.uuid4()),
            email=lowered,
            password_hash=password_hash,
            display_name=display_name,
            bio=bio,
            preferred_role=preferred_role,
            role_change_eligible_at=role_change_eligible_at,
            phone_number=phone_number,
            created_at=now,
            updated_at=now,
        )
        self._by_id[created.id] = created
        self._id_by_email[lowered] = created.id
        return created

    def get_by_id(self, registration_id: str) -> PendingRegistration | None:
        return self._by_id.get(registration_id)

    def get_by_email(self, email: str) -> PendingRegistration | None:
        registration_id = self._id_by_email.get(email.lower())
        if registration_id is None:
            return None
        return self._by_id.get(registration_id)

    def delete(self, registration_id: str) -> None:
        existing = self._by_id.pop(registration_id, None)
        if existing is not None and self._id_by_email.get(existing.email) == registration_id:
            del self._id_by_email[existing.email]


# ---------------------------------------------------------------------------
# Transactional backend
# ---------------------------------------------------------------------------

_REGISTRATION_SK = "REGISTRATION"


def _registration_pk(registration_id: str) -> str:
    return f"REGISTRATION#{registration_id}"


def _registration_email_pk(email: str) -> str:
    return f"REGISTRATION_EMAIL#{email}"


class SqlPendingRegistrationStore(PendingRegistrationStore):
    # One retry covers the only expected race: a concurrent first-time
    # upsert for the same email winning the index insert.
    _UPSERT_ATTEMPTS = 2

    def __init__(self, table: ItemTable, clock: Callable[[], datetime] = _utcnow) -> None:
        self._table = table
        self._clock = clock

    def upsert(
        self,
        *,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        phone_number: str,
        bio: str | None = None,
        preferred_role: Role | None = None,
    ) -> PendingRegistration:
        lowered = email.lower()
        for _ in range(self._UPSERT_ATTEMPTS):
            now = self._clock()
            existing = self.get_by_email(lowered)
            if existing is not None:
                updated = replace(
                    existing,
                    password_hash=password_hash,
                    display_name=display_name,
                    bio=bio,
                    preferred_role=preferred_role,
                    role_change_eligible_at=role_change_eligible_at,
                    phone_number=phone_number,
                    updated_at=now,
                )
                self._table.transact(
                    [Put(_registration_pk(updated.id), _REGISTRATION_SK, "PENDING_REGISTRATION", _to_item(updated))]
                )
                return updated

            created = PendingRegistration(
                id=str(uuid.uuid4()),
                email=lowered,
                password_hash=password_hash,
                display_name=display_name,
                bio=bio,
                preferred_role=preferred_role,
                role_change_eligible_at=role_change_eligible_at,
                phone_number=phone_number,
                created_at=now,
                updated_at=now,
            )
            try:
                self._table.transact(
                    [
                        Put(
                            _registration_pk(created.id),
                            _REGISTRATION_SK,
                            "PENDING_REGISTRATION",
                            _to_item(created),
                            if_absent=True,
                        ),
                        Put(
                            _registration_email_pk(lowered),
                            _REGISTRATION_SK,
                            "PENDING_REGISTRATION_EMAIL",
                            {"registration_id": created.id, "email": lowered},
                            if_absent=True,
                        ),
                    ]
                )
            except ConditionFailed:
                logger.info("Concurrent registration staged for the same email; retrying as overwrite")
                continue
            return created
        raise ConditionFailed("could not stage registration after concurrent writes")

    def get_by_id(self, registration_id: str) -> PendingRegistration | None:
        item = self._table.get(_registration_pk(registration_id), _REGISTRATION_SK)
        return _from_item(item) if item is not None else None

    def get_by_email(self, email: str) -> PendingRegistration | None:
        lowered = email.lower()
        mapping = self._table.get(_registration_email_pk(lowered), _REGISTRATION_SK)
        if mapping is None:
            return None
        registration = self.get_by_id(mapping["registration_id"])
        if registration is None:
            # Index row outlived its record (should not happen inside
            # transactions, but a manual cleanup could leave one behind).
            self._table.transact([Delete(_registration_email_pk(lowered), _REGISTRATION_SK)])
        return registration

    def delete(self, registration_id: str) -> None:
        existing = self.get_by_id(registration_id)
        if existing is None:
            return
        self._table.transact(
            [
                Delete(_registration_pk(registration_id), _REGISTRATION_SK),
                Delete(_registration_email_pk(existing.email), _REGISTRATION_SK),
            ]
        )


# ---------------------------------------------------------------------------
# Item mappers
# ---------------------------------------------------------------------------


def _to_item(registration: PendingRegistration) -> dict:
    return {
        "id": registration.id,
        "email": registration.email,
        "password_hash": registration.password_hash,
        "display_name": registration.display_name,
        "bio": registration.bio,
        "preferred_role": registration.preferred_role,
        "role_change_eligible_at": to_iso(registration.role_change_eligible_at),
        "phone_number": registration.phone_number,
        "created_at": to_iso(registration.created_at),
        "updated_at": to_iso(registration.updated_at),
    }


def _from_item(item: dict) -> PendingRegistration:
    return PendingRegistration(
        id=item["id"],
        email=item["email"],
        password_hash=item["password_hash"],
        display_name=item["display_name"],
        bio=item.get("bio"),
        preferred_role=item.get("preferred_role"),
        role_change_eligible_at=from_iso(item["role_change_eligible_at"]),
        phone_number=item["phone_number"],
        created_at=from_iso(item["created_at"]),
        updated_at=from_iso(item["updated_at"]),
    )
