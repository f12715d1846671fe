"""
auth/store.py -- Identity Store: account records, email uniqueness, soft delete.

Pattern: Repository + Data Mapper. IdentityStore is the repository contract;
_to_item / _from_item are the mappers for the transactional backend. Route
and service code never touches the table directly.

Email uniqueness spans active accounts AND live pending registrations. The
store asks the PendingRegistrationStore (through its public get_by_email) so
an address held by a staged signup cannot be claimed by anyone else. The one
exception is the promotion itself: create(..., claimed_by=<registration id>)
lets the staged registration that owns the email become the account.

update() keeps a three-way patch semantic through keyword arguments:
    store.update(aid, bio="hi")    -> set
    store.update(aid, bio=None)    -> clear
    store.update(aid)              -> bio untouched (keyword absent)

Backends:
  SqlIdentityStore    -- profile row and email index row commit together; the
                         index insert is conditional, so of two concurrent
                         creators for one email exactly one wins and the other
                         receives Conflict.
  MemoryIdentityStore -- dicts for tests/offline use. The check-then-act in
                         create() is not atomic; never share one instance
                         between concurrent writers.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from auth.models import Account, Role, VerificationMethod
from auth.registrations import PendingRegistrationStore
from auth.table import ConditionFailed, Delete, ItemTable, Put, Update, from_iso, to_iso
from core.errors import Conflict

# Known keys for update() -- validated before any write so callers cannot
# smuggle id/email/password changes through a profile patch.
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "display_name",
        "bio",
        "preferred_role",
        "role_change_eligible_at",
        "phone_number",
        "phone_verified",
        "pending_verification_method",
    }
)
_NON_NULLABLE_FIELDS: frozenset[str] = frozenset({"display_name", "role_change_eligible_at", "phone_verified"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _apply_patch(account: Account, fields: dict[str, Any], now: datetime) -> Account:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown account fields: {sorted(unknown)!r}")
    cleared = {name for name, value in fields.items() if value is None} & _NON_NULLABLE_FIELDS
    if cleared:
        raise ValueError(f"Fields cannot be cleared: {sorted(cleared)!r}")
    return replace(account, **fields, updated_at=now)


def _email_taken_message() -> str:
    return "An account with that email already exists."


class IdentityStore(ABC):
    """Contract shared by both identity backends."""

    def __init__(
        self,
        registrations: PendingRegistrationStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registrations = registrations
        self._clock = clock

    def _check_registration_claim(self, email: str, claimed_by: str | None) -> None:
        if self._registrations is None:
            return
        pending = self._registrations.get_by_email(email)
        if pending is not None and pending.id != claimed_by:
            raise Conflict("That email has a registration awaiting verification.", code="email_pending")

    def _new_account(
        self,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        **optional: Any,
    ) -> Account:
        now = self._clock()
        return Account(
            id=str(uuid.uuid4()),
            email=email.lower(),
            password_hash=password_hash,
            display_name=display_name,
            role_change_eligible_at=role_change_eligible_at,
            created_at=now,
            updated_at=now,
            **optional,
        )

    @abstractmethod
    def create(
        self,
        *,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        bio: str | None = None,
        preferred_role: Role | None = None,
        phone_number: str | None = None,
        phone_verified: bool = False,
        pending_verification_method: VerificationMethod | None = None,
        claimed_by: str | None = None,
    ) -> Account:
        """Insert a new account. Raises Conflict if the email is claimed."""

    @abstractmethod
    def get_by_id(self, account_id: str) -> Account | None:
        """Return the account, including soft-deleted records."""

    @abstractmethod
    def get_by_email(self, email: str) -> Account | None:
        """Return the active account for email (case-insensitive)."""

    @abstractmethod
    def update(self, account_id: str, **fields: Any) -> Account | None:
        """Patch an active account. Returns None if unknown or soft-deleted."""

    @abstractmethod
    def soft_delete(self, account_id: str) -> Account | None:
        """Mark deleted_at and release the email. Returns None if unknown."""

    @abstractmethod
    def list(self) -> list[Account]:
        """Return every account record, active or not. Admin-only operation."""

    def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend (test/offline only)
# ---------------------------------------------------------------------------


class MemoryIdentityStore(IdentityStore):
    def __init__(
        self,
        registrations: PendingRegistrationStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(registrations, clock)
        self._by_id: dict[str, Account] = {}
        self._id_by_email: dict[str, str] = {}

    def create(
        self,
        *,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        bio: str | None = None,
        preferred_role: Role | None = None,
        phone_number: str | None = None,
        phone_verified: bool = False,
        pending_verification_method: VerificationMethod | None = None,
        claimed_by: str | None = None,
    ) -> Account:
        lowered = email.lower()
        if lowered in self._id_by_email:
            raise Conflict(_email_taken_message())
        self._check_registration_claim(lowered, claimed_by)
        account = self._new_account(
            lowered,
            password_hash,
            display_name,
            role_change_eligible_at,
            bio=bio,
            preferred_role=preferred_role,
            phone_number=phone_number,
            phone_verified=phone_verified,
            pending_verification_method=pending_verification_method,
        )
        self._by_id[account.id] = account
        self._id_by_email[lowered] = account.id
        return account

    def get_by_id(self, account_id: str) -> Account | None:
        return self._by_id.get(account_id)

    def get_by_email(self, email: str) -> Account | None:
        account_id = self._id_by_email.get(email.lower())
        return self._by_id.get(account_id) if account_id is not None else None

    def update(self, account_id: str, **fields: Any) -> Account | None:
        account = self._by_id.get(account_id)
        if account is None or not account.is_active:
            return None
        patched = _apply_patch(account, fields, self._clock())
        self._by_id[account_id] = patched
        return patched

    def soft_delete(self, account_id: str) -> Account | None:
        account = self._by_id.get(account_id)
        if account is None or not account.is_active:
            return account
        now = self._clock()
        deleted = replace(account, deleted_at=now, updated_at=now)
        self._by_id[account_id] = deleted
        if self._id_by_email.get(account.email) == account_id:
            del self._id_by_email[account.email]
        return deleted

    def list(self) -> list[Account]:
        return sorted(self._by_id.values(), key=lambda a: (a.email, a.created_at))


# ---------------------------------------------------------------------------
# Transactional backend
# ---------------------------------------------------------------------------

_PROFILE_SK = "PROFILE"
_EMAIL_INDEX_SK = "ACCOUNT"


def _account_pk(account_id: str) -> str:
    return f"ACCOUNT#{account_id}"


def _account_email_pk(email: str) -> str:
    return f"ACCOUNT_EMAIL#{email}"


class SqlIdentityStore(IdentityStore):
    _WRITE_ATTEMPTS = 3

    def __init__(
        self,
        table: ItemTable,
        registrations: PendingRegistrationStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(registrations, clock)
        self._table = table

    def create(
        self,
        *,
        email: str,
        password_hash: str,
        display_name: str,
        role_change_eligible_at: datetime,
        bio: str | None = None,
        preferred_role: Role | None = None,
        phone_number: str | None = None,
        phone_verified: bool = False,
        pending_verification_method: VerificationMethod | None = None,
        claimed_by: str | None = None,
    ) -> Account:
        lowered = email.lower()
        self._check_registration_claim(lowered, claimed_by)
        account = self._new_account(
            lowered,
            password_hash,
            display_name,
            role_change_eligible_at,
            bio=bio,
            preferred_role=preferred_role,
            phone_number=phone_number,
            phone_verified=phone_verified,
            pending_verification_method=pending_verification_method,
        )
        try:
            self._table.transact(
                [
                    Put(_account_pk(account.id), _PROFILE_SK, "ACCOUNT", _to_item(account), if_absent=True),
                    Put(
                        _account_email_pk(lowered),
                        _EMAIL_INDEX_SK,
                        "ACCOUNT_EMAIL",
                        {"account_id": account.id, "email": lowered},
                        if_absent=True,
                    ),
                ]
            )
        except ConditionFailed as exc:
            raise Conflict(_email_taken_message()) from exc
        return account

    def get_by_id(self, account_id: str) -> Account | None:
        item = self._table.get(_account_pk(account_id), _PROFILE_SK)
        return _from_item(item) if item is not None else None

    def get_by_email(self, email: str) -> Account | None:
        mapping = self._table.get(_account_email_pk(email.lower()), _EMAIL_INDEX_SK)
        if mapping is None:
            return None
        account = self.get_by_id(mapping["account_id"])
        if account is None or not account.is_active:
            return None
        return account

    def update(self, account_id: str, **fields: Any) -> Account | None:
        for _ in range(self._WRITE_ATTEMPTS):
            item = self._table.get(_account_pk(account_id), _PROFILE_SK)
            if item is None:
                return None
            account = _from_item(item)
            if not account.is_active:
                return None
            patched = _apply_patch(account, fields, self._clock())
            try:
                self._table.transact([Update(_account_pk(account_id), _PROFILE_SK, _to_item(patched), expected=item)])
            except ConditionFailed:
                continue
            return patched
        raise Conflict("Account was modified concurrently. Retry the request.", code="concurrent_update")

    def soft_delete(self, account_id: str) -> Account | None:
        for _ in range(self._WRITE_ATTEMPTS):
            item = self._table.get(_account_pk(account_id), _PROFILE_SK)
            if item is None:
                return None
            account = _from_item(item)
            if not account.is_active:
                return account
            now = self._clock()
            deleted = replace(account, deleted_at=now, updated_at=now)
            operations: list = [Update(_account_pk(account_id), _PROFILE_SK, _to_item(deleted), expected=item)]
            mapping = self._table.get(_account_email_pk(account.email), _EMAIL_INDEX_SK)
            if mapping is not None and mapping["account_id"] == account_id:
                operations.append(Delete(_account_email_pk(account.email), _EMAIL_INDEX_SK))
            try:
                self._table.transact(operations)
            except ConditionFailed:
                continue
            return deleted
        raise Conflict("Account was modified concurrently. Retry the request.", code="concurrent_update")

    def list(self) -> list[Account]:
        accounts = [_from_item(item) for item in self._table.scan("ACCOUNT")]
        return sorted(accounts, key=lambda a: (a.email, a.created_at))


# ---------------------------------------------------------------------------
# Item mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _to_item(account: Account) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "password_hash": account.password_hash,
        "display_name": account.display_name,
        "bio": account.bio,
        "preferred_role": account.preferred_role,
        "role_change_eligible_at": to_iso(account.role_change_eligible_at),
        "phone_number": account.phone_number,
        "phone_verified": account.phone_verified,
        "pending_verification_method": account.pending_verification_method,
        "created_at": to_iso(account.created_at),
        "updated_at": to_iso(account.updated_at),
        "deleted_at": to_iso(account.deleted_at),
    }


def _from_item(item: dict) -> Account:
    return Account(
        id=item["id"],
        email=item["email"],
        password_hash=item["password_hash"],
        display_name=item["display_name"],
        bio=item.get("bio"),
        preferred_role=item.get("preferred_role"),
        role_change_eligible_at=from_iso(item["role_change_eligible_at"]),
        phone_number=item.get("phone_number"),
        phone_verified=bool(item.get("phone_verified", False)),
        pending_verification_method=item.get("pending_verification_method"),
        created_at=from_iso(item["created_at"]),
        updated_at=from_iso(item["updated_at"]),
        deleted_at=from_iso(item.get("deleted_at")),
    )
