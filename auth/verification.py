"""
auth/verification.py -- Verification Challenge Engine (phone OTP).

State machine per (subject, method):

    create() ──> Active ──consume(correct)──────────> Consumed
                   │  ├──consume(wrong, attempts>0)──> Active (attempts - 1)
                   │  ├──consume(wrong, attempts=0)──> AttemptsExhausted
                   │  └──read/consume after expiry──> Expired
                   └──regenerate() after cooldown──> Active (new code, same id)

Every terminal state is represented by deleting the record; nothing "dead"
is retained. consume() against a missing record therefore reports Expired
whether the challenge was consumed, exhausted, or timed out.

The engine owns challenge storage (ChallengeStore) and nothing else. It never
sends codes itself -- the AuthService hands the code to a CodeSender.

Backends:
  SqlChallengeStore    -- VERIFICATION#<id> item plus a subject index item
                          (<subject pk>, VERIFICATION#<method>). The attempts
                          decrement is an optimistic conditional update, so
                          two concurrent wrong guesses cannot both write the
                          same remaining count back.
  MemoryChallengeStore -- dicts for tests/offline use.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.models import Subject, VerificationChallenge, VerificationMethod
from auth.table import ConditionFailed, Delete, ItemTable, Put, Update, from_iso, to_iso
from core.config import Settings
from core.errors import AttemptsExhausted, ChallengeExpired, Conflict, InvalidCode, NotFound, RateLimited
from core.otp import MAX_CODE_LENGTH, MIN_CODE_LENGTH, generate_numeric_code

logger = logging.getLogger("ideabridge.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds from now until moment, rounded up, never below 1."""
    return max(1, math.ceil((moment - now).total_seconds()))


# ---------------------------------------------------------------------------
# Storage contract
# ---------------------------------------------------------------------------


class ChallengeStore(ABC):
    @abstractmethod
    def get(self, challenge_id: str) -> VerificationChallenge | None: ...

    @abstractmethod
    def find(self, subject: Subject, method: VerificationMethod) -> VerificationChallenge | None: ...

    @abstractmethod
    def insert(self, challenge: VerificationChallenge, *, replacing: VerificationChallenge | None = None) -> None:
        """Store a new challenge, deleting `replacing` in the same write."""

    @abstractmethod
    def replace(self, challenge: VerificationChallenge, *, previous: VerificationChallenge) -> bool:
        """Overwrite previous with challenge. Returns False if previous changed meanwhile."""

    @abstractmethod
    def delete(self, challenge: VerificationChallenge) -> None: ...

    def close(self) -> None:
        return None


class MemoryChallengeStore(ChallengeStore):
    def __init__(self) -> None:
        self._by_id: dict[str, VerificationChallenge] = {}
        self._id_by_subject: dict[tuple[Subject, str], str] = {}

    def get(self, challenge_id: str) -> VerificationChallenge | None:
        return self._by_id.get(challenge_id)

    def find(self, subject: Subject, method: VerificationMethod) -> VerificationChallenge | None:
        challenge_id = self._id_by_subject.get((subject, method))
        return self._by_id.get(challenge_id) if challenge_id is not None else None

    def insert(self, challenge: VerificationChallenge, *, replacing: VerificationChallenge | None = None) -> None:
        if replacing is not None:
            self.delete(replacing)
        self._by_id[challenge.id] = challenge
        self._id_by_subject[(challenge.subject, challenge.method)] = challenge.id

    def replace(self, challenge: VerificationChallenge, *, previous: VerificationChallenge) -> bool:
        if self._by_id.get(previous.id) != previous:
            return False
        self._by_id[challenge.id] = challenge
        return True

    def delete(self, challenge: VerificationChallenge) -> None:
        self._by_id.pop(challenge.id, None)
        key = (challenge.subject, challenge.method)
        if self._id_by_subject.get(key) == challenge.id:
            del self._id_by_subject[key]


_REQUEST_SK = "REQUEST"


def _challenge_pk(challenge_id: str) -> str:
    return f"VERIFICATION#{challenge_id}"


def _subject_pk(subject: Subject) -> str:
    if subject.kind == "account":
        return f"ACCOUNT#{subject.id}"
    return f"REGISTRATION#{subject.id}"


def _subject_sk(method: str) -> str:
    return f"VERIFICATION#{method}"


class SqlChallengeStore(ChallengeStore):
    def __init__(self, table: ItemTable) -> None:
        self._table = table

    def get(self, challenge_id: str) -> VerificationChallenge | None:
        item = self._table.get(_challenge_pk(challenge_id), _REQUEST_SK)
        return _from_item(item) if item is not None else None

    def find(self, subject: Subject, method: VerificationMethod) -> VerificationChallenge | None:
        mapping = self._table.get(_subject_pk(subject), _subject_sk(method))
        return self.get(mapping["challenge_id"]) if mapping is not None else None

    def insert(self, challenge: VerificationChallenge, *, replacing: VerificationChallenge | None = None) -> None:
        operations: list = []
        if replacing is not None:
            operations.append(Delete(_challenge_pk(replacing.id), _REQUEST_SK))
        operations.append(Put(_challenge_pk(challenge.id), _REQUEST_SK, "VERIFICATION", _to_item(challenge), if_absent=True))
        # Unconditional: the subject index row always points at the newest challenge.
        operations.append(
            Put(
                _subject_pk(challenge.subject),
                _subject_sk(challenge.method),
                "SUBJECT_VERIFICATION",
                {"challenge_id": challenge.id, "method": challenge.method},
            )
        )
        self._table.transact(operations)

    def replace(self, challenge: VerificationChallenge, *, previous: VerificationChallenge) -> bool:
        try:
            self._table.transact(
                [Update(_challenge_pk(challenge.id), _REQUEST_SK, _to_item(challenge), expected=_to_item(previous))]
            )
        except ConditionFailed:
            return False
        return True

    def delete(self, challenge: VerificationChallenge) -> None:
        operations = [Delete(_challenge_pk(challenge.id), _REQUEST_SK)]
        mapping = self._table.get(_subject_pk(challenge.subject), _subject_sk(challenge.method))
        if mapping is not None and mapping["challenge_id"] == challenge.id:
            operations.append(Delete(_subject_pk(challenge.subject), _subject_sk(challenge.method)))
        self._table.transact(operations)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class VerificationEngine:
    """OTP issuance and consumption on top of a ChallengeStore.

    Usage:
        engine = VerificationEngine(MemoryChallengeStore())
        challenge = engine.create(Subject.account(aid), "phone", "+15555551212", "***-***-1212")
        engine.consume(challenge.id, challenge.code)   # returns the consumed challenge
    """

    # Bounded retries for optimistic writes that lose to a concurrent request.
    _WRITE_ATTEMPTS = 3

    def __init__(
        self,
        store: ChallengeStore,
        *,
        code_length: int = 6,
        code_ttl_seconds: int = 600,
        resend_cooldown_seconds: int = 60,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.code_length = max(MIN_CODE_LENGTH, min(MAX_CODE_LENGTH, int(code_length)))
        self.code_ttl = timedelta(seconds=code_ttl_seconds)
        self.resend_cooldown = timedelta(seconds=resend_cooldown_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: ChallengeStore,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> VerificationEngine:
        return cls(
            store,
            code_length=settings.verification_code_length,
            code_ttl_seconds=settings.verification_code_ttl_seconds,
            resend_cooldown_seconds=settings.verification_resend_cooldown_seconds,
            max_attempts=settings.verification_max_attempts,
            clock=clock,
        )

    def create(
        self,
        subject: Subject,
        method: VerificationMethod,
        destination: str,
        masked_destination: str,
    ) -> VerificationChallenge:
        """Issue a fresh challenge, replacing any active one for (subject, method)."""
        now = self._clock()
        challenge = VerificationChallenge(
            id=str(uuid.uuid4()),
            subject=subject,
            method=method,
            code=generate_numeric_code(self.code_length),
            destination=destination,
            masked_destination=masked_destination,
            expires_at=now + self.code_ttl,
            resend_available_at=now + self.resend_cooldown,
            attempts_remaining=self.max_attempts,
            created_at=now,
            updated_at=now,
        )
        self.store.insert(challenge, replacing=self.store.find(subject, method))
        return challenge

    def get(self, challenge_id: str) -> VerificationChallenge | None:
        """Return the active challenge; an expired one is deleted and treated as absent."""
        challenge = self.store.get(challenge_id)
        if challenge is None:
            return None
        if self._clock() >= challenge.expires_at:
            self.store.delete(challenge)
            return None
        return challenge

    def regenerate(self, challenge_id: str) -> VerificationChallenge:
        """Replace the code of an active challenge once the resend cooldown has elapsed.

        Raises NotFound if the challenge is gone and RateLimited (with the
        seconds remaining) if called before resend_available_at.
        """
        for _ in range(self._WRITE_ATTEMPTS):
            current = self.get(challenge_id)
            if current is None:
                raise NotFound("Verification request not found.")
            now = self._clock()
            if now < current.resend_available_at:
                raise RateLimited(
                    "Please wait before requesting a new code.",
                    retry_after_seconds=seconds_until(current.resend_available_at, now),
                    code="resend_cooldown",
                    challenge=current,
                )
            refreshed = replace(
                current,
                code=generate_numeric_code(self.code_length),
                expires_at=now + self.code_ttl,
                resend_available_at=now + self.resend_cooldown,
                attempts_remaining=self.max_attempts,
                updated_at=now,
            )
            if self.store.replace(refreshed, previous=current):
                return refreshed
        raise Conflict("Verification request changed concurrently. Retry the request.", code="concurrent_update")

    def consume(self, challenge_id: str, code: str) -> VerificationChallenge:
        """Check a submitted code. Returns the consumed challenge on success.

        Raises ChallengeExpired (no active challenge, or past expires_at),
        AttemptsExhausted (the wrong guess used the last attempt), or
        InvalidCode carrying the decremented challenge.
        """
        for _ in range(self._WRITE_ATTEMPTS):
            current = self.store.get(challenge_id)
            if current is None:
                raise ChallengeExpired()
            if self._clock() >= current.expires_at:
                self.store.delete(current)
                raise ChallengeExpired()

            if hmac.compare_digest(current.code.encode(), code.encode()):
                self.store.delete(current)
                return current

            remaining = current.attempts_remaining - 1
            if remaining <= 0:
                self.store.delete(current)
                logger.info("Verification challenge %s exhausted its attempts", current.id)
                raise AttemptsExhausted()
            decremented = replace(current, attempts_remaining=remaining, updated_at=self._clock())
            if self.store.replace(decremented, previous=current):
                raise InvalidCode(decremented)
        raise Conflict("Verification request changed concurrently. Retry the request.", code="concurrent_update")

    def clear(self, subject: Subject, method: VerificationMethod) -> None:
        """Drop the active challenge for (subject, method), if any."""
        existing = self.store.find(subject, method)
        if existing is not None:
            self.store.delete(existing)


# ---------------------------------------------------------------------------
# Item mappers
# ---------------------------------------------------------------------------


def _to_item(challenge: VerificationChallenge) -> dict:
    return {
        "id": challenge.id,
        "subject_kind": challenge.subject.kind,
        "subject_id": challenge.subject.id,
        "method": challenge.method,
        "code": challenge.code,
        "destination": challenge.destination,
        "masked_destination": challenge.masked_destination,
        "expires_at": to_iso(challenge.expires_at),
        "resend_available_at": to_iso(challenge.resend_available_at),
        "attempts_remaining": challenge.attempts_remaining,
        "created_at": to_iso(challenge.created_at),
        "updated_at": to_iso(challenge.updated_at),
    }


def _from_item(item: dict) -> VerificationChallenge:
    return VerificationChallenge(
        id=item["id"],
        subject=Subject(kind=item["subject_kind"], id=item["subject_id"]),
        method=item["method"],
        code=item["code"],
        destination=item["destination"],
        masked_destination=item["masked_destination"],
        expires_at=from_iso(item["expires_at"]),
        resend_available_at=from_iso(item["resend_available_at"]),
        attempts_remaining=item["attempts_remaining"],
        created_at=from_iso(item["created_at"]),
        updated_at=from_iso(item["updated_at"]),
    )
