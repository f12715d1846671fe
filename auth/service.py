"""
auth/service.py -- Auth Orchestrator.

AuthService composes the Identity Store, Session Manager, Pending
Registration Staging, Verification Challenge Engine, CodeSender and the
submission rate limiter into the user-facing flows:

    register ──> stage PendingRegistration ──> challenge ──> send code
                                                              │
    confirm_verification <────────────────────────────────────┘
        └──> promote to Account (phone_verified) ──> open Session

Every domain failure is raised as a core.errors.IdentityError subclass; the
API layer renders them. Nothing here knows about HTTP.

build_auth_service() constructs a fully wired instance from Settings. The
FastAPI lifespan calls it once per process and stores the result on
app.state.auth; tests build their own with a fake clock and a recording
sender. There are no module-level stores.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from auth.models import Account, Role, Session, Subject, VerificationChallenge
from auth.notifier import CodeSender, build_code_sender
from auth.registrations import (
    MemoryPendingRegistrationStore,
    PendingRegistrationStore,
    SqlPendingRegistrationStore,
)
from auth.sessions import MemorySessionStore, SessionStore, SqlSessionStore
from auth.store import IdentityStore, MemoryIdentityStore, SqlIdentityStore
from auth.table import ItemTable
from auth.tokens import create_access_token, decode_access_token, equalize_password_timing, hash_password, verify_password
from auth.verification import MemoryChallengeStore, SqlChallengeStore, VerificationEngine, seconds_until
from core.config import Settings, get_settings
from core.errors import (
    Conflict,
    Forbidden,
    IdentityError,
    InternalError,
    InvalidInput,
    NotFound,
    RateLimited,
    Unauthorized,
)
from core.masking import mask_email, mask_phone
from core.phone import sanitize_phone_number
from core.rate_limiter import SlidingWindowLimiter

logger = logging.getLogger("ideabridge.auth")

AuthStatus = Literal["authenticated", "verification_required"]

_PROFILE_FIELDS = frozenset({"display_name", "bio", "preferred_role", "confirm_role_change", "phone_number"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuthResult:
    """Outcome of register/login/confirm/start.

    authenticated          -- account, session and token are set.
    verification_required  -- challenge is set; no session was opened.
    """

    status: AuthStatus
    account: Account | None = None
    session: Session | None = None
    token: str | None = None
    challenge: VerificationChallenge | None = None


@dataclass
class ProfileResult:
    account: Account
    # Set when the phone number changed and a fresh challenge was issued.
    challenge: VerificationChallenge | None = None


class AuthService:
    def __init__(
        self,
        *,
        identity: IdentityStore,
        sessions: SessionStore,
        registrations: PendingRegistrationStore,
        verification: VerificationEngine,
        sender: CodeSender,
        limiter: SlidingWindowLimiter,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
        table: ItemTable | None = None,
    ) -> None:
        self.identity = identity
        self.sessions = sessions
        self.registrations = registrations
        self.verification = verification
        self.sender = sender
        self.limiter = limiter
        self.settings = settings
        self._clock = clock
        self._table = table

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        *,
        email: str,
        password: str,
        display_name: str,
        phone_number: str | None = None,
        bio: str | None = None,
        preferred_role: Role | None = None,
    ) -> AuthResult:
        email = email.strip().lower()
        phone = self._sanitize_phone(phone_number)
        if self.settings.phone_verification_enabled and phone is None:
            raise InvalidInput("Phone number is required for SMS verification.", code="phone_required")
        if self.identity.get_by_email(email) is not None:
            raise Conflict("An account with that email already exists.")

        password_hash = hash_password(password)
        eligible_at = self._clock() + timedelta(seconds=self.settings.role_change_cooldown_seconds)

        if not self.settings.phone_verification_enabled:
            account = self.identity.create(
                email=email,
                password_hash=password_hash,
                display_name=display_name,
                role_change_eligible_at=eligible_at,
                bio=bio,
                preferred_role=preferred_role,
                phone_number=phone,
            )
            logger.info("Account %s registered without phone verification", account.id)
            return self._open_session(account)

        registration = self.registrations.upsert(
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            role_change_eligible_at=eligible_at,
            phone_number=phone,
            bio=bio,
            preferred_role=preferred_role,
        )
        subject = Subject.pending_registration(registration.id)
        try:
            challenge = self.verification.create(subject, "phone", phone, mask_phone(phone))
            self.sender.send_sms(challenge.destination, challenge.code)
        except Exception as exc:
            logger.error("Failed to dispatch verification challenge for %s: %s", mask_email(email), exc)
            self._discard_registration(registration.id, subject)
            if isinstance(exc, IdentityError):
                raise
            raise InternalError("Failed to initiate verification.") from exc

        logger.info("Registration %s staged for %s", registration.id, mask_email(email))
        return AuthResult(status="verification_required", challenge=challenge)

    def _discard_registration(self, registration_id: str, subject: Subject) -> None:
        # Best-effort rollback; a cleanup failure is logged, never escalated.
        try:
            self.verification.clear(subject, "phone")
            self.registrations.delete(registration_id)
        except Exception:
            logger.exception("Cleanup of staged registration %s failed", registration_id)

    def login(self, *, email: str, password: str) -> AuthResult:
        account = self.identity.get_by_email(email.strip())
        if account is None:
            equalize_password_timing(password)
            raise Unauthorized("Invalid email or password.", code="bad_credentials")
        if not verify_password(password, account.password_hash):
            raise Unauthorized("Invalid email or password.", code="bad_credentials")

        if account.pending_verification_method:
            challenge = self._issue_account_challenge(account)
            return AuthResult(status="verification_required", account=account, challenge=challenge)
        return self._open_session(account)

    def logout(self, session_id: str) -> None:
        self.sessions.destroy(session_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def get_verification(self, request_id: str) -> VerificationChallenge:
        challenge = self.verification.get(request_id)
        if challenge is None:
            raise NotFound("Verification request not found.")
        return challenge

    def resend_verification(self, request_id: str) -> VerificationChallenge:
        """Regenerate the challenge's code and send it again.

        The new code and cooldown are persisted before delivery. If the send
        fails, the previous code is already invalid and the caller has to wait
        out the fresh cooldown before retrying.
        """
        refreshed = self.verification.regenerate(request_id)
        if not self._subject_exists(refreshed.subject):
            self.verification.clear(refreshed.subject, refreshed.method)
            raise NotFound("Verification request not found.")
        try:
            self.sender.send_sms(refreshed.destination, refreshed.code)
        except Exception as exc:
            logger.error("Failed to resend verification challenge %s: %s", refreshed.id, exc)
            raise InternalError("Failed to resend verification.") from exc
        return refreshed

    def start_verification(self, account: Account, phone_number: str | None = None) -> AuthResult:
        """(Re)start phone verification for an existing account."""
        phone = self._sanitize_phone(phone_number)
        fields: dict[str, Any] = {"pending_verification_method": "phone"}
        if phone is not None:
            fields["phone_number"] = phone
            fields["phone_verified"] = False
        elif not account.phone_number:
            raise InvalidInput("Phone number is required for SMS verification.", code="phone_required")

        updated = self.identity.update(account.id, **fields)
        if updated is None:
            raise NotFound("Account not found.")
        challenge = self._issue_account_challenge(updated)
        return AuthResult(status="verification_required", account=updated, challenge=challenge)

    def confirm_verification(self, request_id: str, code: str) -> AuthResult:
        challenge = self.verification.consume(request_id, code)
        if challenge.subject.kind == "pending_registration":
            account = self._promote_registration(challenge.subject.id)
        else:
            account = self._mark_account_verified(challenge)
        return self._open_session(account)

    def _promote_registration(self, registration_id: str) -> Account:
        registration = self.registrations.get_by_id(registration_id)
        if registration is None:
            raise NotFound("Registration not found.")
        if self.identity.get_by_email(registration.email) is not None:
            self.registrations.delete(registration.id)
            raise Conflict("An account with that email already exists.")
        try:
            account = self.identity.create(
                email=registration.email,
                password_hash=registration.password_hash,
                display_name=registration.display_name,
                role_change_eligible_at=registration.role_change_eligible_at,
                bio=registration.bio,
                preferred_role=registration.preferred_role,
                phone_number=registration.phone_number,
                phone_verified=True,
                claimed_by=registration.id,
            )
        except Conflict:
            self.registrations.delete(registration.id)
            raise
        self.registrations.delete(registration.id)
        logger.info("Registration %s promoted to account %s", registration.id, account.id)
        return account

    def _mark_account_verified(self, challenge: VerificationChallenge) -> Account:
        account = self.identity.get_by_id(challenge.subject.id)
        if account is None or not account.is_active:
            raise NotFound("Account not found.")
        fields: dict[str, Any] = {"phone_verified": True}
        if account.pending_verification_method == challenge.method:
            fields["pending_verification_method"] = None
        updated = self.identity.update(account.id, **fields)
        if updated is None:
            raise NotFound("Account not found.")
        return updated

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(self, account: Account, changes: dict[str, Any]) -> ProfileResult:
        """Apply a profile patch. Keys absent from changes are left untouched.

        Role changes need confirm_role_change and an elapsed cooldown. A new
        phone number drops phone_verified, discards any challenge sent to the
        old number and issues a fresh one; clearing the phone drops
        verification state and any live challenge.
        """
        unknown = set(changes) - _PROFILE_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown profile fields: {', '.join(sorted(unknown))}.")

        now = self._clock()
        fields: dict[str, Any] = {}
        if "display_name" in changes:
            if changes["display_name"] is None:
                raise InvalidInput("Display name cannot be cleared.")
            fields["display_name"] = changes["display_name"]
        if "bio" in changes:
            fields["bio"] = changes["bio"]

        if "preferred_role" in changes:
            desired = changes["preferred_role"]
            if desired != account.preferred_role:
                if not changes.get("confirm_role_change"):
                    raise Forbidden("Confirm role change to proceed.", code="role_change_unconfirmed")
                if now < account.role_change_eligible_at:
                    raise RateLimited(
                        "Role change cooldown active.",
                        retry_after_seconds=seconds_until(account.role_change_eligible_at, now),
                        code="role_change_cooldown",
                    )
                fields["preferred_role"] = desired
                fields["role_change_eligible_at"] = now + timedelta(seconds=self.settings.role_change_cooldown_seconds)

        issue_challenge = False
        clear_challenge = False
        if "phone_number" in changes:
            phone = self._sanitize_phone(changes["phone_number"])
            if phone is None:
                fields.update(phone_number=None, phone_verified=False, pending_verification_method=None)
                clear_challenge = True
            elif phone != account.phone_number:
                fields.update(phone_number=phone, phone_verified=False)
                # A challenge sent to the old number must not verify the new one.
                clear_challenge = True
                if self.settings.phone_verification_enabled:
                    fields["pending_verification_method"] = "phone"
                    issue_challenge = True

        updated = self.identity.update(account.id, **fields)
        if updated is None:
            raise NotFound("Account not found.")

        challenge = None
        if clear_challenge:
            self.verification.clear(Subject.account(account.id), "phone")
        if issue_challenge:
            challenge = self._issue_account_challenge(updated)
        return ProfileResult(account=updated, challenge=challenge)

    def delete_account(self, account: Account) -> int:
        """Soft delete the account, end every session, drop its challenge.

        Returns the number of sessions destroyed.
        """
        self.identity.soft_delete(account.id)
        destroyed = self.sessions.destroy_all(account.id)
        self.verification.clear(Subject.account(account.id), "phone")
        logger.info("Account %s deleted (%d sessions destroyed)", account.id, destroyed)
        return destroyed

    # ------------------------------------------------------------------
    # Request authentication and submission limits
    # ------------------------------------------------------------------

    def authenticate_token(self, token: str) -> tuple[Account, Session] | None:
        """Resolve an access token to its live session and active account."""
        payload = decode_access_token(token, secret_key=self.settings.secret_key)
        if payload is None:
            return None
        session = self.sessions.get(payload["sid"])
        if session is None or session.account_id != payload["sub"]:
            return None
        account = self.identity.get_by_id(session.account_id)
        if account is None or not account.is_active:
            self.sessions.destroy_all(session.account_id)
            return None
        return account, session

    def admit_submission(self, account_id: str, action: str) -> None:
        """Count one submission against the sliding window; raise RateLimited when full."""
        result = self.limiter.check(
            account_id,
            action,
            limit=self.settings.submission_limit,
            window_ms=self.settings.submission_window_seconds * 1000,
        )
        if not result.allowed:
            raise RateLimited(
                "Submission limit reached. Try again later.",
                retry_after_seconds=max(1, math.ceil(result.retry_after_ms / 1000)),
                code="submission_rate_limited",
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_session(self, account: Account) -> AuthResult:
        session = self.sessions.create(account.id)
        token = create_access_token(
            account.id,
            session.id,
            secret_key=self.settings.secret_key,
            expire_seconds=self.settings.access_token_ttl_seconds,
        )
        return AuthResult(status="authenticated", account=account, session=session, token=token)

    def _issue_account_challenge(self, account: Account) -> VerificationChallenge:
        if not account.phone_number:
            raise InvalidInput("Phone number is required for SMS verification.", code="phone_required")
        subject = Subject.account(account.id)
        challenge = self.verification.create(subject, "phone", account.phone_number, mask_phone(account.phone_number))
        try:
            self.sender.send_sms(challenge.destination, challenge.code)
        except Exception as exc:
            logger.error("Failed to dispatch verification challenge for account %s: %s", account.id, exc)
            self.verification.clear(subject, "phone")
            raise InternalError("Failed to initiate verification.") from exc
        return challenge

    def _subject_exists(self, subject: Subject) -> bool:
        if subject.kind == "pending_registration":
            return self.registrations.get_by_id(subject.id) is not None
        account = self.identity.get_by_id(subject.id)
        return account is not None and account.is_active

    @staticmethod
    def _sanitize_phone(value: str | None) -> str | None:
        try:
            return sanitize_phone_number(value)
        except ValueError as exc:
            raise InvalidInput(str(exc), code="invalid_phone") from exc

    def close(self) -> None:
        for component in (self.identity, self.sessions, self.registrations, self.verification.store):
            component.close()
        if self._table is not None:
            self._table.close()


def build_auth_service(
    settings: Settings | None = None,
    *,
    sender: CodeSender | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> AuthService:
    """Wire an AuthService for the configured backend.

    store_backend="sql" shares one ItemTable between every component;
    "memory" gives each component its own dicts.
    """
    settings = settings or get_settings()
    table: ItemTable | None = None
    if settings.store_backend == "memory":
        registrations: PendingRegistrationStore = MemoryPendingRegistrationStore(clock)
        identity: IdentityStore = MemoryIdentityStore(registrations, clock)
        sessions: SessionStore = MemorySessionStore(settings.session_ttl_seconds, clock)
        challenges = MemoryChallengeStore()
    else:
        table = ItemTable(settings.database_url)
        registrations = SqlPendingRegistrationStore(table, clock)
        identity = SqlIdentityStore(table, registrations, clock)
        sessions = SqlSessionStore(table, settings.session_ttl_seconds, clock)
        challenges = SqlChallengeStore(table)

    return AuthService(
        identity=identity,
        sessions=sessions,
        registrations=registrations,
        verification=VerificationEngine.from_settings(challenges, settings, clock),
        sender=sender or build_code_sender(settings),
        limiter=SlidingWindowLimiter(clock_ms=lambda: int(clock().timestamp() * 1000)),
        settings=settings,
        clock=clock,
        table=table,
    )
