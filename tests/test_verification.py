"""
tests/test_verification.py -- Verification Challenge Engine tests.

Runs the state machine against both challenge stores. Defaults mirror
production: 6-digit codes, 600s TTL, 60s resend cooldown, 5 attempts.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from auth.models import Subject
from auth.verification import MemoryChallengeStore, SqlChallengeStore, VerificationEngine
from core.errors import AttemptsExhausted, ChallengeExpired, Gone, InvalidCode, NotFound, RateLimited

PHONE = "+15555551212"
MASKED = "***-***-1212"


@pytest.fixture(params=["memory", "sql"])
def engine(request, clock, table):
    store = MemoryChallengeStore() if request.param == "memory" else SqlChallengeStore(table)
    return VerificationEngine(store, clock=clock)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


def _issue(engine, subject=None):
    return engine.create(subject or Subject.account("acct-1"), "phone", PHONE, MASKED)


class TestCreate:
    def test_fields_follow_configuration(self, engine, clock):
        challenge = _issue(engine)
        assert len(challenge.code) == 6 and challenge.code.isdigit()
        assert challenge.expires_at == clock() + timedelta(seconds=600)
        assert challenge.resend_available_at == clock() + timedelta(seconds=60)
        assert challenge.attempts_remaining == 5
        assert challenge.masked_destination == MASKED
        assert engine.get(challenge.id) == challenge

    def test_new_challenge_replaces_previous_for_same_subject(self, engine):
        first = _issue(engine)
        second = _issue(engine)
        assert engine.get(first.id) is None
        assert engine.get(second.id) is not None

    def test_subjects_of_different_kinds_never_collide(self, engine):
        account = _issue(engine, Subject.account("same-id"))
        pending = _issue(engine, Subject.pending_registration("same-id"))
        assert engine.get(account.id) is not None
        assert engine.get(pending.id).subject.kind == "pending_registration"

    def test_code_length_is_configurable(self, clock):
        engine = VerificationEngine(MemoryChallengeStore(), code_length=8, clock=clock)
        assert len(_issue(engine).code) == 8


class TestConsume:
    def test_correct_code_consumes_challenge(self, engine):
        challenge = _issue(engine)
        consumed = engine.consume(challenge.id, challenge.code)
        assert consumed.id == challenge.id
        assert engine.get(challenge.id) is None
        with pytest.raises(ChallengeExpired):
            engine.consume(challenge.id, challenge.code)

    def test_wrong_codes_decrement_then_exhaust(self, engine):
        challenge = _issue(engine)
        for remaining in (4, 3, 2, 1):
            with pytest.raises(InvalidCode) as exc_info:
                engine.consume(challenge.id, _wrong(challenge.code))
            assert exc_info.value.attempts_remaining == remaining
            assert engine.get(challenge.id).attempts_remaining == remaining

        with pytest.raises(AttemptsExhausted):
            engine.consume(challenge.id, _wrong(challenge.code))

        # The sixth submission fails even with the right code.
        with pytest.raises(Gone):
            engine.consume(challenge.id, challenge.code)

    def test_expired_challenge_is_gone(self, engine, clock):
        challenge = _issue(engine)
        clock.advance(600)
        with pytest.raises(ChallengeExpired):
            engine.consume(challenge.id, challenge.code)
        assert engine.get(challenge.id) is None

    def test_unknown_challenge_is_gone(self, engine):
        with pytest.raises(ChallengeExpired):
            engine.consume("00000000-0000-0000-0000-000000000000", "123456")

    def test_get_applies_lazy_expiry(self, engine, clock):
        challenge = _issue(engine)
        clock.advance(599)
        assert engine.get(challenge.id) is not None
        clock.advance(1)
        assert engine.get(challenge.id) is None


class TestRegenerate:
    def test_before_cooldown_is_rate_limited_and_old_code_still_works(self, engine, clock):
        challenge = _issue(engine)
        clock.advance(20)
        with pytest.raises(RateLimited) as exc_info:
            engine.regenerate(challenge.id)
        assert exc_info.value.retry_after_seconds == 40
        assert exc_info.value.challenge.id == challenge.id
        assert engine.consume(challenge.id, challenge.code).id == challenge.id

    def test_after_cooldown_old_code_no_longer_works(self, engine, clock):
        challenge = _issue(engine)
        with pytest.raises(InvalidCode):
            engine.consume(challenge.id, _wrong(challenge.code))

        clock.advance(60)
        refreshed = engine.regenerate(challenge.id)
        while refreshed.code == challenge.code:
            clock.advance(60)
            refreshed = engine.regenerate(challenge.id)

        assert refreshed.id == challenge.id
        assert refreshed.attempts_remaining == 5
        assert refreshed.expires_at == clock() + timedelta(seconds=600)
        assert refreshed.resend_available_at == clock() + timedelta(seconds=60)
        with pytest.raises(InvalidCode):
            engine.consume(challenge.id, challenge.code)
        assert engine.consume(challenge.id, refreshed.code).id == challenge.id

    def test_unknown_or_expired_is_not_found(self, engine, clock):
        with pytest.raises(NotFound):
            engine.regenerate("missing")
        challenge = _issue(engine)
        clock.advance(601)
        with pytest.raises(NotFound):
            engine.regenerate(challenge.id)


def test_clear_drops_active_challenge(engine):
    subject = Subject.account("acct-1")
    challenge = _issue(engine, subject)
    engine.clear(subject, "phone")
    assert engine.get(challenge.id) is None
    engine.clear(subject, "phone")  # nothing left; no error


def test_sql_stale_decrement_loses(table, clock):
    """A write based on an outdated read must not restore a higher count."""
    store = SqlChallengeStore(table)
    engine = VerificationEngine(store, clock=clock)
    challenge = _issue(engine)
    stale = store.get(challenge.id)

    with pytest.raises(InvalidCode):
        engine.consume(challenge.id, _wrong(challenge.code))

    assert store.replace(replace(stale, attempts_remaining=5), previous=stale) is False
    assert store.get(challenge.id).attempts_remaining == 4
