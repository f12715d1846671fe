"""
tests/test_registrations.py -- Pending Registration Staging contract tests.
"""

from __future__ import annotations

import pytest

from auth.registrations import MemoryPendingRegistrationStore, SqlPendingRegistrationStore
from auth.table import Delete


@pytest.fixture(params=["memory", "sql"])
def registrations(request, clock, table):
    if request.param == "memory":
        return MemoryPendingRegistrationStore(clock)
    return SqlPendingRegistrationStore(table, clock)


def _stage(registrations, clock, email="ada@example.com", phone="+15555551212", **extra):
    return registrations.upsert(
        email=email,
        password_hash="hash",
        display_name="Ada",
        role_change_eligible_at=clock(),
        phone_number=phone,
        **extra,
    )


def test_upsert_creates_record(registrations, clock):
    registration = _stage(registrations, clock, email="Ada@Example.com", bio="hi")
    assert registration.email == "ada@example.com"
    assert registration.bio == "hi"
    assert registrations.get_by_id(registration.id) == registration
    assert registrations.get_by_email("ADA@example.com") == registration


def test_reregistering_overwrites_in_place(registrations, clock):
    first = _stage(registrations, clock)
    clock.advance(120)
    second = _stage(registrations, clock, phone="+15555550000", preferred_role="developer")

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.updated_at == clock()
    assert second.phone_number == "+15555550000"
    assert registrations.get_by_email("ada@example.com").phone_number == "+15555550000"


def test_delete_removes_record_and_email_lookup(registrations, clock):
    registration = _stage(registrations, clock)
    registrations.delete(registration.id)
    assert registrations.get_by_id(registration.id) is None
    assert registrations.get_by_email("ada@example.com") is None
    registrations.delete(registration.id)  # idempotent


def test_distinct_emails_get_distinct_records(registrations, clock):
    a = _stage(registrations, clock, email="a@example.com")
    b = _stage(registrations, clock, email="b@example.com")
    assert a.id != b.id


def test_sql_keeps_exactly_one_item_per_email(table, clock):
    store = SqlPendingRegistrationStore(table, clock)
    for _ in range(3):
        _stage(store, clock)
    assert len(table.scan("PENDING_REGISTRATION")) == 1
    assert len(table.scan("PENDING_REGISTRATION_EMAIL")) == 1


def test_sql_orphan_email_index_is_cleaned(table, clock):
    store = SqlPendingRegistrationStore(table, clock)
    registration = _stage(store, clock)
    # Simulate a manual cleanup that left only the index row behind.
    table.transact([Delete(f"REGISTRATION#{registration.id}", "REGISTRATION")])
    assert store.get_by_email("ada@example.com") is None
    assert table.scan("PENDING_REGISTRATION_EMAIL") == []
