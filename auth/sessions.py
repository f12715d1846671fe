"""
auth/sessions.py -- Session Manager: opaque session ids with a TTL.

Sessions expire lazily. get() is the only guaranteed point where an expired
session is deleted; there is no background sweeper. Anything that enumerates
sessions (list(), the admin CLI) must re-check expires_at itself, which
list() does.

Backends:
  SqlSessionStore    -- session item + account-session index item per
                        session. destroy_all() deletes in transactions of at
                        most _DELETE_BATCH paired deletes, matching the
                        per-transaction item budget of the single-table
                        layout.
  MemorySessionStore -- dicts for tests/offline use.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import Session
from auth.table import Delete, ItemTable, Put, from_iso, to_iso

DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 24 * 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore(ABC):
    def __init__(
        self,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def create(self, account_id: str) -> Session:
        now = self._clock()
        session = Session(
            id=str(uuid.uuid4()),
            account_id=account_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        self._save(session)
        return session

    def get(self, session_id: str) -> Session | None:
        """Return the session if still live; delete and return None otherwise."""
        session = self._load(session_id)
        if session is None:
            return None
        if self._clock() >= session.expires_at:
            self.destroy(session_id)
            return None
        return session

    def list(self, account_id: str | None = None) -> list[Session]:
        """Return live sessions, optionally for one account. Admin-only operation."""
        now = self._clock()
        return [s for s in self._load_all(account_id) if now < s.expires_at]

    @abstractmethod
    def destroy(self, session_id: str) -> None: ...

    @abstractmethod
    def destroy_all(self, account_id: str) -> int:
        """Remove every session of account_id. Returns the number removed."""

    @abstractmethod
    def _save(self, session: Session) -> None: ...

    @abstractmethod
    def _load(self, session_id: str) -> Session | None: ...

    @abstractmethod
    def _load_all(self, account_id: str | None) -> list[Session]: ...

    def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend (test/offline only)
# ---------------------------------------------------------------------------


class MemorySessionStore(SessionStore):
    def __init__(
        self,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(ttl_seconds, clock)
        self._by_id: dict[str, Session] = {}
        self._ids_by_account: dict[str, set[str]] = {}

    def _save(self, session: Session) -> None:
        self._by_id[session.id] = session
        self._ids_by_account.setdefault(session.account_id, set()).add(session.id)

    def _load(self, session_id: str) -> Session | None:
        return self._by_id.get(session_id)

    def _load_all(self, account_id: str | None) -> list[Session]:
        if account_id is None:
            return list(self._by_id.values())
        return [self._by_id[sid] for sid in self._ids_by_account.get(account_id, ()) if sid in self._by_id]

    def destroy(self, session_id: str) -> None:
        session = self._by_id.pop(session_id, None)
        if session is None:
            return
        ids = self._ids_by_account.get(session.account_id)
        if ids is not None:
            ids.discard(session_id)
            if not ids:
                del self._ids_by_account[session.account_id]

    def destroy_all(self, account_id: str) -> int:
        ids = self._ids_by_account.pop(account_id, set())
        for session_id in ids:
            self._by_id.pop(session_id, None)
        return len(ids)


# ---------------------------------------------------------------------------
# Transactional backend
# ---------------------------------------------------------------------------

_SESSION_SK = "SESSION"
_ACCOUNT_SESSION_PREFIX = "SESSION#"
# Paired deletes per transaction (session item + index item each).
_DELETE_BATCH = 25


def _session_pk(session_id: str) -> str:
    return f"SESSION#{session_id}"


def _account_pk(account_id: str) -> str:
    return f"ACCOUNT#{account_id}"


class SqlSessionStore(SessionStore):
    def __init__(
        self,
        table: ItemTable,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(ttl_seconds, clock)
        self._table = table

    def _save(self, session: Session) -> None:
        self._table.transact(
            [
                Put(_session_pk(session.id), _SESSION_SK, "SESSION", _to_item(session), if_absent=True),
                Put(
                    _account_pk(session.account_id),
                    f"{_ACCOUNT_SESSION_PREFIX}{session.id}",
                    "ACCOUNT_SESSION",
                    {"session_id": session.id, "account_id": session.account_id},
                    if_absent=True,
                ),
            ]
        )

    def _load(self, session_id: str) -> Session | None:
        item = self._table.get(_session_pk(session_id), _SESSION_SK)
        return _from_item(item) if item is not None else None

    def _load_all(self, account_id: str | None) -> list[Session]:
        if account_id is None:
            return [_from_item(item) for item in self._table.scan("SESSION")]
        sessions = []
        for mapping in self._table.query(_account_pk(account_id), _ACCOUNT_SESSION_PREFIX):
            session = self._load(mapping["session_id"])
            if session is not None:
                sessions.append(session)
        return sessions

    def destroy(self, session_id: str) -> None:
        session = self._load(session_id)
        if session is None:
            return
        self._table.transact(
            [
                Delete(_session_pk(session_id), _SESSION_SK),
                Delete(_account_pk(session.account_id), f"{_ACCOUNT_SESSION_PREFIX}{session_id}"),
            ]
        )

    def destroy_all(self, account_id: str) -> int:
        session_ids = [m["session_id"] for m in self._table.query(_account_pk(account_id), _ACCOUNT_SESSION_PREFIX)]
        for start in range(0, len(session_ids), _DELETE_BATCH):
            batch = session_ids[start : start + _DELETE_BATCH]
            operations = []
            for session_id in batch:
                operations.append(Delete(_session_pk(session_id), _SESSION_SK))
                operations.append(Delete(_account_pk(account_id), f"{_ACCOUNT_SESSION_PREFIX}{session_id}"))
            self._table.transact(operations)
        return len(session_ids)


def _to_item(session: Session) -> dict:
    return {
        "id": session.id,
        "account_id": session.account_id,
        "created_at": to_iso(session.created_at),
        "expires_at": to_iso(session.expires_at),
    }


def _from_item(item: dict) -> Session:
    return Session(
        id=item["id"],
        account_id=item["account_id"],
        created_at=from_iso(item["created_at"]),
        expires_at=from_iso(item["expires_at"]),
    )
