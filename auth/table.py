"""
auth/table.py -- Single-table item store on SQLAlchemy Core.

Every identity entity lives in one table keyed by a composite (pk, sk). The
item type is encoded in the key prefixes, so an entity and its secondary
index rows are just more items in the same table:

    pk                         sk                      entity_type
    ACCOUNT#<id>               PROFILE                 ACCOUNT
    ACCOUNT_EMAIL#<email>      ACCOUNT                 ACCOUNT_EMAIL
    SESSION#<id>               SESSION                 SESSION
    ACCOUNT#<id>               SESSION#<sid>           ACCOUNT_SESSION
    REGISTRATION#<id>          REGISTRATION            PENDING_REGISTRATION
    REGISTRATION_EMAIL#<email> REGISTRATION            PENDING_REGISTRATION_EMAIL
    VERIFICATION#<id>          REQUEST                 VERIFICATION
    <subject pk>               VERIFICATION#<method>   SUBJECT_VERIFICATION

Pattern: Unit of Work. transact() applies a list of Put/Update/Delete
operations inside one database transaction. Either every operation commits
or none does, which is what keeps an entity and its index rows from drifting
apart ("ghost" index rows pointing at nothing).

Conditional writes:
  Put(if_absent=True)  -- plain INSERT; the (pk, sk) primary key makes the
                          second of two concurrent writers fail.
  Update(expected=...) -- UPDATE ... WHERE data = <previous JSON>; optimistic
                          concurrency for read-modify-write sequences.
  A failed condition rolls back the whole transaction and raises
  ConditionFailed.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from sqlalchemy import Column, Index, MetaData, String, Table, Text, create_engine, delete, event, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_items = Table(
    "identity_items",
    _metadata,
    Column("pk", String(320), primary_key=True),
    Column("sk", String(320), primary_key=True),
    Column("entity_type", String(40), nullable=False),
    Column("data", Text, nullable=False),  # JSON object, keys sorted
    Column("updated_at", String(32), nullable=False),
    Index("ix_identity_items_entity_type", "entity_type"),
)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class ConditionFailed(Exception):
    """A conditional write lost: the key already existed or the item changed."""


@dataclass(frozen=True)
class Put:
    pk: str
    sk: str
    entity_type: str
    data: dict[str, Any] = field(default_factory=dict)
    if_absent: bool = False


@dataclass(frozen=True)
class Update:
    """Replace the data of an existing item. Fails if the item is missing.

    When expected is given, the update only applies if the stored data still
    equals it.
    """

    pk: str
    sk: str
    data: dict[str, Any]
    expected: dict[str, Any] | None = None


@dataclass(frozen=True)
class Delete:
    pk: str
    sk: str


Operation = Union[Put, Update, Delete]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _dumps(data: dict[str, Any]) -> str:
    # sort_keys makes the JSON text canonical so Update.expected can compare
    # by string equality in SQL.
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    # Naive strings are treated as UTC.
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Item table
# ---------------------------------------------------------------------------


class ItemTable:
    """Thin repository over the identity_items table.

    Usage:
        table = ItemTable("sqlite:///ideabridge_identity.db")
        table.transact([Put("ACCOUNT#1", "PROFILE", "ACCOUNT", {...}, if_absent=True)])
        profile = table.get("ACCOUNT#1", "PROFILE")
        table.close()
    """

    def __init__(self, db_url: str) -> None:
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each thread sees its own empty database.
                engine_args["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, pk: str, sk: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_items.c.data).where((_items.c.pk == pk) & (_items.c.sk == sk))).fetchone()
        return json.loads(row.data) if row is not None else None

    def query(self, pk: str, sk_prefix: str = "") -> list[dict[str, Any]]:
        """Return the data of every item under pk whose sk starts with sk_prefix."""
        stmt = select(_items.c.data).where(_items.c.pk == pk)
        if sk_prefix:
            stmt = stmt.where(_items.c.sk.startswith(sk_prefix, autoescape=True))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_items.c.sk)).fetchall()
        return [json.loads(r.data) for r in rows]

    def scan(self, entity_type: str) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_items.c.data).where(_items.c.entity_type == entity_type).order_by(_items.c.pk)
            ).fetchall()
        return [json.loads(r.data) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def transact(self, operations: list[Operation]) -> None:
        """Apply operations atomically. Raises ConditionFailed on a lost condition."""
        if not operations:
            return
        try:
            with self.engine.begin() as conn:
                for op in operations:
                    self._apply(conn, op)
        except IntegrityError as exc:
            raise ConditionFailed(str(exc.orig)) from exc

    def _apply(self, conn: Connection, op: Operation) -> None:
        where = (_items.c.pk == op.pk) & (_items.c.sk == op.sk)
        if isinstance(op, Put):
            if not op.if_absent:
                conn.execute(delete(_items).where(where))
            conn.execute(
                insert(_items).values(
                    pk=op.pk,
                    sk=op.sk,
                    entity_type=op.entity_type,
                    data=_dumps(op.data),
                    updated_at=_now_iso(),
                )
            )
        elif isinstance(op, Update):
            if op.expected is not None:
                where = where & (_items.c.data == _dumps(op.expected))
            result = conn.execute(update(_items).where(where).values(data=_dumps(op.data), updated_at=_now_iso()))
            if result.rowcount == 0:
                # Raising inside engine.begin() rolls back earlier operations.
                raise ConditionFailed(f"update condition failed for {op.pk}/{op.sk}")
        else:
            conn.execute(delete(_items).where(where))

    def close(self) -> None:
        self.engine.dispose()
