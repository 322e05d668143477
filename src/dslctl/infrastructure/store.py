"""Store — the persistence boundary for entities, records, DSL and attributes.

The Store owns the SQLAlchemy engine. Core services call it through a
narrow synchronous contract; every SQLAlchemy failure leaves it as a
:class:`~dslctl.domain.errors.StoreError` naming the operation.

Multi-step writes go through :meth:`Store.transaction`, which yields a
:class:`StoreTransaction` bound to one connection so that a DSL version,
its attribute values, a lifecycle record and the entity update commit or
roll back together.

SQLite admits one writer at a time, so the store serializes its own
write transactions; per-key ordering is the callers' job.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from dslctl.domain.document import DslVersion, join_fragments
from dslctl.domain.errors import StateError, StoreError
from dslctl.domain.lifecycle import Entity, LifecycleRecord
from dslctl.infrastructure.database.counters import next_version
from dslctl.infrastructure.database.engine import init_database
from dslctl.infrastructure.database.schema import (
    attribute_values,
    dsl_versions,
    entities,
    lifecycle_records,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from sqlalchemy import Connection
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _dumps(value: Any) -> str:
    # Decimals and dates are stored as their text form.
    return json.dumps(value, default=str, sort_keys=True)


@contextmanager
def _wrapped(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("Store operation %s failed: %s", operation, exc)
        raise StoreError(operation, exc) from exc


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _entity_from_row(row: Any) -> Entity:
    return Entity(
        id=row.id,
        domain=row.domain,
        entity_type=row.entity_type,
        state=row.state,
        attributes=json.loads(row.attributes or "{}"),
        created=row.created,
        modified=row.modified,
    )


def _record_from_row(row: Any) -> LifecycleRecord:
    return LifecycleRecord(
        record_id=row.record_id,
        entity_id=row.entity_id,
        from_state=row.from_state,
        to_state=row.to_state,
        trigger=row.trigger,
        guard_context=json.loads(row.guard_context),
        actor=row.actor,
        timestamp=row.timestamp,
    )


def _version_from_row(row: Any) -> DslVersion:
    return DslVersion(
        dsl_id=row.dsl_id,
        version=row.version,
        fragment=row.fragment,
        created=row.created,
    )


# ---------------------------------------------------------------------------
# StoreTransaction — yielded to callers within transaction()
# ---------------------------------------------------------------------------


@dataclass
class StoreTransaction:
    """Writes and reads bound to one open transaction."""

    conn: Connection

    # ── DSL versions ─────────────────────────────────────────────────

    def insert_dsl(self, dsl_id: str, fragment: str) -> DslVersion:
        """Append *fragment* under the next version for *dsl_id*."""
        version = next_version(self.conn, dsl_id)
        created = _now_iso()
        self.conn.execute(
            insert(dsl_versions).values(
                dsl_id=dsl_id, version=version, fragment=fragment, created=created
            )
        )
        return DslVersion(dsl_id=dsl_id, version=version, fragment=fragment, created=created)

    def dsl_history(self, dsl_id: str) -> list[DslVersion]:
        rows = self.conn.execute(
            select(dsl_versions)
            .where(dsl_versions.c.dsl_id == dsl_id)
            .order_by(dsl_versions.c.version)
        ).fetchall()
        return [_version_from_row(r) for r in rows]

    # ── entities ─────────────────────────────────────────────────────

    def get_entity(self, entity_id: str) -> Entity | None:
        row = self.conn.execute(select(entities).where(entities.c.id == entity_id)).first()
        return None if row is None else _entity_from_row(row)

    def create_entity(self, entity: Entity) -> None:
        self.conn.execute(
            insert(entities).values(
                id=entity.id,
                domain=entity.domain,
                entity_type=entity.entity_type,
                state=entity.state,
                attributes=_dumps(dict(entity.attributes)),
                created=entity.created,
                modified=entity.modified,
            )
        )

    def update_entity(self, entity: Entity, *, expected_state: str | None) -> None:
        """Write *entity*'s state and attributes if the stored state still matches.

        Raises:
            StateError: The entity moved since it was read (reason
                ``concurrent_modification``).
        """
        result = self.conn.execute(
            update(entities)
            .where(entities.c.id == entity.id, entities.c.state == expected_state)
            .values(
                state=entity.state,
                attributes=_dumps(dict(entity.attributes)),
                modified=entity.modified,
            )
        )
        if result.rowcount != 1:
            raise StateError(
                f"entity {entity.id} is no longer in state {expected_state}",
                reason="concurrent_modification",
                entity_id=entity.id,
                expected_state=expected_state,
            )

    # ── lifecycle records ────────────────────────────────────────────

    def add_record(self, record: LifecycleRecord) -> None:
        self.conn.execute(
            insert(lifecycle_records).values(
                record_id=record.record_id,
                entity_id=record.entity_id,
                from_state=record.from_state,
                to_state=record.to_state,
                trigger=record.trigger,
                guard_context=_dumps(dict(record.guard_context)),
                actor=record.actor,
                timestamp=record.timestamp,
            )
        )

    def records(self, entity_id: str) -> list[LifecycleRecord]:
        rows = self.conn.execute(
            select(lifecycle_records)
            .where(lifecycle_records.c.entity_id == entity_id)
            .order_by(lifecycle_records.c.id)
        ).fetchall()
        return [_record_from_row(r) for r in rows]

    # ── attribute values ─────────────────────────────────────────────

    def set_attribute_value(self, entity_id: str, attribute_id: str, value: Any) -> None:
        """Insert or replace the value of one attribute for an entity."""
        payload = {"value": _dumps(value), "modified": _now_iso()}
        result = self.conn.execute(
            update(attribute_values)
            .where(
                attribute_values.c.entity_id == entity_id,
                attribute_values.c.attribute_id == attribute_id,
            )
            .values(**payload)
        )
        if result.rowcount == 0:
            self.conn.execute(
                insert(attribute_values).values(
                    entity_id=entity_id, attribute_id=attribute_id, **payload
                )
            )

    def attribute_values(self, entity_id: str) -> dict[str, Any]:
        rows = self.conn.execute(
            select(attribute_values.c.attribute_id, attribute_values.c.value)
            .where(attribute_values.c.entity_id == entity_id)
            .order_by(attribute_values.c.attribute_id)
        ).fetchall()
        return {r.attribute_id: json.loads(r.value) for r in rows}


# ---------------------------------------------------------------------------
# Store — the repository
# ---------------------------------------------------------------------------


class Store:
    """Repository over the SQLite database.

    Args:
        path: Database file. ``None`` keeps everything in memory.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        with _wrapped("init"):
            self._engine: Engine = init_database(path)
        self._write_lock = threading.RLock()
        self._closed = False

    @classmethod
    def in_memory(cls) -> Store:
        return cls(None)

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def engine(self) -> Engine:
        """The underlying SQLAlchemy engine (shared with the event bus)."""
        return self._engine

    @property
    def write_lock(self) -> threading.RLock:
        """Lock serializing writers (and, in memory, readers) on this database."""
        return self._write_lock

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[StoreTransaction]:
        """One atomic unit: commit on success, roll back on any exception.

        Usage::

            with store.transaction() as txn:
                version = txn.insert_dsl(entity.id, fragment)
                txn.add_record(record)
                txn.update_entity(moved, expected_state=entity.state)
        """
        with self._write_lock, _wrapped(operation), self._engine.begin() as conn:
            yield StoreTransaction(conn=conn)

    @contextmanager
    def _reader(self, operation: str) -> Iterator[StoreTransaction]:
        # In-memory databases share one connection, so reads queue behind writes.
        if self._path is None:
            with self._write_lock, _wrapped(operation), self._engine.connect() as conn:
                yield StoreTransaction(conn=conn)
        else:
            with _wrapped(operation), self._engine.connect() as conn:
                yield StoreTransaction(conn=conn)

    # ── DSL contract ─────────────────────────────────────────────────

    def insert_dsl(self, dsl_id: str, fragment: str) -> int:
        """Append *fragment* and return its version number."""
        with self.transaction("insert_dsl") as txn:
            return txn.insert_dsl(dsl_id, fragment).version

    def get_dsl_history(self, dsl_id: str) -> list[DslVersion]:
        with self._reader("get_dsl_history") as txn:
            return txn.dsl_history(dsl_id)

    def get_latest_dsl(self, dsl_id: str) -> str:
        """Full accumulated text for *dsl_id* (empty when nothing was accepted)."""
        return join_fragments(v.fragment for v in self.get_dsl_history(dsl_id))

    # ── entity contract ──────────────────────────────────────────────

    def get_entity(self, entity_id: str) -> Entity | None:
        with self._reader("get_entity") as txn:
            return txn.get_entity(entity_id)

    def create_entity(self, entity: Entity) -> None:
        with self.transaction("create_entity") as txn:
            txn.create_entity(entity)

    def update_entity(self, entity: Entity, *, expected_state: str | None) -> None:
        with self.transaction("update_entity") as txn:
            txn.update_entity(entity, expected_state=expected_state)

    def get_lifecycle_records(self, entity_id: str) -> list[LifecycleRecord]:
        with self._reader("get_lifecycle_records") as txn:
            return txn.records(entity_id)

    # ── attribute contract ───────────────────────────────────────────

    def get_attribute_values(self, entity_id: str) -> dict[str, Any]:
        with self._reader("get_attribute_values") as txn:
            return txn.attribute_values(entity_id)

    def set_attribute_value(self, entity_id: str, attribute_id: str, value: Any) -> None:
        with self.transaction("set_attribute_value") as txn:
            txn.set_attribute_value(entity_id, attribute_id, value)

    def close(self) -> None:
        """Dispose of the engine's connection pool. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._engine.dispose()
