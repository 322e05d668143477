"""Atomic per-id DSL version counters.

Uses the ``dsl_counters`` table so versions survive restarts and stay
gapless: the increment and the version insert share one transaction, so a
rollback releases the claimed number.

Both functions run on the caller's ``Connection``, normally one from
``engine.begin()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import insert, select, update

from dslctl.infrastructure.database.schema import dsl_counters

if TYPE_CHECKING:
    from sqlalchemy import Connection


def next_version(conn: Connection, dsl_id: str) -> int:
    """Claim the next version number for *dsl_id* (first version is 1).

    Args:
        conn: Active SQLAlchemy connection (caller owns the transaction).
        dsl_id: Entity or session id the document belongs to.
    """
    current = conn.execute(
        select(dsl_counters.c.next_version).where(dsl_counters.c.dsl_id == dsl_id)
    ).scalar_one_or_none()

    if current is None:
        conn.execute(insert(dsl_counters).values(dsl_id=dsl_id, next_version=2))
        return 1

    conn.execute(
        update(dsl_counters)
        .where(dsl_counters.c.dsl_id == dsl_id)
        .values(next_version=current + 1)
    )
    return int(current)


def current_version(conn: Connection, dsl_id: str) -> int:
    """Latest claimed version for *dsl_id*, or 0 when none exist."""
    value = conn.execute(
        select(dsl_counters.c.next_version).where(dsl_counters.c.dsl_id == dsl_id)
    ).scalar_one_or_none()
    return 0 if value is None else int(value) - 1
