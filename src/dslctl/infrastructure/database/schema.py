"""SQLAlchemy Core table definitions for the dslctl store.

``dsl_versions`` and ``lifecycle_records`` are append-only: the store
never issues UPDATE or DELETE against them.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

entities = Table(
    "entities",
    metadata,
    Column("id", Text, primary_key=True),
    Column("domain", Text, nullable=False),
    Column("entity_type", Text, nullable=False),
    Column("state", Text),
    Column("attributes", Text, nullable=False, default="{}", server_default="{}"),  # JSON
    Column("created", Text, nullable=False),
    Column("modified", Text, nullable=False),
)

lifecycle_records = Table(
    "lifecycle_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("record_id", Text, nullable=False, unique=True),
    Column("entity_id", Text, ForeignKey("entities.id"), nullable=False),
    Column("from_state", Text),  # NULL for the initial record
    Column("to_state", Text, nullable=False),
    Column("trigger", Text, nullable=False),
    Column("guard_context", Text, nullable=False),  # JSON snapshot
    Column("actor", Text, nullable=False),
    Column("timestamp", Text, nullable=False),
)

dsl_versions = Table(
    "dsl_versions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("dsl_id", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("fragment", Text, nullable=False),
    Column("created", Text, nullable=False),
    UniqueConstraint("dsl_id", "version"),
)

# Per-id version counter, bumped in the same transaction as the insert.
dsl_counters = Table(
    "dsl_counters",
    metadata,
    Column("dsl_id", Text, primary_key=True),
    Column("next_version", Integer, nullable=False, default=1, server_default="1"),
)

attribute_values = Table(
    "attribute_values",
    metadata,
    Column("entity_id", Text, nullable=False),
    Column("attribute_id", Text, nullable=False),
    Column("value", Text, nullable=False),  # JSON
    Column("modified", Text, nullable=False),
    UniqueConstraint("entity_id", "attribute_id"),
)

event_wal = Table(
    "event_wal",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("hook_name", Text, nullable=False),
    Column("payload", Text, nullable=False),  # JSON
    Column("status", Text, nullable=False),
    Column("error", Text),
    Column("retries", Integer, default=0, server_default="0"),
    Column("session_id", Text),
    Column("created", Text, nullable=False),
    Column("completed", Text),
)

# ---------------------------------------------------------------------------
# Indexes for frequently filtered columns
# ---------------------------------------------------------------------------

Index("ix_entities_domain", entities.c.domain)
Index("ix_lifecycle_entity", lifecycle_records.c.entity_id)
Index("ix_attribute_values_entity", attribute_values.c.entity_id)
Index("ix_event_wal_status", event_wal.c.status)
