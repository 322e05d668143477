"""SQLite database engine, schema, and version counters via SQLAlchemy Core."""

from dslctl.infrastructure.database.counters import current_version, next_version
from dslctl.infrastructure.database.engine import create_db_engine, init_database
from dslctl.infrastructure.database.schema import (
    attribute_values,
    dsl_counters,
    dsl_versions,
    entities,
    event_wal,
    lifecycle_records,
    metadata,
)

__all__ = [
    "attribute_values",
    "create_db_engine",
    "current_version",
    "dsl_counters",
    "dsl_versions",
    "entities",
    "event_wal",
    "init_database",
    "lifecycle_records",
    "metadata",
    "next_version",
]
