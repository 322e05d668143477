"""Tests for persistent per-id DSL version counters."""

from sqlalchemy.engine import Engine

from dslctl.infrastructure.database.counters import current_version, next_version
from dslctl.infrastructure.store import Store


class TestNextVersion:
    def test_first_version_is_one(self, store: Store) -> None:
        engine: Engine = store.engine
        with engine.begin() as conn:
            assert next_version(conn, "doc-1") == 1

    def test_sequential_increment(self, store: Store) -> None:
        with store.engine.begin() as conn:
            versions = [next_version(conn, "doc-1") for _ in range(4)]
        assert versions == [1, 2, 3, 4]

    def test_independent_counters(self, store: Store) -> None:
        with store.engine.begin() as conn:
            a1 = next_version(conn, "a")
            b1 = next_version(conn, "b")
            a2 = next_version(conn, "a")
        assert (a1, b1, a2) == (1, 1, 2)

    def test_rollback_releases_version(self, store: Store) -> None:
        conn = store.engine.connect()
        try:
            txn = conn.begin()
            assert next_version(conn, "doc-1") == 1
            txn.rollback()
        finally:
            conn.close()
        with store.engine.begin() as conn:
            assert next_version(conn, "doc-1") == 1


class TestCurrentVersion:
    def test_zero_when_absent(self, store: Store) -> None:
        with store.engine.connect() as conn:
            assert current_version(conn, "missing") == 0

    def test_tracks_latest_claim(self, store: Store) -> None:
        with store.engine.begin() as conn:
            next_version(conn, "doc-1")
            next_version(conn, "doc-1")
            assert current_version(conn, "doc-1") == 2
