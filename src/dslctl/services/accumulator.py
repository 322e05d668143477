"""AccumulatorService — append-only, versioned DSL documents.

Each ``dsl_id`` owns an ordered sequence of fragments. Versions come from
a persisted per-id counter incremented in the same transaction as the
insert, so they are gapless and monotonic even across processes that
share the database file. Writers to one id are serialized in-process by
a keyed lock; different ids never contend.

Fragments are expected to have passed vocabulary and state validation
already; the accumulator only insists that they parse.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from dslctl.domain.cancel import CancellationToken, check_cancelled
from dslctl.domain.document import DslVersion, document_at
from dslctl.domain.errors import DslError, ValidationError
from dslctl.domain.grammar import parse_one
from dslctl.infrastructure.locks import KeyedLock
from dslctl.services.base import BaseService
from dslctl.services.result import ServiceResult
from dslctl.services.telemetry import trace_span, traced

if TYPE_CHECKING:
    from dslctl.infrastructure.store import Store, StoreTransaction
    from dslctl.plugins.event_bus import EventBus

logger = logging.getLogger(__name__)


class AccumulatorService(BaseService):
    """Append fragments and reconstruct documents by version."""

    def __init__(self, store: Store, event_bus: EventBus | None = None) -> None:
        super().__init__(store, event_bus)
        self._writers = KeyedLock()

    @contextmanager
    def writer(self, dsl_id: str) -> Iterator[None]:
        """Hold the single-writer lock for *dsl_id*.

        Other services that append inside their own transaction take this
        first, then call :meth:`append`.
        """
        with self._writers.hold(dsl_id):
            yield

    def append(self, txn: StoreTransaction, dsl_id: str, fragment: str) -> DslVersion:
        """Append *fragment* within an open transaction (caller holds :meth:`writer`)."""
        if not dsl_id:
            raise ValidationError(
                "dsl id must not be empty",
                reason="missing_argument",
                field="dsl_id",
            )
        parse_one(fragment)
        return txn.insert_dsl(dsl_id, fragment)

    @traced
    def accumulate(
        self,
        dsl_id: str,
        fragment: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> ServiceResult:
        """Append one fragment and return its version.

        Cancellation is checked inside the transaction, before commit, so
        a cancelled call leaves no version behind.
        """
        op = "accumulate"
        warnings: list[str] = []
        try:
            check_cancelled(cancel, op)
            with self.writer(dsl_id), self._store.transaction(op) as txn:
                version = self.append(txn, dsl_id, fragment)
                check_cancelled(cancel, op)
        except DslError as exc:
            logger.debug("accumulate %s rejected: %s", dsl_id, exc.message)
            return ServiceResult.failure(op, exc, warnings)

        with trace_span("dispatch"):
            self._dispatch_event(
                "post_accumulate",
                {"dsl_id": dsl_id, "version": version.version, "fragment": fragment},
                warnings,
            )
        return ServiceResult(ok=True, op=op, data=version.to_dict(), warnings=warnings)

    # ── reads ────────────────────────────────────────────────────────

    def history(self, dsl_id: str) -> list[DslVersion]:
        """Every accepted fragment for *dsl_id*, oldest first."""
        return self._store.get_dsl_history(dsl_id)

    def latest(self, dsl_id: str) -> str:
        """The full accumulated document (empty string when nothing was accepted)."""
        return self._store.get_latest_dsl(dsl_id)

    def latest_version(self, dsl_id: str) -> int:
        versions = self.history(dsl_id)
        return versions[-1].version if versions else 0

    def by_version(self, dsl_id: str, version: int) -> str:
        """The document exactly as it stood after the *version*-th fragment.

        Raises:
            ValidationError: *version* is outside ``1..latest`` (reason
                ``unknown_version``).
        """
        versions = self.history(dsl_id)
        if not 1 <= version <= len(versions):
            raise ValidationError(
                f"{dsl_id} has no version {version} (latest is {len(versions)})",
                reason="unknown_version",
                dsl_id=dsl_id,
                version=version,
            )
        return document_at(versions, version)
