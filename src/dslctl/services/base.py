"""BaseService — foundation for services that persist through the Store.

Every service receives a :class:`Store` and, optionally, an
:class:`EventBus`. Services own their transaction boundaries via
``self._store.transaction()`` and dispatch lifecycle events only after
the transaction has committed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dslctl.infrastructure.store import Store
    from dslctl.plugins.event_bus import EventBus

logger = logging.getLogger(__name__)


class BaseService:
    """Base for service-layer classes that write through the Store.

    Usage::

        class AccumulatorService(BaseService):
            def accumulate(self, dsl_id: str, fragment: str) -> ServiceResult:
                with self._store.transaction("accumulate") as txn:
                    ...
    """

    def __init__(self, store: Store, event_bus: EventBus | None = None) -> None:
        self._store = store
        self._event_bus = event_bus

    @property
    def store(self) -> Store:
        return self._store

    def _dispatch_event(
        self,
        hook_name: str,
        payload: dict[str, Any],
        warnings: list[str],
        *,
        session_id: str | None = None,
    ) -> None:
        """Dispatch a lifecycle event. No-op without an event bus.

        INVARIANT: Plugin failures are warnings, never errors.
        """
        bus = self._event_bus
        if bus is None:
            return
        try:
            bus.dispatch(hook_name, payload, session_id=session_id)
        except Exception:
            logger.debug("Event dispatch failed for %s", hook_name, exc_info=True)
            warnings.append(f"Event dispatch failed for {hook_name}")
