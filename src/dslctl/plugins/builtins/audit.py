"""Built-in audit plugin: mirrors lifecycle events into a structured log.

Every event becomes one structlog entry on the ``dslctl.audit`` logger,
so a JSON log sink receives a complete, append-only audit trail without
querying the database.
"""

from __future__ import annotations

from typing import Any

import pluggy
import structlog

from dslctl.plugins.hookspecs import PROJECT_NAME

hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class AuditLogPlugin:
    """Logs each lifecycle event; keeps a bounded in-memory tail for inspection."""

    def __init__(self, *, keep: int = 200) -> None:
        self._log = structlog.get_logger("dslctl.audit")
        self._keep = keep
        self.events: list[dict[str, Any]] = []

    def _emit(self, event: str, **fields: Any) -> None:
        self._log.info(event, **fields)
        self.events.append({"event": event, **fields})
        if len(self.events) > self._keep:
            del self.events[: len(self.events) - self._keep]

    @hookimpl
    def post_entity_create(
        self,
        entity_id: str,
        domain: str,
        entity_type: str,
        state: str,
    ) -> None:
        self._emit(
            "entity_created",
            entity_id=entity_id,
            domain=domain,
            entity_type=entity_type,
            state=state,
        )

    @hookimpl
    def post_transition(
        self,
        entity_id: str,
        domain: str,
        from_state: str | None,
        to_state: str,
        trigger: str,
        actor: str,
    ) -> None:
        self._emit(
            "transition",
            entity_id=entity_id,
            domain=domain,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            actor=actor,
        )

    @hookimpl
    def post_accumulate(self, dsl_id: str, version: int, fragment: str) -> None:
        self._emit("accumulated", dsl_id=dsl_id, version=version, fragment=fragment)

    @hookimpl
    def post_session_create(
        self,
        session_id: str,
        primary_domain: str,
        domains: list[str],
        plan: list[list[str]],
    ) -> None:
        self._emit(
            "session_created",
            session_id=session_id,
            primary_domain=primary_domain,
            domains=domains,
            plan=plan,
        )

    @hookimpl
    def post_session_evict(self, session_id: str, reason: str) -> None:
        self._emit("session_evicted", session_id=session_id, reason=reason)
