"""Pluggy hook specifications for dslctl lifecycle events and generation.

Seven lifecycle events are written to the event WAL and dispatched
asynchronously. ``propose_candidate`` is called inline and is how an
external NL/AI generator plugs in; its answer is always re-validated.
"""

from __future__ import annotations

from typing import Any

import pluggy

PROJECT_NAME = "dslctl"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class DslctlHookSpec:
    """Hook specifications for the dslctl plugin system."""

    @hookspec
    def post_entity_create(
        self,
        entity_id: str,
        domain: str,
        entity_type: str,
        state: str,
    ) -> None:
        """Called after an entity is created in its initial state."""

    @hookspec
    def post_transition(
        self,
        entity_id: str,
        domain: str,
        from_state: str | None,
        to_state: str,
        trigger: str,
        actor: str,
    ) -> None:
        """Called after a state change and its lifecycle record commit."""

    @hookspec
    def post_accumulate(self, dsl_id: str, version: int, fragment: str) -> None:
        """Called after a fragment is appended to a document."""

    @hookspec
    def post_route(
        self,
        domain: str,
        strategy: str,
        confidence: float,
        reason: str,
    ) -> None:
        """Called after the router picks a domain."""

    @hookspec
    def post_session_create(
        self,
        session_id: str,
        primary_domain: str,
        domains: list[str],
        plan: list[list[str]],
    ) -> None:
        """Called after an orchestration session is opened."""

    @hookspec
    def post_session_evict(self, session_id: str, reason: str) -> None:
        """Called after a session leaves memory (idle eviction or close)."""

    @hookspec
    def post_execute(
        self,
        session_id: str,
        domain: str,
        verb: str,
        version: int,
        to_state: str | None,
    ) -> None:
        """Called after an orchestrated instruction is accumulated."""

    @hookspec(firstresult=True)
    def propose_candidate(
        self,
        domain: str,
        instruction: str,
        current_state: str | None,
        context: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Propose ``{verb, arguments, attributes, explanation, confidence}``.

        Return None to defer to the next plugin, then to the domain's
        built-in rules.
        """
