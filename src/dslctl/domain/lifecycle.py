"""Guard-conditioned state machines.

A machine is an adjacency map (state -> allowed next states) plus a guard
table keyed by edge. Guards are *named* predicates that declare the
context keys they read; a missing key makes the guard unevaluable, which
is reported as a failure rather than treated as a pass.

Terminal states are states absent from the map or mapped to an empty list.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import networkx as nx

from dslctl.domain.errors import StateError

type GuardPredicate = Callable[[Entity, Mapping[str, Any]], bool]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Entities and records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Entity:
    """A tracked business entity (onboarding case, investor, ...)."""

    id: str
    domain: str
    entity_type: str
    state: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    created: str = ""
    modified: str = ""


@dataclass(frozen=True)
class LifecycleRecord:
    """Immutable audit entry for one committed state change."""

    record_id: str
    entity_id: str
    from_state: str | None
    to_state: str
    trigger: str
    guard_context: Mapping[str, Any]
    actor: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "entity_id": self.entity_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "trigger": self.trigger,
            "guard_context": dict(self.guard_context),
            "actor": self.actor,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Guard:
    """A named transition precondition.

    ``requires`` lists the context keys the predicate reads. All of them
    must be present before the predicate runs.
    """

    name: str
    description: str
    requires: tuple[str, ...]
    predicate: GuardPredicate

    def evaluate(self, entity: Entity, context: Mapping[str, Any]) -> None:
        """Raise :class:`StateError` unless the guard passes."""
        missing = [key for key in self.requires if key not in context]
        if missing:
            raise StateError(
                f"guard {self.name} unevaluable: missing context {', '.join(missing)}",
                reason="guard_unevaluable",
                guard=self.name,
                description=self.description,
                missing=missing,
            )
        try:
            passed = self.predicate(entity, context)
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise StateError(
                f"guard {self.name} failed: {exc}",
                reason="guard_failed",
                guard=self.name,
                description=self.description,
            ) from exc
        if not passed:
            raise StateError(
                f"guard {self.name} failed: {self.description}",
                reason="guard_failed",
                guard=self.name,
                description=self.description,
            )


def flag_guard(name: str, key: str, description: str) -> Guard:
    """Guard that passes when ``context[key]`` is True."""
    return Guard(name, description, (key,), lambda _e, ctx: ctx[key] is True)


def present_guard(name: str, key: str, description: str) -> Guard:
    """Guard that passes when ``context[key]`` is a non-empty value."""
    return Guard(name, description, (key,), lambda _e, ctx: bool(ctx[key]))


def positive_guard(name: str, key: str, description: str) -> Guard:
    """Guard that passes when ``context[key]`` is a number greater than zero."""
    return Guard(name, description, (key,), lambda _e, ctx: float(ctx[key]) > 0)


def equals_guard(name: str, key: str, expected: Any, description: str) -> Guard:
    """Guard that passes when ``context[key] == expected``."""
    return Guard(name, description, (key,), lambda _e, ctx: ctx[key] == expected)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class StateMachine:
    """Transition graph with edge guards.

    Args:
        transitions: state -> allowed next states. Terminal states map to [].
        initial_state: State assigned on entity creation.
        guards: (from, to) -> guards evaluated in declaration order.
        library: Extra named guards that verbs may reference by name.
    """

    def __init__(
        self,
        transitions: Mapping[str, Iterable[str]],
        *,
        initial_state: str,
        guards: Mapping[tuple[str, str], Sequence[Guard]] | None = None,
        library: Iterable[Guard] = (),
    ) -> None:
        self._transitions: dict[str, list[str]] = {s: list(t) for s, t in transitions.items()}
        self._initial = initial_state
        self._guards: dict[tuple[str, str], list[Guard]] = {
            edge: list(gs) for edge, gs in (guards or {}).items()
        }
        self._library: dict[str, Guard] = {g.name: g for g in library}
        for edge_guards in self._guards.values():
            for guard in edge_guards:
                self._library.setdefault(guard.name, guard)

        for (src, dst) in self._guards:
            if not self.can_transition(src, dst):
                msg = f"Guard registered on undeclared edge {src} -> {dst}"
                raise ValueError(msg)

    @property
    def initial_state(self) -> str:
        return self._initial

    # ── queries ──────────────────────────────────────────────────────

    def states(self) -> list[str]:
        """All states, in declaration order (targets included)."""
        seen: dict[str, None] = {self._initial: None}
        for src, targets in self._transitions.items():
            seen[src] = None
            for dst in targets:
                seen[dst] = None
        return list(seen)

    def can_transition(self, from_state: str | None, to_state: str) -> bool:
        if from_state is None:
            return False
        return to_state in self._transitions.get(from_state, ())

    def valid_transitions(self, from_state: str) -> list[str]:
        return list(self._transitions.get(from_state, ()))

    def guards_for(self, from_state: str, to_state: str) -> list[Guard]:
        return list(self._guards.get((from_state, to_state), ()))

    def guard(self, name: str) -> Guard | None:
        return self._library.get(name)

    def guard_names(self) -> set[str]:
        return set(self._library)

    def is_terminal(self, state: str) -> bool:
        return not self._transitions.get(state)

    def graph(self) -> nx.DiGraph:
        g: nx.DiGraph = nx.DiGraph()
        g.add_nodes_from(self.states())
        for src, targets in self._transitions.items():
            g.add_edges_from((src, dst) for dst in targets)
        return g

    def path(self, from_state: str, to_state: str) -> list[str]:
        """Shortest explicit path between two states (breadth-first)."""
        if from_state == to_state:
            return [from_state]
        g = self.graph()
        try:
            return list(nx.shortest_path(g, from_state, to_state))
        except (nx.NetworkXNoPath, nx.NodeNotFound) as exc:
            raise StateError(
                f"no path from {from_state} to {to_state}",
                reason="no_path",
                from_state=from_state,
                to_state=to_state,
            ) from exc

    # ── validation ───────────────────────────────────────────────────

    def validate_transition(
        self,
        entity: Entity,
        to_state: str,
        context: Mapping[str, Any],
        *,
        extra_guards: Iterable[str] = (),
    ) -> None:
        """Check adjacency, then every edge guard, then any verb-named guards."""
        from_state = entity.state
        if from_state is not None and self.is_terminal(from_state):
            raise StateError(
                f"{from_state} is terminal; cannot move to {to_state}",
                reason="terminal_state",
                from_state=from_state,
                to_state=to_state,
            )
        if not self.can_transition(from_state, to_state):
            raise StateError(
                f"illegal transition {from_state} -> {to_state}",
                reason="illegal_transition",
                from_state=from_state,
                to_state=to_state,
                allowed=self.valid_transitions(from_state) if from_state else [],
            )

        assert from_state is not None
        evaluated: set[str] = set()
        for guard in self._guards.get((from_state, to_state), ()):
            guard.evaluate(entity, context)
            evaluated.add(guard.name)
        for name in extra_guards:
            if name in evaluated:
                continue
            guard = self._library.get(name)
            if guard is None:
                raise StateError(
                    f"unknown guard {name}",
                    reason="guard_unevaluable",
                    guard=name,
                )
            guard.evaluate(entity, context)
            evaluated.add(name)

    def transition(
        self,
        entity: Entity,
        to_state: str,
        *,
        trigger: str,
        context: Mapping[str, Any],
        actor: str,
        extra_guards: Iterable[str] = (),
    ) -> tuple[Entity, LifecycleRecord]:
        """Validate, then return the moved entity and its audit record.

        Nothing is persisted here; the caller commits both as one unit.
        """
        self.validate_transition(entity, to_state, context, extra_guards=extra_guards)
        now = _now_iso()
        record = LifecycleRecord(
            record_id=str(uuid.uuid4()),
            entity_id=entity.id,
            from_state=entity.state,
            to_state=to_state,
            trigger=trigger,
            guard_context=copy.deepcopy(dict(context)),
            actor=actor,
            timestamp=now,
        )
        return replace(entity, state=to_state, modified=now), record

    def initial_record(self, entity: Entity, *, trigger: str, actor: str) -> LifecycleRecord:
        """Audit record for entering the initial state on creation."""
        return LifecycleRecord(
            record_id=str(uuid.uuid4()),
            entity_id=entity.id,
            from_state=None,
            to_state=self._initial,
            trigger=trigger,
            guard_context={},
            actor=actor,
            timestamp=_now_iso(),
        )
