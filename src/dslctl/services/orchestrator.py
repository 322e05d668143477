"""Orchestrator — multi-domain sessions planned by dependency depth.

``analyze_context`` turns an entity type, a product list and a
jurisdiction into the set of required domains plus dependency edges
(static tables below). ``build_execution_plan`` stages those domains with
networkx topological generations: stage 0 holds domains with no
dependency, stage N domains whose prerequisites all sit in earlier
stages. The static dependency table is checked for cycles when the
orchestrator is built, so a cycle is a configuration error, never a
runtime surprise.

A session carries the shared context and per-domain state; the
accumulated DSL itself lives in the Store under the session id and
survives eviction.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import networkx as nx

from dslctl.domain.cancel import CancellationToken, check_cancelled
from dslctl.domain.errors import DslError, OrchestrationError, StateError
from dslctl.domain.grammar import parse_one
from dslctl.domain.lifecycle import Entity
from dslctl.domains.generator import GenerationRequest
from dslctl.infrastructure.scheduler import PeriodicTask
from dslctl.services._helpers import now_iso
from dslctl.services.base import BaseService
from dslctl.services.result import ServiceResult
from dslctl.services.router import RouteRequest, RoutingDecision, RoutingStrategy
from dslctl.services.telemetry import trace_span, traced

if TYPE_CHECKING:
    from dslctl.domains.base import Domain
    from dslctl.infrastructure.store import Store
    from dslctl.plugins.event_bus import EventBus
    from dslctl.services.accumulator import AccumulatorService
    from dslctl.services.registry import DomainRegistry
    from dslctl.services.router import Router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------


class EntityType(StrEnum):
    CORPORATE = "CORPORATE"
    FUND = "FUND"
    PARTNERSHIP = "PARTNERSHIP"
    TRUST = "TRUST"
    INDIVIDUAL = "INDIVIDUAL"
    INVESTOR = "INVESTOR"


class Product(StrEnum):
    CUSTODY = "CUSTODY"
    FUND_ACCOUNTING = "FUND_ACCOUNTING"
    TRANSFER_AGENCY = "TRANSFER_AGENCY"
    HEDGE_FUND = "HEDGE_FUND"


ENTITY_DOMAINS: dict[EntityType, tuple[str, ...]] = {
    EntityType.CORPORATE: ("onboarding", "kyc", "ubo"),
    EntityType.FUND: ("onboarding", "kyc", "ubo"),
    EntityType.PARTNERSHIP: ("onboarding", "kyc", "ubo"),
    EntityType.TRUST: ("onboarding", "kyc", "ubo"),
    EntityType.INDIVIDUAL: ("onboarding", "kyc"),
    EntityType.INVESTOR: ("hedge-fund-investor",),
}

PRODUCT_DOMAINS: dict[Product, str] = {
    Product.CUSTODY: "custody",
    Product.FUND_ACCOUNTING: "fund-accounting",
    Product.TRANSFER_AGENCY: "transfer-agency",
    Product.HEDGE_FUND: "hedge-fund-investor",
}

EU_MEMBERS = frozenset(
    "AT BE BG HR CY CZ DK EE FI FR DE GR IE IT LV LT LU MT NL PL PT RO SK SI ES SE".split()
)
APAC_JURISDICTIONS = frozenset("SG HK AU JP CN IN NZ KR".split())

# dependent -> prerequisites
DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "ubo": ("kyc",),
    "custody": ("kyc",),
    "fund-accounting": ("kyc",),
    "transfer-agency": ("kyc",),
    "compliance-us": ("kyc",),
    "compliance-eu": ("kyc",),
    "compliance-uk": ("kyc",),
    "compliance-apac": ("kyc",),
    "hedge-fund-investor": (),
}


def compliance_domain_for(jurisdiction: str) -> str | None:
    """Compliance domain for an ISO 3166-1 alpha-2 code, or None if unmapped."""
    code = jurisdiction.strip().upper()
    if code == "US":
        return "compliance-us"
    if code in {"GB", "UK"}:
        return "compliance-uk"
    if code in EU_MEMBERS or code == "EU":
        return "compliance-eu"
    if code in APAC_JURISDICTIONS:
        return "compliance-apac"
    return None


# ---------------------------------------------------------------------------
# Analysis and planning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContextAnalysis:
    """Required domains and ``(dependent, prerequisite)`` edges."""

    entity_type: str
    primary_domain: str
    domains: tuple[str, ...]
    dependencies: tuple[tuple[str, str], ...]
    unmapped: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "primary_domain": self.primary_domain,
            "domains": list(self.domains),
            "dependencies": [list(edge) for edge in self.dependencies],
            "unmapped": list(self.unmapped),
        }


@dataclass(frozen=True)
class ExecutionPlan:
    stages: tuple[tuple[str, ...], ...]

    def stage_of(self, domain: str) -> int:
        for index, stage in enumerate(self.stages):
            if domain in stage:
                return index
        raise KeyError(domain)

    def to_list(self) -> list[list[str]]:
        return [list(stage) for stage in self.stages]


def _dependency_graph(
    domains: Iterable[str],
    edges: Iterable[tuple[str, str]],
) -> nx.DiGraph:
    g: nx.DiGraph = nx.DiGraph()
    g.add_nodes_from(domains)
    # Edges point prerequisite -> dependent so generations follow execution order.
    g.add_edges_from((prerequisite, dependent) for dependent, prerequisite in edges)
    return g


def _raise_if_cyclic(g: nx.DiGraph) -> None:
    try:
        cycle = nx.find_cycle(g)
    except nx.NetworkXNoCycle:
        return
    path = [src for src, _dst in cycle]
    raise OrchestrationError(
        f"dependency cycle: {' -> '.join([*path, path[0]])}",
        reason="dependency_cycle",
        cycle=path,
    )


def build_execution_plan(
    domains: Sequence[str],
    dependencies: Iterable[tuple[str, str]],
) -> ExecutionPlan:
    """Stage *domains* by dependency depth.

    Raises:
        OrchestrationError: The edges contain a cycle (``dependency_cycle``).
    """
    g = _dependency_graph(domains, dependencies)
    _raise_if_cyclic(g)
    order = {name: index for index, name in enumerate(domains)}
    stages = tuple(
        tuple(sorted(generation, key=lambda n: order.get(n, len(order))))
        for generation in nx.topological_generations(g)
    )
    return ExecutionPlan(stages=stages)


def check_dependency_table(table: Mapping[str, Iterable[str]]) -> None:
    """Raise ``OrchestrationError(dependency_cycle)`` if *table* is cyclic."""
    edges = [(dependent, pre) for dependent, pres in table.items() for pre in pres]
    _raise_if_cyclic(_dependency_graph(table, edges))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class OrchestrationSession:
    """In-memory coordination state for one multi-domain workflow."""

    session_id: str
    entity_type: str
    primary_domain: str
    domains: tuple[str, ...]
    plan: ExecutionPlan
    prerequisites: dict[str, tuple[str, ...]]
    last_used: float
    created: str = field(default_factory=now_iso)
    context: dict[str, Any] = field(default_factory=dict)
    domain_states: dict[str, str | None] = field(default_factory=dict)
    completed: set[str] = field(default_factory=set)
    current_domain: str | None = None
    stage: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    closed: bool = False

    @property
    def finished(self) -> bool:
        return self.stage >= len(self.plan.stages)

    def pending(self) -> list[str]:
        """Incomplete domains of the current stage."""
        if self.finished:
            return []
        return [d for d in self.plan.stages[self.stage] if d not in self.completed]

    def unmet(self, domain: str) -> list[str]:
        return [d for d in self.prerequisites.get(domain, ()) if d not in self.completed]

    def complete(self, domain: str) -> None:
        self.completed.add(domain)
        while not self.finished and not self.pending():
            self.stage += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "primary_domain": self.primary_domain,
            "domains": list(self.domains),
            "plan": self.plan.to_list(),
            "stage": self.stage,
            "pending": self.pending(),
            "completed": sorted(self.completed),
            "current_domain": self.current_domain,
            "domain_states": dict(self.domain_states),
            "context": dict(self.context),
            "created": self.created,
            "finished": self.finished,
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator(BaseService):
    """Plans, holds and executes multi-domain sessions.

    Args:
        store: Backing store (the accumulator writes through it).
        registry: Domain lookup.
        router: Routes each instruction within the current stage.
        accumulator: Appends fragments under the session id.
        event_bus: Optional bus for session events.
        max_sessions: Cap on live sessions; beyond it creation is rejected.
        session_timeout: Idle seconds before a session is evicted.
        eviction_interval: Seconds between eviction sweeps.
        dependencies: Override of :data:`DEPENDENCIES` (dependent -> prerequisites).
        clock: Monotonic time source (tests inject a fake).
    """

    def __init__(
        self,
        store: Store,
        registry: DomainRegistry,
        router: Router,
        accumulator: AccumulatorService,
        *,
        event_bus: EventBus | None = None,
        max_sessions: int = 100,
        session_timeout: float = 1800.0,
        eviction_interval: float = 60.0,
        dependencies: Mapping[str, Iterable[str]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(store, event_bus)
        table = DEPENDENCIES if dependencies is None else dependencies
        check_dependency_table(table)
        self._dependencies = {k: tuple(v) for k, v in table.items()}
        self._registry = registry
        self._router = router
        self._accumulator = accumulator
        self._max_sessions = max_sessions
        self._timeout = session_timeout
        self._clock = clock
        self._sessions: dict[str, OrchestrationSession] = {}
        self._sessions_lock = threading.Lock()
        self._evictor = PeriodicTask(
            "dslctl-session-eviction", eviction_interval, self.evict_expired
        )

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_context(
        self,
        entity_type: str,
        products: Sequence[str] = (),
        jurisdiction: str | None = None,
    ) -> ContextAnalysis:
        """Required domains and their dependency edges.

        Prerequisites are added transitively, so the result is closed
        under the dependency table.

        Raises:
            OrchestrationError: Unknown entity type or product.
        """
        try:
            kind = EntityType(entity_type.strip().upper())
        except ValueError as exc:
            raise OrchestrationError(
                f"unknown entity type {entity_type}",
                reason="unknown_entity_type",
                entity_type=entity_type,
                known=[str(t) for t in EntityType],
            ) from exc

        required: dict[str, None] = dict.fromkeys(ENTITY_DOMAINS[kind])
        for raw in products:
            try:
                product = Product(raw.strip().upper())
            except ValueError as exc:
                raise OrchestrationError(
                    f"unknown product {raw}",
                    reason="unknown_product",
                    product=raw,
                    known=[str(p) for p in Product],
                ) from exc
            required[PRODUCT_DOMAINS[product]] = None

        unmapped: list[str] = []
        if jurisdiction:
            region = compliance_domain_for(jurisdiction)
            if region is None:
                unmapped.append(jurisdiction)
            else:
                required[region] = None

        edges: list[tuple[str, str]] = []
        queue = list(required)
        while queue:
            dependent = queue.pop(0)
            for prerequisite in self._dependencies.get(dependent, ()):
                edges.append((dependent, prerequisite))
                if prerequisite not in required:
                    required[prerequisite] = None
                    queue.append(prerequisite)

        domains = tuple(required)
        return ContextAnalysis(
            entity_type=str(kind),
            primary_domain=domains[0],
            domains=domains,
            dependencies=tuple(edges),
            unmapped=tuple(unmapped),
        )

    def build_execution_plan(self, analysis: ContextAnalysis) -> ExecutionPlan:
        return build_execution_plan(analysis.domains, analysis.dependencies)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @traced
    def create_session(
        self,
        entity_type: str,
        products: Sequence[str] = (),
        jurisdiction: str | None = None,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> ServiceResult:
        """Open a session with its plan, an empty context and an empty document."""
        op = "create_session"
        warnings: list[str] = []
        try:
            analysis = self.analyze_context(entity_type, products, jurisdiction)
            missing = [d for d in analysis.domains if d not in self._registry]
            if missing:
                raise OrchestrationError(
                    f"domains not registered: {', '.join(missing)}",
                    reason="domain_unavailable",
                    domains=missing,
                )
            plan = self.build_execution_plan(analysis)
            self.evict_expired()
            session = OrchestrationSession(
                session_id=str(uuid.uuid4()),
                entity_type=analysis.entity_type,
                primary_domain=analysis.primary_domain,
                domains=analysis.domains,
                plan=plan,
                prerequisites={
                    d: tuple(p for dep, p in analysis.dependencies if dep == d)
                    for d in analysis.domains
                },
                last_used=self._clock(),
                context=dict(context or {}),
                domain_states=dict.fromkeys(analysis.domains),
            )
            with self._sessions_lock:
                if len(self._sessions) >= self._max_sessions:
                    raise OrchestrationError(
                        f"session limit {self._max_sessions} reached",
                        reason="session_limit",
                        limit=self._max_sessions,
                    )
                self._sessions[session.session_id] = session
        except DslError as exc:
            return ServiceResult.failure(op, exc, warnings)

        warnings.extend(f"no compliance domain for jurisdiction {j}" for j in analysis.unmapped)
        self._dispatch_event(
            "post_session_create",
            {
                "session_id": session.session_id,
                "primary_domain": session.primary_domain,
                "domains": list(session.domains),
                "plan": plan.to_list(),
            },
            warnings,
            session_id=session.session_id,
        )
        logger.info("Opened session %s with plan %s", session.session_id, plan.to_list())
        return ServiceResult(
            ok=True,
            op=op,
            data={**session.to_dict(), "analysis": analysis.to_dict()},
            warnings=warnings,
        )

    def get_session(self, session_id: str) -> dict[str, Any]:
        """Snapshot of a live session.

        Raises:
            OrchestrationError: ``session_not_found`` or ``session_expired``.
        """
        session = self._lookup(session_id)
        with session.lock:
            return session.to_dict()

    def document(self, session_id: str) -> str:
        """Accumulated DSL for *session_id* (available after eviction too)."""
        return self._accumulator.latest(session_id)

    def active_sessions(self) -> list[str]:
        with self._sessions_lock:
            return list(self._sessions)

    def close_session(self, session_id: str) -> ServiceResult:
        op = "close_session"
        warnings: list[str] = []
        try:
            session = self._lookup(session_id)
        except OrchestrationError as exc:
            return ServiceResult.failure(op, exc, warnings)
        with session.lock:
            self._drop(session, "closed", warnings)
            snapshot = session.to_dict()
        return ServiceResult(ok=True, op=op, data=snapshot, warnings=warnings)

    def evict_expired(self) -> list[str]:
        """Drop sessions idle longer than the timeout. Returns their ids.

        Sessions with an instruction in flight are left for the next sweep.
        """
        now = self._clock()
        with self._sessions_lock:
            expired = [
                s
                for s in self._sessions.values()
                if now - s.last_used > self._timeout and not s.lock.locked()
            ]
        evicted: list[str] = []
        for session in expired:
            warnings: list[str] = []
            with session.lock:
                if session.closed or self._clock() - session.last_used <= self._timeout:
                    continue
                self._drop(session, "expired", warnings)
            evicted.append(session.session_id)
        if evicted:
            logger.info("Evicted %d idle session(s)", len(evicted))
        return evicted

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @traced
    def execute(
        self,
        session_id: str,
        instruction: str,
        *,
        domain: str | None = None,
        context: Mapping[str, Any] | None = None,
        cancel: CancellationToken | None = None,
    ) -> ServiceResult:
        """Route, generate, re-validate, accumulate and merge one instruction.

        Runs under the session's lock, so instructions for one session are
        linearizable. *domain* bypasses the router but not the dependency
        check; *context* is merged into the shared context on success.
        """
        op = "execute"
        warnings: list[str] = []
        try:
            session = self._lookup(session_id)
            with session.lock:
                if session.closed:
                    raise self._not_found(session_id)
                session.last_used = self._clock()
                data = self._execute(session, instruction, domain, context, cancel, warnings)
                session.last_used = self._clock()
        except DslError as exc:
            logger.debug("execute in %s rejected: %s", session_id, exc.message)
            return ServiceResult.failure(op, exc, warnings)
        return ServiceResult(ok=True, op=op, data=data, warnings=warnings)

    def _execute(
        self,
        session: OrchestrationSession,
        instruction: str,
        domain_name: str | None,
        context: Mapping[str, Any] | None,
        cancel: CancellationToken | None,
        warnings: list[str],
    ) -> dict[str, Any]:
        check_cancelled(cancel, "execute")
        if session.finished:
            raise OrchestrationError(
                f"session {session.session_id} has completed every stage",
                reason="session_complete",
                session_id=session.session_id,
            )
        call_context = dict(context or {})
        merged = {**session.context, **call_context}
        existing = self._accumulator.latest(session.session_id)

        with trace_span("route"):
            decision = self._choose_domain(
                session, instruction, domain_name, call_context, existing, cancel
            )
        target = self._registry.require(decision.domain)
        state = session.domain_states.get(target.name)

        with trace_span("generate"):
            result = target.generate_dsl(
                GenerationRequest(
                    instruction=instruction,
                    current_state=state,
                    context=merged,
                    existing_dsl=existing,
                ),
                cancel=cancel,
            )

        with trace_span("revalidate"):
            to_state = self._revalidate(
                target,
                session,
                result.fragment,
                state,
                {**merged, **result.produced, **result.attributes},
            )

        check_cancelled(cancel, "execute")
        with (
            self._accumulator.writer(session.session_id),
            self._store.transaction("execute") as txn,
        ):
            version = self._accumulator.append(txn, session.session_id, result.fragment).version
            check_cancelled(cancel, "execute")
        self._dispatch_event(
            "post_accumulate",
            {"dsl_id": session.session_id, "version": version, "fragment": result.fragment},
            warnings,
            session_id=session.session_id,
        )

        # Merge only after the fragment is durable.
        extracted = target.extract_context(result.fragment)
        extracted.pop("current_state", None)
        session.context.update(call_context)
        session.context.update(extracted)
        session.context.update(result.produced)
        session.context.update(result.attributes)
        new_state = to_state if to_state is not None else state
        session.domain_states[target.name] = new_state
        session.current_domain = target.name
        if to_state is not None and to_state != state:
            target.record_transition(state, to_state)
        if new_state is not None and target.state_machine().is_terminal(new_state):
            session.complete(target.name)

        self._dispatch_event(
            "post_execute",
            {
                "session_id": session.session_id,
                "domain": target.name,
                "verb": result.verb,
                "version": version,
                "to_state": new_state,
            },
            warnings,
            session_id=session.session_id,
        )
        return {
            "session_id": session.session_id,
            "routing": decision.to_dict(),
            "generation": result.to_dict(),
            "version": version,
            "domain": target.name,
            "state": new_state,
            "stage": session.stage,
            "pending": session.pending(),
            "completed": sorted(session.completed),
            "finished": session.finished,
        }

    def _choose_domain(
        self,
        session: OrchestrationSession,
        instruction: str,
        domain_name: str | None,
        call_context: Mapping[str, Any],
        existing: str,
        cancel: CancellationToken | None,
    ) -> RoutingDecision:
        if domain_name is None:
            # Route on the caller's context only: the shared context holds ids
            # from every domain already visited and would pin routing to them.
            return self._router.route(
                RouteRequest(
                    message=instruction,
                    context=call_context,
                    existing_dsl=existing,
                    current_domain=session.current_domain,
                    candidates=session.pending(),
                ),
                cancel=cancel,
            )

        name = self._router.resolve_name(domain_name) or domain_name
        if name not in session.domains:
            raise OrchestrationError(
                f"domain {name} is not part of session {session.session_id}",
                reason="domain_not_in_session",
                domain=name,
                domains=list(session.domains),
            )
        unmet = session.unmet(name)
        if unmet:
            raise OrchestrationError(
                f"{name} depends on incomplete {', '.join(unmet)}",
                reason="unmet_dependency",
                domain=name,
                unmet=unmet,
            )
        return RoutingDecision(
            domain=name,
            strategy=RoutingStrategy.EXPLICIT,
            confidence=1.0,
            reason="domain named by caller",
        )

    @staticmethod
    def _revalidate(
        domain: Domain,
        session: OrchestrationSession,
        fragment: str,
        state: str | None,
        guard_context: Mapping[str, Any],
    ) -> str | None:
        """Treat generated text as untrusted: parse, validate, check state and guards."""
        verb, _normalized = domain.validate(parse_one(fragment))
        to_state = domain.transition_check(verb, state)
        machine = domain.state_machine()
        entity = Entity(
            id=session.session_id,
            domain=domain.name,
            entity_type=session.entity_type,
            state=state,
        )
        if state is not None and to_state is not None and to_state != state:
            machine.validate_transition(entity, to_state, guard_context, extra_guards=verb.guards)
            return to_state
        for name in verb.guards:
            guard = machine.guard(name)
            if guard is None:
                raise StateError(f"unknown guard {name}", reason="guard_unevaluable", guard=name)
            guard.evaluate(entity, guard_context)
        return to_state

    @traced
    def complete_domain(self, session_id: str, domain: str) -> ServiceResult:
        """Mark *domain* complete without reaching a terminal state."""
        op = "complete_domain"
        warnings: list[str] = []
        try:
            session = self._lookup(session_id)
            with session.lock:
                if session.closed:
                    raise self._not_found(session_id)
                if domain not in session.domains:
                    raise OrchestrationError(
                        f"domain {domain} is not part of session {session_id}",
                        reason="domain_not_in_session",
                        domain=domain,
                    )
                unmet = session.unmet(domain)
                if unmet:
                    raise OrchestrationError(
                        f"{domain} depends on incomplete {', '.join(unmet)}",
                        reason="unmet_dependency",
                        domain=domain,
                        unmet=unmet,
                    )
                session.complete(domain)
                session.last_used = self._clock()
                snapshot = session.to_dict()
        except DslError as exc:
            return ServiceResult.failure(op, exc, warnings)
        return ServiceResult(ok=True, op=op, data=snapshot, warnings=warnings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background eviction sweep."""
        self._evictor.start()

    @property
    def sweeping(self) -> bool:
        return self._evictor.running

    def shutdown(self) -> None:
        """Stop the eviction sweep. Idempotent; live sessions stay in memory."""
        self._evictor.stop()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _not_found(session_id: str) -> OrchestrationError:
        return OrchestrationError(
            f"session {session_id} not found",
            reason="session_not_found",
            session_id=session_id,
        )

    def _lookup(self, session_id: str) -> OrchestrationSession:
        with self._sessions_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise self._not_found(session_id)
        if self._clock() - session.last_used > self._timeout and not session.lock.locked():
            with session.lock:
                if not session.closed:
                    self._drop(session, "expired", [])
            raise OrchestrationError(
                f"session {session_id} expired",
                reason="session_expired",
                session_id=session_id,
            )
        return session

    def _drop(self, session: OrchestrationSession, reason: str, warnings: list[str]) -> None:
        """Remove *session* from memory (caller holds ``session.lock``)."""
        session.closed = True
        with self._sessions_lock:
            self._sessions.pop(session.session_id, None)
        self._dispatch_event(
            "post_session_evict",
            {"session_id": session.session_id, "reason": reason},
            warnings,
            session_id=session.session_id,
        )
