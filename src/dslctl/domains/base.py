"""Domain ABC — the closed capability interface every business area implements.

A domain bundles a :class:`Vocabulary`, a :class:`StateMachine`, and a
"generate DSL from instruction" contract, and reports health and metrics.
Routing and orchestration only ever talk to this interface; they never
branch on a domain's name.

:class:`BaseDomain` implements the interface from declarative pieces, so a
concrete domain only supplies its vocabulary, machine, keywords, and
instruction rules.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dslctl.domain.cancel import CancellationToken, check_cancelled
from dslctl.domain.errors import DslError, StateError, ValidationError, Violation
from dslctl.domain.grammar import Form, build_form, parse, render
from dslctl.domain.lifecycle import StateMachine
from dslctl.domain.vocabulary import (
    AttributeResolver,
    VerbDefinition,
    Vocabulary,
    validate_invocation,
)
from dslctl.domains.generator import (
    Candidate,
    CandidateSource,
    GenerationRequest,
    InstructionRule,
    RuleBasedGenerator,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results and snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationResult:
    """A validated, rendered fragment ready for accumulation."""

    domain: str
    fragment: str
    verb: str
    arguments: Mapping[str, Any]
    attributes: Mapping[str, Any]
    from_state: str | None
    to_state: str | None
    guards: tuple[str, ...]
    produced: Mapping[str, str]
    explanation: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "fragment": self.fragment,
            "verb": self.verb,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "guards": list(self.guards),
            "produced": dict(self.produced),
            "explanation": self.explanation,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class DomainMetrics:
    """Point-in-time copy of a domain's counters."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    validation_errors: Mapping[str, int] = field(default_factory=dict)
    transitions: Mapping[str, int] = field(default_factory=dict)
    last_health_check: str | None = None


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class Domain(ABC):
    """Capability interface: vocabulary, validate, transition check, generate, health."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique domain identifier (e.g. ``'kyc'``)."""
        ...

    @property
    @abstractmethod
    def version(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def keywords(self) -> tuple[str, ...]:
        """Routing keywords scored against free-text messages."""
        ...

    @property
    @abstractmethod
    def context_keys(self) -> tuple[str, ...]:
        """Context keys whose presence implies this domain (entity ids)."""
        ...

    @abstractmethod
    def vocabulary(self) -> Vocabulary: ...

    @abstractmethod
    def state_machine(self) -> StateMachine: ...

    @abstractmethod
    def validate(self, form: Form) -> tuple[VerbDefinition, dict[str, Any]]:
        """Validate one parsed form against the vocabulary."""
        ...

    @abstractmethod
    def transition_check(self, verb: VerbDefinition, current_state: str | None) -> str | None:
        """Return the state *verb* leads to from *current_state*, or None."""
        ...

    @abstractmethod
    def generate_dsl(
        self,
        request: GenerationRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> GenerationResult:
        """Turn an instruction into a validated fragment."""
        ...

    @abstractmethod
    def health_check(self) -> bool:
        """Poll health; called by the registry's sweep."""
        ...

    @abstractmethod
    def metrics(self) -> DomainMetrics: ...

    @abstractmethod
    def record_transition(self, from_state: str | None, to_state: str) -> None:
        """Count a committed transition."""
        ...

    def integrity_errors(self) -> list[str]:
        """Problems that make the domain unsafe to register (empty when sound)."""
        return self.vocabulary().integrity_errors()

    def allows(self, verb_name: str, current_state: str | None) -> bool:
        """Whether *verb_name* exists and may run from *current_state*."""
        verb = self.vocabulary().get(verb_name)
        if verb is None:
            return False
        try:
            self.transition_check(verb, current_state)
        except StateError:
            return False
        return True


# ---------------------------------------------------------------------------
# Declarative base implementation
# ---------------------------------------------------------------------------


class BaseDomain(Domain):
    """Implements :class:`Domain` from class-level declarations.

    Subclasses set ``NAME``, ``VERSION``, ``DESCRIPTION``, ``KEYWORDS``,
    ``CONTEXT_KEYS`` and ``CONTEXT_ARGUMENTS`` (argument name -> context key
    extracted from DSL), and implement :meth:`build_vocabulary`,
    :meth:`build_state_machine` and :meth:`instruction_rules`.
    """

    NAME: str = ""
    VERSION: str = "1.0.0"
    DESCRIPTION: str = ""
    KEYWORDS: tuple[str, ...] = ()
    CONTEXT_KEYS: tuple[str, ...] = ()
    CONTEXT_ARGUMENTS: Mapping[str, str] = {}

    def __init__(
        self,
        *,
        generator: CandidateSource | None = None,
        attributes: AttributeResolver | None = None,
    ) -> None:
        self._vocabulary = self.build_vocabulary()
        self._machine = self.build_state_machine()
        self._generator: CandidateSource = generator or RuleBasedGenerator(
            self.instruction_rules()
        )
        self._attributes = attributes
        self._healthy = True
        self._lock = threading.Lock()
        self._total = 0
        self._succeeded = 0
        self._failed = 0
        self._validation_errors: Counter[str] = Counter()
        self._transitions: Counter[str] = Counter()
        self._last_health_check: str | None = None

    # ── declarations ─────────────────────────────────────────────────

    @abstractmethod
    def build_vocabulary(self) -> Vocabulary: ...

    @abstractmethod
    def build_state_machine(self) -> StateMachine: ...

    def instruction_rules(self) -> list[InstructionRule]:
        return []

    # ── identity ─────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.NAME

    @property
    def version(self) -> str:
        return self.VERSION

    @property
    def description(self) -> str:
        return self.DESCRIPTION

    @property
    def keywords(self) -> tuple[str, ...]:
        return self.KEYWORDS

    @property
    def context_keys(self) -> tuple[str, ...]:
        return self.CONTEXT_KEYS

    def vocabulary(self) -> Vocabulary:
        return self._vocabulary

    def state_machine(self) -> StateMachine:
        return self._machine

    @property
    def generator(self) -> CandidateSource:
        return self._generator

    def use_generator(self, generator: CandidateSource) -> None:
        """Swap the candidate source (e.g. for a plugin-backed generator)."""
        self._generator = generator

    def use_attributes(self, resolver: AttributeResolver | None) -> None:
        self._attributes = resolver

    # ── integrity ────────────────────────────────────────────────────

    def integrity_errors(self) -> list[str]:
        """Vocabulary problems plus verbs that disagree with the state machine."""
        errors = self._vocabulary.integrity_errors()
        machine = self._machine
        states = set(machine.states())
        known_guards = machine.guard_names()
        for verb in self._vocabulary.verbs:
            errors.extend(
                f"verb {verb.name!r} references unknown guard {g!r}"
                for g in verb.guards
                if g not in known_guards
            )
            if verb.transition is None:
                continue
            target = verb.transition.to_state
            if target not in states:
                errors.append(f"verb {verb.name!r} targets undeclared state {target!r}")
            for src in verb.transition.from_states:
                if src != target and not machine.can_transition(src, target):
                    errors.append(f"verb {verb.name!r} implies missing edge {src} -> {target}")
        return errors

    # ── validation ───────────────────────────────────────────────────

    def validate(self, form: Form) -> tuple[VerbDefinition, dict[str, Any]]:
        return validate_invocation(
            self._vocabulary,
            form.verb,
            form.keyword_arguments(),
            attributes=form.attribute_arguments(),
            resolver=self._attributes,
        )

    def transition_check(self, verb: VerbDefinition, current_state: str | None) -> str | None:
        transition = verb.transition
        if transition is None:
            return None
        target = transition.to_state
        if transition.is_initial:
            if current_state is None:
                return target
            if verb.idempotent and current_state == target:
                return target
            raise StateError(
                f"{verb.name} only applies to a new entity (current state {current_state})",
                reason="illegal_transition",
                verb=verb.name,
                from_state=current_state,
                to_state=target,
            )
        if current_state not in transition.from_states:
            raise StateError(
                f"{verb.name} not allowed from {current_state}",
                reason="illegal_transition",
                verb=verb.name,
                from_state=current_state,
                to_state=target,
                allowed=sorted(transition.from_states),
            )
        return target

    def current_state(self, context: Mapping[str, Any]) -> str:
        """Read and check ``context['current_state']``, defaulting to the initial state."""
        state = context.get("current_state")
        if state is None:
            return self._machine.initial_state
        if state not in self._machine.states():
            raise StateError(
                f"invalid {self.name} state: {state}",
                reason="unknown_state",
                state=state,
                domain=self.name,
            )
        return str(state)

    def extract_context(self, dsl: str) -> dict[str, Any]:
        """Recover entity ids and the implied current state from accumulated DSL."""
        context: dict[str, Any] = {}
        if not dsl.strip():
            return context
        for top in parse(dsl):
            for form in top.walk():
                verb = self._vocabulary.get(form.verb)
                if verb is None:
                    continue
                args = form.keyword_arguments()
                for arg_name, key in self.CONTEXT_ARGUMENTS.items():
                    value = args.get(arg_name)
                    if value not in (None, ""):
                        context[key] = str(value)
                if verb.transition is not None:
                    context["current_state"] = verb.transition.to_state
        return context

    # ── generation ───────────────────────────────────────────────────

    def generate_dsl(
        self,
        request: GenerationRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> GenerationResult:
        check_cancelled(cancel, f"{self.name}.generate_dsl")
        with self._lock:
            self._total += 1
        try:
            result = self._generate(request)
        except DslError as exc:
            with self._lock:
                self._failed += 1
                if isinstance(exc, ValidationError):
                    self._validation_errors[exc.reason] += 1
            raise
        with self._lock:
            self._succeeded += 1
        return result

    def _generate(self, request: GenerationRequest) -> GenerationResult:
        candidate = self._generator.propose(self, request)
        if candidate is None:
            raise ValidationError(
                f"unsupported instruction for {self.name}: {request.instruction}",
                reason="unsupported_instruction",
                violations=[
                    Violation(
                        field="<instruction>",
                        reason="unsupported_instruction",
                        message="no verb matches the instruction",
                    )
                ],
                domain=self.name,
            )
        return self.accept_candidate(candidate, request)

    def accept_candidate(
        self,
        candidate: Candidate,
        request: GenerationRequest,
    ) -> GenerationResult:
        """Validate an untrusted candidate and render it.

        Identifiers listed in the verb's ``produces`` are minted unless the
        context already carries them; they are written into the fragment.
        """
        verb = self._vocabulary.get(candidate.verb)
        arguments = dict(candidate.arguments)
        produced: dict[str, str] = {}
        if verb is not None:
            for key in verb.produces:
                existing = request.context.get(key)
                produced[key] = str(existing) if existing else str(uuid.uuid4())
                arg_name = self._argument_for_context_key(key)
                if arg_name is not None and verb.argument(arg_name) is not None:
                    arguments.setdefault(arg_name, produced[key])

        form = build_form(candidate.verb, arguments, attributes=candidate.attributes)
        verb, normalized = self.validate(form)
        target = self.transition_check(verb, request.current_state)

        rendered = build_form(
            verb.name, _ordered(verb, normalized), attributes=candidate.attributes
        )
        logger.debug(
            "Generated %s in %s (%s -> %s)", verb.name, self.name, request.current_state, target
        )
        return GenerationResult(
            domain=self.name,
            fragment=render(rendered),
            verb=verb.name,
            arguments=normalized,
            attributes=dict(candidate.attributes),
            from_state=request.current_state,
            to_state=target,
            guards=verb.guards,
            produced=produced,
            explanation=candidate.explanation,
            confidence=candidate.confidence,
        )

    def _argument_for_context_key(self, key: str) -> str | None:
        return next((a for a, k in self.CONTEXT_ARGUMENTS.items() if k == key), None)

    # ── health & metrics ─────────────────────────────────────────────

    def set_healthy(self, healthy: bool) -> None:
        self._healthy = healthy

    def health_check(self) -> bool:
        with self._lock:
            self._last_health_check = datetime.now(UTC).isoformat()
        return self._healthy

    def record_transition(self, from_state: str | None, to_state: str) -> None:
        """Count a committed transition (called by the lifecycle service)."""
        with self._lock:
            self._transitions[f"{from_state or '-'}->{to_state}"] += 1

    def metrics(self) -> DomainMetrics:
        with self._lock:
            return DomainMetrics(
                total_requests=self._total,
                successful_requests=self._succeeded,
                failed_requests=self._failed,
                validation_errors=dict(self._validation_errors),
                transitions=dict(self._transitions),
                last_health_check=self._last_health_check,
            )


def _ordered(verb: VerbDefinition, arguments: Mapping[str, Any]) -> dict[str, Any]:
    """Arguments in the verb's declaration order."""
    return {a.name: arguments[a.name] for a in verb.arguments if a.name in arguments}
