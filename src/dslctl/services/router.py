"""Router — pick the domain that should handle a message.

Strategies run in a fixed priority order and the first match wins:

1. explicit switch  ("switch to kyc", "use the ubo domain")      1.0
2. verb extraction  (``(kyc.open ...)`` in the message or DSL)   0.8-0.95
3. context          (a domain's entity id or state in context)    0.6-0.8
4. keywords         (per-domain keyword hits in the message)      0.4-0.6
5. fallback         (current, configured default, first domain)   0.1-0.2

The router never mutates domains or the registry; it only updates its
own aggregate metrics.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from dslctl.domain.cancel import CancellationToken, check_cancelled
from dslctl.domain.errors import RoutingError
from dslctl.domain.grammar import extract_verbs
from dslctl.services._helpers import normalize_name

if TYPE_CHECKING:
    from dslctl.domains.base import Domain
    from dslctl.plugins.event_bus import EventBus
    from dslctl.services.registry import DomainRegistry

logger = logging.getLogger(__name__)


class RoutingStrategy(StrEnum):
    EXPLICIT = "explicit"
    VERB = "verb"
    CONTEXT = "context"
    KEYWORD = "keyword"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RouteRequest:
    """What the router sees.

    ``candidates`` restricts routing to a subset of registered domains
    (the orchestrator passes the current stage); ``None`` means all.
    """

    message: str
    context: Mapping[str, Any] = field(default_factory=dict)
    existing_dsl: str = ""
    current_domain: str | None = None
    candidates: Sequence[str] | None = None


@dataclass(frozen=True)
class RoutingDecision:
    domain: str
    strategy: RoutingStrategy
    confidence: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "strategy": str(self.strategy),
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RouterMetrics:
    total: int
    failures: int
    by_strategy: dict[str, int]
    mean_confidence: float
    mean_latency_ms: float


# ── explicit switch phrasing ─────────────────────────────────────────

_SWITCH_RE = re.compile(
    r"\b(?:switch|change)\s+(?:over\s+)?to\s+(?:the\s+)?(?P<rest>[^.;!?,]+)",
    re.IGNORECASE,
)
_USE_RE = re.compile(
    r"\buse\s+(?:the\s+)?(?P<rest>[\w\s-]+?)\s+domain\b",
    re.IGNORECASE,
)
_MAX_NAME_WORDS = 4


def _name_words(text: str) -> tuple[list[str], bool]:
    """Candidate name words after a switch phrase, and whether "domain" was said."""
    words = text.split()
    folded = [w.casefold() for w in words]
    named = False
    if folded and folded[0] == "domain":
        words, folded, named = words[1:], folded[1:], True
    if "domain" in folded:
        words, named = words[: folded.index("domain")], True
    return words[:_MAX_NAME_WORDS], named


def keyword_hits(message: str, keywords: Iterable[str]) -> int:
    """Number of *keywords* found in *message* as whole words (case-insensitive)."""
    text = message.casefold()
    return sum(
        1
        for kw in keywords
        if kw and re.search(rf"(?<![\w-]){re.escape(kw.casefold())}(?![\w-])", text)
    )


class Router:
    """Routes messages to registered domains.

    Args:
        registry: Source of domains and verb ownership.
        default_domain: Fallback before "first registered".
        aliases: Extra spellings -> domain name (``{"hf": "hedge-fund-investor"}``).
        event_bus: Optional bus for ``post_route`` events.
    """

    def __init__(
        self,
        registry: DomainRegistry,
        *,
        default_domain: str | None = None,
        aliases: Mapping[str, str] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._default = default_domain
        self._aliases = {normalize_name(k): v for k, v in (aliases or {}).items()}
        self._event_bus = event_bus
        self._lock = threading.Lock()
        self._total = 0
        self._failures = 0
        self._by_strategy: Counter[str] = Counter()
        self._confidence_sum = 0.0
        self._latency_sum = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_name(self, name: str) -> str | None:
        """Map a typed name or alias to a registered domain name."""
        key = normalize_name(name)
        target = self._aliases.get(key, key)
        return target if target in self._registry else None

    def route(
        self,
        request: RouteRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> RoutingDecision:
        """Run the strategies in priority order.

        Raises:
            RoutingError: ``unknown_domain`` / ``domain_not_eligible`` for an
                explicit switch that cannot be honoured, ``ambiguous`` when
                several domains own the extracted verbs and nothing else
                decides, ``no_match`` when there is no eligible domain.
        """
        started = time.perf_counter()
        try:
            check_cancelled(cancel, "route")
            decision = self._route(request)
        except RoutingError:
            self._record(None, time.perf_counter() - started)
            raise
        self._record(decision, time.perf_counter() - started)
        logger.debug(
            "Routed to %s via %s (%.2f): %s",
            decision.domain,
            decision.strategy,
            decision.confidence,
            decision.reason,
        )
        self._dispatch(decision)
        return decision

    def metrics(self) -> RouterMetrics:
        with self._lock:
            decided = self._total - self._failures
            return RouterMetrics(
                total=self._total,
                failures=self._failures,
                by_strategy=dict(self._by_strategy),
                mean_confidence=self._confidence_sum / decided if decided else 0.0,
                mean_latency_ms=self._latency_sum * 1000 / self._total if self._total else 0.0,
            )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _route(self, request: RouteRequest) -> RoutingDecision:
        pool = self._pool(request.candidates)
        if not pool:
            raise RoutingError("no eligible domain", reason="no_match")

        explicit = self._explicit(request.message, pool)
        if explicit is not None:
            return explicit

        owners, by_verb = self._verb_owners(request, pool)
        if by_verb is not None:
            return by_verb
        ambiguous = len(owners) > 1
        if ambiguous:
            pool = [d for d in pool if d.name in owners]

        decision = self._by_context(request.context, pool) or self._by_keywords(
            request.message, pool
        )
        if decision is not None:
            return decision

        if ambiguous:
            if request.current_domain in owners:
                return RoutingDecision(
                    domain=str(request.current_domain),
                    strategy=RoutingStrategy.FALLBACK,
                    confidence=0.2,
                    reason="current domain among verb owners",
                )
            raise RoutingError(
                f"verbs owned by several domains: {', '.join(owners)}",
                reason="ambiguous",
                domains=owners,
            )
        return self._fallback(request.current_domain, pool)

    def _pool(self, candidates: Sequence[str] | None) -> list[Domain]:
        domains = self._registry.list_domains()
        if candidates is None:
            return domains
        wanted = set(candidates)
        return [d for d in domains if d.name in wanted]

    def _explicit(self, message: str, pool: list[Domain]) -> RoutingDecision | None:
        found = _USE_RE.search(message) or _SWITCH_RE.search(message)
        if found is None:
            return None
        words, named = _name_words(found.group("rest"))
        named = named or found.re is _USE_RE
        if not words:
            return None
        resolved = None
        for n in range(len(words), 0, -1):
            resolved = self.resolve_name(" ".join(words[:n]))
            if resolved is not None:
                break
        if resolved is None:
            # Without "domain" the phrase is an ordinary instruction.
            if not named:
                return None
            name = normalize_name(words[0])
            raise RoutingError(
                f"unknown domain: {name}", reason="unknown_domain", domain=name
            )
        if resolved not in {d.name for d in pool}:
            raise RoutingError(
                f"domain {resolved} is not eligible here",
                reason="domain_not_eligible",
                domain=resolved,
                eligible=[d.name for d in pool],
            )
        return RoutingDecision(
            domain=resolved,
            strategy=RoutingStrategy.EXPLICIT,
            confidence=1.0,
            reason=f"explicit switch to {resolved}",
        )

    def _verb_owners(
        self,
        request: RouteRequest,
        pool: list[Domain],
    ) -> tuple[list[str], RoutingDecision | None]:
        eligible = [d.name for d in pool]

        def owners_of(verbs: Iterable[str]) -> list[str]:
            found: dict[str, None] = {}
            for verb in verbs:
                for name in self._registry.find_domains_by_verb(verb):
                    if name in eligible:
                        found[name] = None
            return sorted(found, key=eligible.index)

        extraction = extract_verbs(request.message)
        source = "message"
        owners = owners_of(extraction.verbs)
        if not owners and request.existing_dsl:
            extraction = extract_verbs(request.existing_dsl)
            source = "existing DSL"
            # The most recent verb with an eligible owner decides.
            for verb in reversed(extraction.verbs):
                owners = owners_of([verb])
                if owners:
                    break

        if len(owners) != 1:
            return owners, None

        confidence = 0.95 if extraction.parsed else 0.8
        if source != "message":
            confidence *= 0.85
        return owners, RoutingDecision(
            domain=owners[0],
            strategy=RoutingStrategy.VERB,
            confidence=round(confidence, 4),
            reason=f"verb owned by {owners[0]} ({source}, "
            f"{'parsed' if extraction.parsed else 'regex'})",
        )

    def _by_context(
        self,
        context: Mapping[str, Any],
        pool: list[Domain],
    ) -> RoutingDecision | None:
        if not context:
            return None
        keyed = [
            d
            for d in pool
            if any(context.get(key) not in (None, "") for key in d.context_keys)
        ]
        if len(keyed) == 1:
            domain = keyed[0]
            key = next(k for k in domain.context_keys if context.get(k) not in (None, ""))
            return RoutingDecision(
                domain=domain.name,
                strategy=RoutingStrategy.CONTEXT,
                confidence=0.8,
                reason=f"context carries {key}",
            )

        state = context.get("current_state")
        if state:
            stated = [d for d in pool if state in d.state_machine().states()]
            if len(stated) == 1:
                return RoutingDecision(
                    domain=stated[0].name,
                    strategy=RoutingStrategy.CONTEXT,
                    confidence=0.6,
                    reason=f"state {state} belongs to {stated[0].name}",
                )
        return None

    def _by_keywords(self, message: str, pool: list[Domain]) -> RoutingDecision | None:
        best: Domain | None = None
        best_hits = 0
        for domain in pool:
            hits = keyword_hits(message, domain.keywords)
            # Strictly greater keeps the earliest-registered domain on ties.
            if hits > best_hits:
                best, best_hits = domain, hits
        if best is None:
            return None
        return RoutingDecision(
            domain=best.name,
            strategy=RoutingStrategy.KEYWORD,
            confidence=round(0.4 + 0.2 * min(1.0, best_hits / 3), 4),
            reason=f"{best_hits} keyword hit(s) for {best.name}",
        )

    def _fallback(self, current: str | None, pool: list[Domain]) -> RoutingDecision:
        names = [d.name for d in pool]
        if current in names:
            return RoutingDecision(
                domain=str(current),
                strategy=RoutingStrategy.FALLBACK,
                confidence=0.2,
                reason="current domain",
            )
        if self._default in names:
            return RoutingDecision(
                domain=str(self._default),
                strategy=RoutingStrategy.FALLBACK,
                confidence=0.15,
                reason="configured default domain",
            )
        return RoutingDecision(
            domain=names[0],
            strategy=RoutingStrategy.FALLBACK,
            confidence=0.1,
            reason="first registered domain",
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record(self, decision: RoutingDecision | None, elapsed: float) -> None:
        with self._lock:
            self._total += 1
            self._latency_sum += elapsed
            if decision is None:
                self._failures += 1
                return
            self._by_strategy[str(decision.strategy)] += 1
            self._confidence_sum += decision.confidence

    def _dispatch(self, decision: RoutingDecision) -> None:
        bus = self._event_bus
        if bus is None:
            return
        try:
            bus.dispatch("post_route", decision.to_dict())
        except Exception as exc:
            logger.warning("Event dispatch failed for post_route: %s", exc)
