"""Tests for Router — strategy priority, confidence bands and metrics."""

from __future__ import annotations

from typing import Any

import pytest

from dslctl.config.models import DEFAULT_ALIASES
from dslctl.domain.cancel import CancellationToken
from dslctl.domain.errors import OperationCancelled, RoutingError
from dslctl.domains.kyc import KycDomain
from dslctl.services.registry import DomainRegistry
from dslctl.services.router import (
    RouteRequest,
    Router,
    RoutingStrategy,
    keyword_hits,
)

OPEN_KYC = '(kyc.open :party "Acme Holdings Ltd" :party-type ENTITY)'


class RecordingBus:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def dispatch(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))


class KycCopyA(KycDomain):
    NAME = "kyc-a"
    KEYWORDS = ()
    CONTEXT_KEYS = ("a_case_id",)


class KycCopyB(KycDomain):
    NAME = "kyc-b"
    KEYWORDS = ()
    CONTEXT_KEYS = ("b_case_id",)


@pytest.fixture
def router(registry: DomainRegistry) -> Router:
    return Router(registry, aliases=DEFAULT_ALIASES)


@pytest.fixture
def twin_router() -> Router:
    """Two domains that own exactly the same verbs."""
    registry = DomainRegistry()
    registry.register(KycCopyA())
    registry.register(KycCopyB())
    return Router(registry)


# ── explicit switch ──────────────────────────────────────────────────


class TestExplicit:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("switch to kyc", "kyc"),
            ("switch to domain kyc", "kyc"),
            ("switch to the domain UBO please", "ubo"),
            ("switch to the kyc domain", "kyc"),
            ("Please use the UBO domain for this", "ubo"),
            ("switch to hf", "hedge-fund-investor"),
            ("change to hedge fund investor now", "hedge-fund-investor"),
            ("switch to know your customer please", "kyc"),
        ],
    )
    def test_switch_phrasing(self, router: Router, message: str, expected: str) -> None:
        decision = router.route(RouteRequest(message=message))
        assert decision.domain == expected
        assert decision.strategy is RoutingStrategy.EXPLICIT
        assert decision.confidence == 1.0

    def test_beats_verb_in_message(self, router: Router) -> None:
        decision = router.route(RouteRequest(message=f"switch to ubo {OPEN_KYC}"))
        assert decision.domain == "ubo"

    @pytest.mark.parametrize(
        "message",
        ["switch to the astrology domain", "switch to domain astrology", "use astrology domain"],
    )
    def test_unknown_domain(self, router: Router, message: str) -> None:
        with pytest.raises(RoutingError) as exc_info:
            router.route(RouteRequest(message=message))
        assert exc_info.value.reason == "unknown_domain"
        assert exc_info.value.detail["domain"] == "astrology"

    @pytest.mark.parametrize(
        "message",
        ["change to a monthly schedule for the kyc review", "switch to astrology for kyc"],
    )
    def test_switch_phrase_without_a_domain_is_an_instruction(
        self, router: Router, message: str
    ) -> None:
        decision = router.route(RouteRequest(message=message))
        assert decision.strategy is RoutingStrategy.KEYWORD
        assert decision.domain == "kyc"

    def test_not_eligible(self, router: Router) -> None:
        with pytest.raises(RoutingError) as exc_info:
            router.route(RouteRequest(message="switch to ubo", candidates=["kyc"]))
        assert exc_info.value.reason == "domain_not_eligible"
        assert exc_info.value.detail["eligible"] == ["kyc"]

    def test_resolve_name(self, router: Router) -> None:
        assert router.resolve_name("Hedge Fund") == "hedge-fund-investor"
        assert router.resolve_name("compliance_uk") == "compliance-uk"
        assert router.resolve_name("astrology") is None


# ── verb extraction ──────────────────────────────────────────────────


class TestVerb:
    def test_parsed_message(self, router: Router) -> None:
        decision = router.route(RouteRequest(message=OPEN_KYC))
        assert decision.domain == "kyc"
        assert decision.strategy is RoutingStrategy.VERB
        assert decision.confidence == 0.95

    def test_regex_fallback(self, router: Router) -> None:
        decision = router.route(RouteRequest(message="please run ubo.start next"))
        assert decision.domain == "ubo"
        assert decision.confidence == 0.8

    def test_existing_dsl_latest_verb(self, router: Router) -> None:
        dsl = '(case.create :cbu-id "CBU-1")\n(ubo.start :entity "Acme")'
        decision = router.route(RouteRequest(message="what now", existing_dsl=dsl))
        assert decision.domain == "ubo"
        assert decision.strategy is RoutingStrategy.VERB
        assert decision.confidence == pytest.approx(0.8075)

    def test_verb_outside_candidates_ignored(self, router: Router) -> None:
        decision = router.route(RouteRequest(message=OPEN_KYC, candidates=["ubo"]))
        assert decision.domain == "ubo"
        assert decision.strategy is RoutingStrategy.FALLBACK

    def test_shared_verb_is_ambiguous(self, twin_router: Router) -> None:
        with pytest.raises(RoutingError) as exc_info:
            twin_router.route(RouteRequest(message=OPEN_KYC))
        assert exc_info.value.reason == "ambiguous"
        assert exc_info.value.detail["domains"] == ["kyc-a", "kyc-b"]

    def test_shared_verb_settled_by_context(self, twin_router: Router) -> None:
        decision = twin_router.route(
            RouteRequest(message=OPEN_KYC, context={"b_case_id": "case-9"})
        )
        assert decision.domain == "kyc-b"
        assert decision.strategy is RoutingStrategy.CONTEXT

    def test_shared_verb_settled_by_current_domain(self, twin_router: Router) -> None:
        decision = twin_router.route(RouteRequest(message=OPEN_KYC, current_domain="kyc-b"))
        assert decision.domain == "kyc-b"
        assert decision.strategy is RoutingStrategy.FALLBACK
        assert decision.confidence == 0.2


# ── context, keywords, fallback ──────────────────────────────────────


class TestContext:
    def test_entity_id_in_context(self, router: Router) -> None:
        decision = router.route(
            RouteRequest(message="what next", context={"ubo_case_id": "u-1"})
        )
        assert decision.domain == "ubo"
        assert decision.strategy is RoutingStrategy.CONTEXT
        assert decision.confidence == 0.8

    def test_blank_ids_ignored(self, router: Router) -> None:
        decision = router.route(
            RouteRequest(message="what next", context={"ubo_case_id": "", "kyc_case_id": None})
        )
        assert decision.strategy is RoutingStrategy.FALLBACK

    def test_several_ids_fall_through_to_state(self, router: Router) -> None:
        context = {
            "ubo_case_id": "u-1",
            "kyc_case_id": "k-1",
            "current_state": "DOCUMENTS_COLLECTED",
        }
        decision = router.route(RouteRequest(message="what next", context=context))
        assert decision.domain == "kyc"
        assert decision.confidence == 0.6


class TestKeywords:
    def test_keyword_hits_whole_words(self) -> None:
        assert keyword_hits("Sanctions screening for the PEP", ["sanctions", "pep", "nav"]) == 2
        assert keyword_hits("unscreened", ["screen"]) == 0

    def test_most_hits_wins(self, router: Router) -> None:
        decision = router.route(RouteRequest(message="run sanctions and pep screening"))
        assert decision.domain == "kyc"
        assert decision.strategy is RoutingStrategy.KEYWORD
        assert decision.confidence == 0.6

    def test_single_hit(self, router: Router) -> None:
        decision = router.route(RouteRequest(message="who is the shareholder"))
        assert decision.domain == "ubo"
        assert decision.confidence == pytest.approx(0.4667, abs=1e-4)


class TestFallback:
    def test_current_domain(self, router: Router) -> None:
        decision = router.route(RouteRequest(message="hello", current_domain="ubo"))
        assert decision.domain == "ubo"
        assert decision.confidence == 0.2

    def test_configured_default(self, registry: DomainRegistry) -> None:
        decision = Router(registry, default_domain="kyc").route(RouteRequest(message="hello"))
        assert decision.domain == "kyc"
        assert decision.confidence == 0.15

    def test_first_registered(self, router: Router) -> None:
        decision = router.route(RouteRequest(message="hello"))
        assert decision.domain == "onboarding"
        assert decision.confidence == 0.1

    def test_empty_pool(self, router: Router) -> None:
        with pytest.raises(RoutingError) as exc_info:
            router.route(RouteRequest(message="hello", candidates=[]))
        assert exc_info.value.reason == "no_match"


# ── metrics, events, cancellation ────────────────────────────────────


class TestRouterBookkeeping:
    def test_metrics(self, router: Router) -> None:
        router.route(RouteRequest(message="switch to kyc"))
        router.route(RouteRequest(message="hello"))
        with pytest.raises(RoutingError):
            router.route(RouteRequest(message="switch to the astrology domain"))
        metrics = router.metrics()
        assert metrics.total == 3
        assert metrics.failures == 1
        assert metrics.by_strategy == {"explicit": 1, "fallback": 1}
        assert metrics.mean_confidence == pytest.approx(0.55)
        assert metrics.mean_latency_ms >= 0

    def test_empty_metrics(self, router: Router) -> None:
        metrics = router.metrics()
        assert metrics.total == 0
        assert metrics.mean_confidence == 0.0

    def test_post_route_event(self, registry: DomainRegistry) -> None:
        bus = RecordingBus()
        router = Router(registry, event_bus=bus)  # type: ignore[arg-type]
        router.route(RouteRequest(message="switch to kyc"))
        assert bus.events == [
            (
                "post_route",
                {
                    "domain": "kyc",
                    "strategy": "explicit",
                    "confidence": 1.0,
                    "reason": "explicit switch to kyc",
                },
            )
        ]

    def test_cancelled(self, router: Router) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            router.route(RouteRequest(message="switch to kyc"), cancel=token)
