"""Tests for LifecycleService — entity creation, transitions and DSL application."""

from __future__ import annotations

import pytest

from dslctl.domain.attributes import AttributeDefinition, StaticAttributeDictionary
from dslctl.domain.lifecycle import Entity
from dslctl.domain.vocabulary import ArgumentType
from dslctl.domains.onboarding import OnboardingDomain
from dslctl.infrastructure.store import Store
from dslctl.services.accumulator import AccumulatorService
from dslctl.services.lifecycle import LifecycleService
from dslctl.services.registry import DomainRegistry
from tests.conftest import CancelAfter

CASE = "1c6f8e2a-3b4d-4c5e-9f6a-7b8c9d0e1f2a"
DOMICILE = "3f2b8c1e-5d4a-4e6f-9a7b-1c2d3e4f5a6b"
FUND_SIZE = "7a6b5c4d-3e2f-4a1b-8c9d-0e1f2a3b4c5d"
KYC_CASE = "0b7d2a9c-1e3f-4a5b-8c6d-7e8f9a0b1c2d"
COLLECT_PASSPORT = f'(kyc.collect-document :kyc-case "{KYC_CASE}" :doc-type PASSPORT)'


def _seed(store: Store, entity_id: str, domain: str, state: str) -> None:
    """Insert an entity directly in *state*, bypassing the lifecycle."""
    store.create_entity(
        Entity(
            id=entity_id,
            domain=domain,
            entity_type="CASE",
            state=state,
            created="2024-01-01T00:00:00+00:00",
            modified="2024-01-01T00:00:00+00:00",
        )
    )


# ---------------------------------------------------------------------------
# create_entity
# ---------------------------------------------------------------------------


class TestCreateEntity:
    def test_initial_state_and_record(self, lifecycle: LifecycleService) -> None:
        result = lifecycle.create_entity("hedge-fund-investor", "CORPORATE", actor="ops")
        assert result.ok
        entity_id = result.data["entity_id"]
        assert result.data["state"] == "OPPORTUNITY"
        entity = lifecycle.get_entity(entity_id)
        assert entity is not None
        assert entity.state == "OPPORTUNITY"
        history = lifecycle.history(entity_id)
        assert len(history) == 1
        assert history[0].from_state is None
        assert history[0].to_state == "OPPORTUNITY"
        assert history[0].actor == "ops"

    def test_explicit_id_and_attributes(self, lifecycle: LifecycleService) -> None:
        result = lifecycle.create_entity(
            "kyc", "ENTITY", entity_id="k1", attributes={"party": "Acme"}
        )
        assert result.data["entity_id"] == "k1"
        entity = lifecycle.get_entity("k1")
        assert entity is not None
        assert entity.attributes == {"party": "Acme"}

    def test_duplicate_rejected(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        result = lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        assert result.error is not None
        assert result.error.reason == "duplicate_entity"
        assert len(lifecycle.history("k1")) == 1

    def test_unknown_domain(self, lifecycle: LifecycleService) -> None:
        result = lifecycle.create_entity("astrology", "X")
        assert result.error is not None
        assert result.error.code == "REGISTRY_REJECTED"
        assert result.error.reason == "unknown_domain"

    def test_cancelled_before_commit(self, lifecycle: LifecycleService) -> None:
        result = lifecycle.create_entity(
            "kyc", "ENTITY", entity_id="k1", cancel=CancelAfter(1)
        )
        assert result.error is not None
        assert result.error.code == "CANCELLED"
        assert lifecycle.get_entity("k1") is None
        assert lifecycle.history("k1") == []

    def test_domain_metrics_count_creation(
        self, lifecycle: LifecycleService, registry: DomainRegistry
    ) -> None:
        lifecycle.create_entity("kyc", "ENTITY")
        assert registry.require("kyc").metrics().transitions == {"-->INITIATED": 1}


# ---------------------------------------------------------------------------
# transition
# ---------------------------------------------------------------------------


class TestTransition:
    def test_guarded_edge(self, lifecycle: LifecycleService, store: Store) -> None:
        _seed(store, "inv-1", "hedge-fund-investor", "KYC_PENDING")
        context = {
            "documents_verified": False,
            "screening_result": "CLEAR",
            "risk_rating": "LOW",
        }
        rejected = lifecycle.transition("inv-1", "KYC_APPROVED", context=context)
        assert rejected.error is not None
        assert rejected.error.code == "STATE_REJECTED"
        assert rejected.error.reason == "guard_failed"
        assert rejected.error.detail["guard"] == "documents_verified"
        assert lifecycle.history("inv-1") == []

        context["documents_verified"] = True
        accepted = lifecycle.transition(
            "inv-1", "KYC_APPROVED", context=context, trigger="kyc.approve", actor="officer"
        )
        assert accepted.ok
        assert accepted.data["from_state"] == "KYC_PENDING"
        assert accepted.data["to_state"] == "KYC_APPROVED"
        entity = lifecycle.get_entity("inv-1")
        assert entity is not None
        assert entity.state == "KYC_APPROVED"
        (record,) = lifecycle.history("inv-1")
        assert record.trigger == "kyc.approve"
        assert record.guard_context["documents_verified"] is True

    def test_entity_attributes_feed_guards(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity(
            "kyc", "ENTITY", entity_id="k1", attributes={"documents_verified": True}
        )
        assert lifecycle.transition("k1", "DOCUMENTS_COLLECTED").ok
        assert lifecycle.transition("k1", "SCREENED").ok

    def test_illegal_transition(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        result = lifecycle.transition("k1", "APPROVED")
        assert result.error is not None
        assert result.error.reason == "illegal_transition"
        assert result.error.detail["allowed"] == ["DOCUMENTS_COLLECTED"]

    def test_unknown_entity(self, lifecycle: LifecycleService) -> None:
        result = lifecycle.transition("ghost", "SCREENED")
        assert result.error is not None
        assert result.error.reason == "unknown_entity"

    def test_cancelled_transition_leaves_state(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        result = lifecycle.transition("k1", "DOCUMENTS_COLLECTED", cancel=CancelAfter(1))
        assert result.error is not None
        assert result.error.code == "CANCELLED"
        entity = lifecycle.get_entity("k1")
        assert entity is not None
        assert entity.state == "INITIATED"
        assert len(lifecycle.history("k1")) == 1

    def test_queries(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        assert lifecycle.valid_transitions("k1") == ["DOCUMENTS_COLLECTED"]
        assert lifecycle.path("k1", "UNDER_REVIEW") == [
            "INITIATED",
            "DOCUMENTS_COLLECTED",
            "SCREENED",
            "UNDER_REVIEW",
        ]


# ---------------------------------------------------------------------------
# apply
# ---------------------------------------------------------------------------


class TestApply:
    def test_fragment_moves_entity(
        self, lifecycle: LifecycleService, accumulator: AccumulatorService
    ) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        fragment = COLLECT_PASSPORT
        result = lifecycle.apply("k1", fragment)
        assert result.ok
        assert result.data["version"] == 1
        assert result.data["from_state"] == "INITIATED"
        assert result.data["to_state"] == "DOCUMENTS_COLLECTED"
        assert result.data["record"]["trigger"] == "kyc.collect-document"
        assert accumulator.latest("k1") == fragment

    def test_self_loop_appends_without_record(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        fragment = f'(kyc.collect-document :kyc-case "{KYC_CASE}" :doc-type ARTICLES)'
        lifecycle.apply("k1", fragment)
        again = lifecycle.apply("k1", fragment)
        assert again.ok
        assert again.data["version"] == 2
        assert again.data["record"] is None
        assert again.data["to_state"] == "DOCUMENTS_COLLECTED"
        assert len(lifecycle.history("k1")) == 2

    def test_guards_checked_before_anything_is_written(
        self, lifecycle: LifecycleService, accumulator: AccumulatorService, store: Store
    ) -> None:
        _seed(store, "k1", "kyc", "DOCUMENTS_COLLECTED")
        fragment = f'(kyc.screen-party :kyc-case "{KYC_CASE}" :provider worldcheck)'
        result = lifecycle.apply("k1", fragment)
        assert result.error is not None
        assert result.error.reason == "guard_unevaluable"
        assert accumulator.history("k1") == []

        assert lifecycle.apply("k1", fragment, context={"documents_verified": True}).ok
        assert accumulator.latest_version("k1") == 1

    def test_vocabulary_rejection(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        result = lifecycle.apply("k1", "(kyc.collect-document :doc-type SELFIE)")
        assert result.error is not None
        assert result.error.code == "VALIDATION_FAILED"
        assert set(result.error.detail["violations"][0]) == {"field", "reason", "message"}

    def test_verb_from_another_domain(self, lifecycle: LifecycleService) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        result = lifecycle.apply("k1", "(products.add :product CUSTODY)")
        assert result.error is not None
        assert result.error.reason == "unknown_verb"

    def test_unparsable(self, lifecycle: LifecycleService) -> None:
        result = lifecycle.apply("k1", "(kyc.open")
        assert result.error is not None
        assert result.error.reason == "parse_error"

    def test_cancel_rolls_back_fragment_and_state(
        self, lifecycle: LifecycleService, accumulator: AccumulatorService
    ) -> None:
        lifecycle.create_entity("kyc", "ENTITY", entity_id="k1")
        fragment = COLLECT_PASSPORT
        result = lifecycle.apply("k1", fragment, cancel=CancelAfter(1))
        assert result.error is not None
        assert result.error.code == "CANCELLED"
        assert accumulator.history("k1") == []
        entity = lifecycle.get_entity("k1")
        assert entity is not None
        assert entity.state == "INITIATED"


class TestApplyAttributes:
    @pytest.fixture
    def attr_lifecycle(
        self, store: Store, registry: DomainRegistry, accumulator: AccumulatorService
    ) -> LifecycleService:
        dictionary = StaticAttributeDictionary(
            [
                AttributeDefinition(DOMICILE, "fund.domicile", ArgumentType.STRING),
                AttributeDefinition(FUND_SIZE, "fund.size", ArgumentType.DECIMAL),
            ]
        )
        registry.unregister("onboarding")
        registry.register(OnboardingDomain(attributes=dictionary))
        return LifecycleService(store, registry, accumulator)

    def test_attributes_stored_with_fragment(
        self, attr_lifecycle: LifecycleService, store: Store
    ) -> None:
        _seed(store, "case-1", "onboarding", "RESOURCES_DISCOVERED")
        fragment = f'(attributes.populate :case "{CASE}" @attr{{{DOMICILE}}} = "LU")'
        result = attr_lifecycle.apply("case-1", fragment)
        assert result.ok
        assert result.data["to_state"] == "ATTRIBUTES_POPULATED"
        assert result.data["attributes"] == {DOMICILE: "LU"}
        assert store.get_attribute_values("case-1") == {DOMICILE: "LU"}
        entity = attr_lifecycle.get_entity("case-1")
        assert entity is not None
        assert entity.attributes[DOMICILE] == "LU"

    def test_repeat_population_upserts(
        self, attr_lifecycle: LifecycleService, store: Store
    ) -> None:
        _seed(store, "case-1", "onboarding", "RESOURCES_DISCOVERED")
        attr_lifecycle.apply(
            "case-1", f'(attributes.populate :case "{CASE}" @attr{{{DOMICILE}}} = "LU")'
        )
        result = attr_lifecycle.apply(
            "case-1",
            f'(attributes.populate :case "{CASE}" @attr{{{DOMICILE}}} = "IE" '
            f"@attr{{{FUND_SIZE}}} = 1000000)",
        )
        assert result.ok
        assert result.data["record"] is None
        assert store.get_attribute_values("case-1") == {DOMICILE: "IE", FUND_SIZE: "1000000"}

    def test_unknown_attribute_rejected(
        self, attr_lifecycle: LifecycleService, store: Store
    ) -> None:
        _seed(store, "case-1", "onboarding", "RESOURCES_DISCOVERED")
        unknown = "00000000-0000-4000-8000-000000000000"
        result = attr_lifecycle.apply(
            "case-1", f'(attributes.populate :case "{CASE}" @attr{{{unknown}}} = "x")'
        )
        assert result.error is not None
        assert result.error.reason == "unresolved_attribute"
        assert store.get_attribute_values("case-1") == {}
