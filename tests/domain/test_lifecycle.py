"""Tests for guarded state machines."""

from __future__ import annotations

from typing import Any

import pytest

from dslctl.domain.errors import StateError
from dslctl.domain.lifecycle import (
    Entity,
    Guard,
    StateMachine,
    equals_guard,
    flag_guard,
    positive_guard,
    present_guard,
)
from dslctl.domains.hedge_fund import HedgeFundInvestorDomain
from dslctl.domains.kyc import KycDomain
from dslctl.domains.ubo import UboDomain


@pytest.fixture
def kyc_machine() -> StateMachine:
    return KycDomain().state_machine()


def _entity(state: str | None, domain: str = "kyc") -> Entity:
    return Entity(id="e1", domain=domain, entity_type="CORPORATE", state=state)


class TestQueries:
    def test_states_in_declaration_order(self, kyc_machine: StateMachine) -> None:
        assert kyc_machine.states() == [
            "INITIATED",
            "DOCUMENTS_COLLECTED",
            "SCREENED",
            "UNDER_REVIEW",
            "APPROVED",
            "REJECTED",
        ]
        assert kyc_machine.initial_state == "INITIATED"

    def test_terminal_states_have_no_edges(self, kyc_machine: StateMachine) -> None:
        for state in ("APPROVED", "REJECTED"):
            assert kyc_machine.is_terminal(state)
            assert kyc_machine.valid_transitions(state) == []
        assert not kyc_machine.is_terminal("UNDER_REVIEW")

    def test_valid_transitions(self, kyc_machine: StateMachine) -> None:
        assert kyc_machine.valid_transitions("UNDER_REVIEW") == [
            "APPROVED",
            "REJECTED",
            "DOCUMENTS_COLLECTED",
        ]
        assert kyc_machine.can_transition("INITIATED", "DOCUMENTS_COLLECTED")
        assert not kyc_machine.can_transition(None, "INITIATED")

    def test_path(self, kyc_machine: StateMachine) -> None:
        assert kyc_machine.path("INITIATED", "APPROVED") == [
            "INITIATED",
            "DOCUMENTS_COLLECTED",
            "SCREENED",
            "UNDER_REVIEW",
            "APPROVED",
        ]
        assert kyc_machine.path("SCREENED", "SCREENED") == ["SCREENED"]

    def test_no_path_out_of_terminal_state(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError) as exc_info:
            kyc_machine.path("APPROVED", "INITIATED")
        assert exc_info.value.reason == "no_path"

    def test_no_path_to_unknown_state(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError):
            kyc_machine.path("INITIATED", "NOWHERE")

    def test_guard_lookup(self, kyc_machine: StateMachine) -> None:
        guard = kyc_machine.guard("documents_verified")
        assert guard is not None
        assert guard.requires == ("documents_verified",)
        assert kyc_machine.guards_for("DOCUMENTS_COLLECTED", "SCREENED") == [guard]
        assert "screening_clear" in kyc_machine.guard_names()

    def test_hedge_fund_backward_edges(self) -> None:
        machine = HedgeFundInvestorDomain().state_machine()
        assert machine.can_transition("KYC_PENDING", "PRECHECKS")
        assert machine.can_transition("ACTIVE", "SUB_PENDING_CASH")
        assert machine.can_transition("REDEEMED", "SUB_PENDING_CASH")
        assert machine.is_terminal("OFFBOARDED")


class TestValidateTransition:
    def test_illegal_transition(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError) as exc_info:
            kyc_machine.validate_transition(_entity("INITIATED"), "SCREENED", {})
        err = exc_info.value
        assert err.reason == "illegal_transition"
        assert err.detail["allowed"] == ["DOCUMENTS_COLLECTED"]
        assert err.code == "STATE_REJECTED"

    def test_terminal_state_rejects_everything(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError) as exc_info:
            kyc_machine.validate_transition(_entity("APPROVED"), "UNDER_REVIEW", {})
        assert exc_info.value.reason == "terminal_state"

    def test_missing_guard_input_is_unevaluable(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError) as exc_info:
            kyc_machine.validate_transition(_entity("DOCUMENTS_COLLECTED"), "SCREENED", {})
        err = exc_info.value
        assert err.reason == "guard_unevaluable"
        assert err.detail["guard"] == "documents_verified"
        assert err.detail["missing"] == ["documents_verified"]

    def test_guard_failed(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError) as exc_info:
            kyc_machine.validate_transition(
                _entity("DOCUMENTS_COLLECTED"), "SCREENED", {"documents_verified": False}
            )
        assert exc_info.value.reason == "guard_failed"
        assert exc_info.value.detail["description"] == "All KYC documents verified"

    def test_guard_passes(self, kyc_machine: StateMachine) -> None:
        kyc_machine.validate_transition(
            _entity("DOCUMENTS_COLLECTED"), "SCREENED", {"documents_verified": True}
        )

    def test_every_edge_guard_checked(self) -> None:
        machine = HedgeFundInvestorDomain().state_machine()
        entity = _entity("KYC_PENDING", "hedge-fund-investor")
        context = {"documents_verified": True, "screening_result": "HIT", "risk_rating": "LOW"}
        with pytest.raises(StateError) as exc_info:
            machine.validate_transition(entity, "KYC_APPROVED", context)
        assert exc_info.value.detail["guard"] == "screening_passed"

    def test_unknown_extra_guard(self, kyc_machine: StateMachine) -> None:
        with pytest.raises(StateError) as exc_info:
            kyc_machine.validate_transition(
                _entity("INITIATED"),
                "DOCUMENTS_COLLECTED",
                {},
                extra_guards=("no_such_guard",),
            )
        assert exc_info.value.reason == "guard_unevaluable"

    def test_predicate_error_is_guard_failure(self) -> None:
        machine = UboDomain().state_machine()
        with pytest.raises(StateError) as exc_info:
            machine.validate_transition(
                _entity("OWNERS_IDENTIFIED", "ubo"),
                "CONTROL_MAPPED",
                {"ownership_identified": "lots", "ownership_required": 25},
            )
        assert exc_info.value.reason == "guard_failed"


class TestTransition:
    def test_returns_moved_entity_and_record(self, kyc_machine: StateMachine) -> None:
        context: dict[str, Any] = {"documents_verified": True, "notes": ["a"]}
        moved, record = kyc_machine.transition(
            _entity("DOCUMENTS_COLLECTED"),
            "SCREENED",
            trigger="kyc.screen-party",
            context=context,
            actor="analyst",
        )
        assert moved.state == "SCREENED"
        assert moved.modified
        assert record.from_state == "DOCUMENTS_COLLECTED"
        assert record.to_state == "SCREENED"
        assert record.trigger == "kyc.screen-party"
        assert record.actor == "analyst"
        # The record keeps its own copy of the guard inputs.
        context["notes"].append("b")
        assert record.guard_context["notes"] == ["a"]

    def test_rejected_transition_changes_nothing(self, kyc_machine: StateMachine) -> None:
        entity = _entity("DOCUMENTS_COLLECTED")
        with pytest.raises(StateError):
            kyc_machine.transition(entity, "SCREENED", trigger="t", context={}, actor="a")
        assert entity.state == "DOCUMENTS_COLLECTED"

    def test_initial_record(self, kyc_machine: StateMachine) -> None:
        record = kyc_machine.initial_record(_entity(None), trigger="create", actor="system")
        assert record.from_state is None
        assert record.to_state == "INITIATED"
        assert record.to_dict()["guard_context"] == {}


class TestGuards:
    def test_helpers(self) -> None:
        entity = _entity("X")
        flag_guard("f", "k", "d").evaluate(entity, {"k": True})
        present_guard("p", "k", "d").evaluate(entity, {"k": "value"})
        positive_guard("n", "k", "d").evaluate(entity, {"k": "1.5"})
        equals_guard("e", "k", "CLEAR", "d").evaluate(entity, {"k": "CLEAR"})
        with pytest.raises(StateError):
            flag_guard("f", "k", "d").evaluate(entity, {"k": "true"})
        with pytest.raises(StateError):
            present_guard("p", "k", "d").evaluate(entity, {"k": ""})
        with pytest.raises(StateError):
            positive_guard("n", "k", "d").evaluate(entity, {"k": 0})

    def test_guard_on_undeclared_edge_rejected(self) -> None:
        guard = Guard("g", "d", (), lambda _e, _c: True)
        with pytest.raises(ValueError, match="undeclared edge"):
            StateMachine({"A": ["B"]}, initial_state="A", guards={("B", "A"): [guard]})

    def test_library_guards_available_by_name(self) -> None:
        guard = Guard("always", "d", (), lambda _e, _c: True)
        machine = StateMachine({"A": ["B"]}, initial_state="A", library=[guard])
        machine.validate_transition(_entity("A"), "B", {}, extra_guards=("always",))
        assert machine.guard("always") is guard
