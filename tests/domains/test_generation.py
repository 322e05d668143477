"""Tests for rule-based DSL generation across the built-in domains."""

from __future__ import annotations

import re
from typing import Any

import pytest

from dslctl.domain.errors import StateError, ValidationError
from dslctl.domain.grammar import parse_one
from dslctl.domains import GenerationRequest
from dslctl.domains.compliance import UkComplianceDomain
from dslctl.domains.generator import InstructionRule, RuleBasedGenerator, compact
from dslctl.domains.hedge_fund import HedgeFundInvestorDomain
from dslctl.domains.kyc import KycDomain
from dslctl.domains.onboarding import OnboardingDomain
from dslctl.domains.products import CustodyDomain
from dslctl.domains.ubo import UboDomain

INVESTOR = "5e4d3c2b-1a09-4f8e-9d7c-6b5a4f3e2d1c"
UBO_CASE = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"
REQUEST = "2b3c4d5e-6f7a-4b8c-9d0e-1f2a3b4c5d6e"
REVIEW = "8f7e6d5c-4b3a-4c2d-9e1f-0a1b2c3d4e5f"


def _no_args(_m: re.Match[str], _req: GenerationRequest) -> dict[str, Any]:
    return compact()


class TestRuleSelection:
    @pytest.fixture
    def generator(self) -> RuleBasedGenerator:
        return RuleBasedGenerator(
            [
                InstructionRule("kyc.clear", (r"move on",), _no_args, "clear"),
                InstructionRule("kyc.collect-document", (r"move on",), _no_args, "collect"),
            ]
        )

    @pytest.mark.parametrize(
        ("state", "verb"),
        [
            ("INITIATED", "kyc.collect-document"),
            ("UNDER_REVIEW", "kyc.clear"),
            # Neither allowed: the first match surfaces the state rejection.
            ("SCREENED", "kyc.clear"),
        ],
    )
    def test_first_allowed_match_wins(
        self, generator: RuleBasedGenerator, state: str, verb: str
    ) -> None:
        candidate = generator.propose(KycDomain(), GenerationRequest("move on", state))
        assert candidate is not None
        assert candidate.verb == verb

    def test_no_match(self, generator: RuleBasedGenerator) -> None:
        assert generator.propose(KycDomain(), GenerationRequest("sing")) is None

    def test_rules_returns_copy(self, generator: RuleBasedGenerator) -> None:
        generator.rules.clear()
        assert len(generator.rules) == 2


class TestHedgeFundGeneration:
    def test_start_opportunity_mints_investor(self) -> None:
        result = HedgeFundInvestorDomain().generate_dsl(
            GenerationRequest("create investor for Acme Capital LP as corporate")
        )
        assert result.verb == "investor.start-opportunity"
        assert result.to_state == "OPPORTUNITY"
        assert result.arguments["legal-name"] == "Acme Capital LP"
        assert result.arguments["type"] == "CORPORATE"
        assert set(result.produced) == {"investor_id"}
        assert parse_one(result.fragment).verb == "investor.start-opportunity"

    def test_existing_investor_is_reused(self) -> None:
        result = HedgeFundInvestorDomain().generate_dsl(
            GenerationRequest(
                "start an opportunity for Jane Smith",
                context={"investor_id": INVESTOR},
            )
        )
        assert result.produced == {"investor_id": INVESTOR}
        assert result.arguments["type"] == "INDIVIDUAL"

    def test_kyc_tier_from_instruction(self) -> None:
        result = HedgeFundInvestorDomain().generate_dsl(
            GenerationRequest(
                "begin enhanced kyc",
                current_state="PRECHECKS",
                context={"investor_id": INVESTOR},
            )
        )
        assert result.verb == "kyc.begin"
        assert result.arguments["tier"] == "ENHANCED"
        assert result.from_state == "PRECHECKS"
        assert result.to_state == "KYC_PENDING"
        assert f'"{INVESTOR}"' in result.fragment

    def test_state_rejection(self) -> None:
        with pytest.raises(StateError) as exc_info:
            HedgeFundInvestorDomain().generate_dsl(
                GenerationRequest(
                    "begin kyc", current_state="OPPORTUNITY", context={"investor_id": INVESTOR}
                )
            )
        assert exc_info.value.reason == "illegal_transition"


class TestOtherDomains:
    def test_ubo_owner_with_share(self) -> None:
        result = UboDomain().generate_dsl(
            GenerationRequest(
                "add owner Jane Doe with 30%",
                current_state="DISCOVERY",
                context={"ubo_case_id": UBO_CASE},
            )
        )
        assert result.verb == "ubo.add-owner"
        assert result.arguments["name"] == "Jane Doe"
        assert str(result.arguments["ownership"]) == "30"
        assert result.arguments["owner-type"] == "NATURAL_PERSON"
        assert result.to_state == "OWNERS_IDENTIFIED"

    def test_kyc_missing_case_id(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            KycDomain().generate_dsl(
                GenerationRequest("assess risk as high", current_state="SCREENED")
            )
        assert "kyc-case" in exc_info.value.fields

    def test_custody_configuration_from_context(self) -> None:
        result = CustodyDomain().generate_dsl(
            GenerationRequest(
                "configure custody",
                current_state="REQUESTED",
                context={
                    "custody_request_id": REQUEST,
                    "market": "GB",
                    "settlement_currency": "GBP",
                },
            )
        )
        assert result.verb == "custody.configure"
        assert result.arguments["market"] == "GB"
        assert result.arguments["settlement-currency"] == "GBP"
        assert result.to_state == "CONFIGURED"

    def test_compliance_regime_spelling(self) -> None:
        result = UkComplianceDomain().generate_dsl(
            GenerationRequest(
                "run the fca cobs check",
                current_state="PENDING",
                context={"compliance_uk_review_id": REVIEW},
            )
        )
        assert result.verb == "compliance-uk.run-check"
        assert result.arguments["regime"] == "FCA_COBS"

    def test_onboarding_product_uses_case_from_context(self) -> None:
        case_id = "4d3c2b1a-0f9e-4d8c-b7a6-5f4e3d2c1b0a"
        result = OnboardingDomain().generate_dsl(
            GenerationRequest(
                "add fund accounting",
                current_state="CREATED",
                context={"case_id": case_id},
            )
        )
        assert result.verb == "products.add"
        assert result.arguments["product"] == "FUND_ACCOUNTING"
        assert result.arguments["case"] == case_id
