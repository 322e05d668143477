"""Jurisdictional compliance domains (US, EU, UK, APAC).

One lifecycle, one class per region. The region decides the verb
namespace, keywords and the regulatory regimes a check may cite.

Lifecycle::

    PENDING -> CHECKS_RUNNING -> REVIEW -> CLEARED
"""

from __future__ import annotations

import re
from typing import Any, ClassVar

from dslctl.domain.lifecycle import StateMachine, flag_guard
from dslctl.domain.vocabulary import Vocabulary, VocabularyBuilder, arg, moves
from dslctl.domains.base import BaseDomain
from dslctl.domains.generator import (
    GenerationRequest,
    InstructionRule,
    compact,
    context_value,
    group,
)

STATES: tuple[str, ...] = ("PENDING", "CHECKS_RUNNING", "REVIEW", "CLEARED")

TRANSITIONS: dict[str, list[str]] = {
    "PENDING": ["CHECKS_RUNNING"],
    "CHECKS_RUNNING": ["REVIEW"],
    "REVIEW": ["CLEARED", "CHECKS_RUNNING"],
    "CLEARED": [],
}

GUARDS = {
    ("REVIEW", "CLEARED"): [
        flag_guard("checks_passed", "checks_passed", "All regulatory checks passed"),
    ],
}


class ComplianceDomain(BaseDomain):
    """Regulatory checks for one region.

    Subclasses set ``REGION`` (``us``, ``eu``, ...) and ``REGIMES``.
    """

    REGION: ClassVar[str] = ""
    REGIMES: ClassVar[tuple[str, ...]] = ()

    @property
    def review_key(self) -> str:
        return f"compliance_{self.REGION}_review_id"

    def build_vocabulary(self) -> Vocabulary:
        ns = self.NAME
        v = VocabularyBuilder(ns, self.VERSION, self.DESCRIPTION)
        v.category("review", "Compliance review lifecycle")
        v.category("checks", "Regulatory checks")

        review = arg("review", "uuid", required=True, description="Compliance review UUID")
        v.verb(
            f"{ns}.open",
            "review",
            f"Open a {self.REGION.upper()} compliance review",
            arg("review", "uuid", description="Compliance review UUID, minted when absent"),
            arg("cbu-id", "string", required=True, min_length=1),
            arg("jurisdiction", "string", pattern=r"^[A-Z]{2}$", hint="must be 2 letters"),
            transition=moves("PENDING"),
            idempotent=True,
            produces=(self.review_key,),
        )
        v.verb(
            f"{ns}.run-check",
            "checks",
            "Run a regulatory check",
            review,
            arg("regime", "enum", required=True, enum_values=self.REGIMES),
            arg("reference", "string"),
            transition=moves("CHECKS_RUNNING", "PENDING", "CHECKS_RUNNING"),
        )
        v.verb(
            f"{ns}.submit-review",
            "review",
            "Submit check results for review",
            review,
            arg("summary", "string"),
            transition=moves("REVIEW", "CHECKS_RUNNING"),
        )
        v.verb(
            f"{ns}.rerun",
            "checks",
            "Send the review back for further checks",
            review,
            arg("reason", "string", required=True),
            transition=moves("CHECKS_RUNNING", "REVIEW"),
        )
        v.verb(
            f"{ns}.clear",
            "review",
            "Clear the client for this region",
            review,
            arg("cleared-by", "string", required=True),
            transition=moves("CLEARED", "REVIEW"),
        )
        return v.build(STATES)

    def build_state_machine(self) -> StateMachine:
        return StateMachine(TRANSITIONS, initial_state="PENDING", guards=GUARDS)

    def instruction_rules(self) -> list[InstructionRule]:
        ns = self.NAME
        regimes = "|".join(re.escape(r.lower()).replace("_", "[_ ]?") for r in self.REGIMES)

        def review_id(req: GenerationRequest) -> Any:
            return context_value(req, self.review_key)

        def _open(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                cbu_id=context_value(req, "cbu_id"),
                jurisdiction=context_value(req, "jurisdiction"),
            )

        def _regime(raw: str | None) -> str | None:
            if raw is None:
                return None
            key = re.sub(r"[\s_]", "", raw).upper()
            return next((r for r in self.REGIMES if r.replace("_", "") == key), key)

        def _run_check(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(review=review_id(req), regime=_regime(group(m, "regime")))

        def _submit(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(review=review_id(req), summary=context_value(req, "summary"))

        def _rerun(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                review=review_id(req),
                reason=context_value(req, "reason") or req.instruction,
            )

        def _clear(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                review=review_id(req),
                cleared_by=context_value(req, "actor") or "system",
            )

        return [
            InstructionRule(
                f"{ns}.open",
                (r"(?:open|start)\s+(?:the\s+)?compliance(?:\s+review)?",),
                _open,
                "Opening compliance review",
                0.85,
            ),
            InstructionRule(
                f"{ns}.run-check",
                (rf"(?:run|perform)\s+(?:the\s+)?(?P<regime>{regimes})(?:\s+check)?",),
                _run_check,
                "Running regulatory check",
            ),
            InstructionRule(
                f"{ns}.submit-review",
                (r"submit\s+(?:the\s+)?(?:checks|results)?\s*(?:for\s+)?review",),
                _submit,
                "Submitting for review",
            ),
            InstructionRule(
                f"{ns}.rerun",
                (r"re-?run\s+(?:the\s+)?checks",),
                _rerun,
                "Re-running checks",
            ),
            InstructionRule(
                f"{ns}.clear",
                (r"clear\s+(?:the\s+)?(?:client|compliance)",),
                _clear,
                "Clearing compliance",
                0.85,
            ),
        ]


class UsComplianceDomain(ComplianceDomain):
    NAME = "compliance-us"
    REGION = "us"
    DESCRIPTION = "United States regulatory checks"
    REGIMES = ("FATCA", "OFAC", "BSA_AML")
    KEYWORDS = ("fatca", "ofac", "united states", "bsa", "us compliance")
    CONTEXT_KEYS = ("compliance_us_review_id",)
    CONTEXT_ARGUMENTS = {"review": "compliance_us_review_id"}


class EuComplianceDomain(ComplianceDomain):
    NAME = "compliance-eu"
    REGION = "eu"
    DESCRIPTION = "European Union regulatory checks"
    REGIMES = ("AMLD6", "MIFID2", "GDPR", "CRS")
    KEYWORDS = ("mifid", "amld", "gdpr", "european union", "eu compliance")
    CONTEXT_KEYS = ("compliance_eu_review_id",)
    CONTEXT_ARGUMENTS = {"review": "compliance_eu_review_id"}


class UkComplianceDomain(ComplianceDomain):
    NAME = "compliance-uk"
    REGION = "uk"
    DESCRIPTION = "United Kingdom regulatory checks"
    REGIMES = ("MLR2017", "FCA_COBS", "CRS")
    KEYWORDS = ("fca", "united kingdom", "mlr", "uk compliance")
    CONTEXT_KEYS = ("compliance_uk_review_id",)
    CONTEXT_ARGUMENTS = {"review": "compliance_uk_review_id"}


class ApacComplianceDomain(ComplianceDomain):
    NAME = "compliance-apac"
    REGION = "apac"
    DESCRIPTION = "Asia-Pacific regulatory checks"
    REGIMES = ("MAS_AML", "HKMA_AML", "ASIC", "CRS")
    KEYWORDS = ("apac", "asia", "mas", "hkma", "asic", "apac compliance")
    CONTEXT_KEYS = ("compliance_apac_review_id",)
    CONTEXT_ARGUMENTS = {"review": "compliance_apac_review_id"}
