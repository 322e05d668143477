"""KYC domain: document collection, screening, risk assessment and decision."""

from __future__ import annotations

import re
from typing import Any

from dslctl.domain.lifecycle import StateMachine, equals_guard, flag_guard, present_guard
from dslctl.domain.vocabulary import Vocabulary, VocabularyBuilder, arg, moves
from dslctl.domains.base import BaseDomain
from dslctl.domains.generator import (
    GenerationRequest,
    InstructionRule,
    compact,
    context_value,
    group,
)

STATES: tuple[str, ...] = (
    "INITIATED",
    "DOCUMENTS_COLLECTED",
    "SCREENED",
    "UNDER_REVIEW",
    "APPROVED",
    "REJECTED",
)

TRANSITIONS: dict[str, list[str]] = {
    "INITIATED": ["DOCUMENTS_COLLECTED"],
    "DOCUMENTS_COLLECTED": ["SCREENED"],
    "SCREENED": ["UNDER_REVIEW"],
    "UNDER_REVIEW": ["APPROVED", "REJECTED", "DOCUMENTS_COLLECTED"],
}

DOCUMENT_TYPES = (
    "PASSPORT",
    "NATIONAL_ID",
    "PROOF_OF_ADDRESS",
    "CERT_OF_INCORPORATION",
    "ARTICLES",
    "REGISTER_OF_DIRECTORS",
    "FINANCIALS",
)

GUARDS = {
    ("DOCUMENTS_COLLECTED", "SCREENED"): [
        flag_guard("documents_verified", "documents_verified", "All KYC documents verified"),
    ],
    ("SCREENED", "UNDER_REVIEW"): [
        equals_guard(
            "screening_clear", "screening_result", "CLEAR", "Sanctions and PEP screening is CLEAR"
        ),
    ],
    ("UNDER_REVIEW", "APPROVED"): [
        present_guard("risk_rating_assigned", "risk_rating", "Risk rating assigned"),
    ],
}


def _build_vocabulary() -> Vocabulary:
    v = VocabularyBuilder("kyc", "1.0.0", "Know-your-customer due diligence")
    v.category("case", "KYC case lifecycle")
    v.category("evidence", "Documents and screening")
    v.category("decision", "Risk assessment and decision")

    case = arg("kyc-case", "uuid", required=True, description="KYC case UUID")

    v.verb(
        "kyc.open",
        "case",
        "Open a KYC case for a party",
        arg("kyc-case", "uuid", description="KYC case UUID, minted when absent"),
        arg("party", "string", required=True, min_length=1, max_length=200),
        arg("party-type", "enum", required=True, enum_values=("INDIVIDUAL", "ENTITY")),
        arg("jurisdiction", "string", pattern=r"^[A-Z]{2}$", hint="must be 2 letters"),
        transition=moves("INITIATED"),
        idempotent=True,
        produces=("kyc_case_id",),
        examples=('(kyc.open :party "Acme Holdings Ltd" :party-type ENTITY :jurisdiction "GB")',),
    )
    v.verb(
        "kyc.collect-document",
        "evidence",
        "Collect a due-diligence document",
        case,
        arg("doc-type", "enum", required=True, enum_values=DOCUMENT_TYPES),
        arg("reference", "string"),
        transition=moves("DOCUMENTS_COLLECTED", "INITIATED", "DOCUMENTS_COLLECTED"),
    )
    v.verb(
        "kyc.screen-party",
        "evidence",
        "Screen the party against sanctions and PEP lists",
        case,
        arg(
            "provider",
            "enum",
            required=True,
            enum_values=("worldcheck", "refinitiv", "accelus"),
        ),
        transition=moves("SCREENED", "DOCUMENTS_COLLECTED"),
    )
    v.verb(
        "kyc.assess-risk",
        "decision",
        "Assign a risk rating and send for review",
        case,
        arg("risk", "enum", required=True, enum_values=("LOW", "MEDIUM", "HIGH")),
        arg("rationale", "string"),
        transition=moves("UNDER_REVIEW", "SCREENED"),
    )
    v.verb(
        "kyc.request-documents",
        "evidence",
        "Send the case back for further documents",
        case,
        arg("detail", "string", required=True),
        transition=moves("DOCUMENTS_COLLECTED", "UNDER_REVIEW"),
    )
    v.verb(
        "kyc.clear",
        "decision",
        "Approve the KYC case",
        case,
        arg("approved-by", "string", required=True),
        arg("refresh-due", "date"),
        transition=moves("APPROVED", "UNDER_REVIEW"),
    )
    v.verb(
        "kyc.reject",
        "decision",
        "Reject the KYC case",
        case,
        arg("reason", "string", required=True, min_length=1),
        transition=moves("REJECTED", "UNDER_REVIEW"),
    )
    return v.build(STATES)


def _case(req: GenerationRequest) -> Any:
    return context_value(req, "kyc_case_id")


def _upper(raw: str | None) -> str | None:
    return re.sub(r"[\s-]+", "_", raw).upper() if raw else None


def _open(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    party_type = context_value(req, "party_type")
    if party_type is None:
        party_type = "INDIVIDUAL" if context_value(req, "entity_type") == "INDIVIDUAL" else "ENTITY"
    return compact(
        party=group(m, "party") or context_value(req, "party", "legal_name"),
        party_type=party_type,
        jurisdiction=context_value(req, "jurisdiction"),
    )


def _collect(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        kyc_case=_case(req),
        doc_type=_upper(group(m, "doc")) or context_value(req, "doc_type"),
        reference=context_value(req, "document_reference"),
    )


def _screen(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    provider = group(m, "provider")
    return compact(
        kyc_case=_case(req),
        provider=provider.lower() if provider else context_value(req, "screening_provider"),
    )


def _assess(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        kyc_case=_case(req),
        risk=_upper(group(m, "risk")) or context_value(req, "risk_rating"),
    )


def _request_documents(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        kyc_case=_case(req),
        detail=context_value(req, "detail") or req.instruction,
    )


def _clear(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(kyc_case=_case(req), approved_by=context_value(req, "actor") or "system")


def _reject(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        kyc_case=_case(req),
        reason=group(m, "reason") or context_value(req, "rejection_reason"),
    )


RULES: list[InstructionRule] = [
    InstructionRule(
        "kyc.open",
        (r"(?:open|start|begin)\s+(?:a\s+)?kyc(?:\s+case)?(?:\s+for\s+(?P<party>.+?))?\s*$",),
        _open,
        "Opening KYC case",
        0.9,
    ),
    InstructionRule(
        "kyc.collect-document",
        (
            r"collect\s+(?:the\s+)?(?P<doc>passport|national[\s_-]id|proof[\s_-]of[\s_-]address"
            r"|articles|financials)",
            r"collect\s+(?:the\s+)?documents?",
        ),
        _collect,
        "Collecting KYC document",
    ),
    InstructionRule(
        "kyc.screen-party",
        (r"\bscreen\b(?:.*?(?:with|via|using)\s+(?P<provider>worldcheck|refinitiv|accelus))?",),
        _screen,
        "Screening party",
    ),
    InstructionRule(
        "kyc.assess-risk",
        (r"(?:assess|rate)\s+(?:the\s+)?risk(?:\s+as\s+(?P<risk>low|medium|high))?",),
        _assess,
        "Assessing risk",
    ),
    InstructionRule(
        "kyc.request-documents",
        (r"request\s+(?:more|further|additional)\s+(?:documents|information)",),
        _request_documents,
        "Requesting further documents",
    ),
    InstructionRule(
        "kyc.clear",
        (r"(?:approve|clear)\s+(?:the\s+)?kyc",),
        _clear,
        "Approving KYC",
        0.85,
    ),
    InstructionRule(
        "kyc.reject",
        (r"reject\s+(?:the\s+)?kyc(?:\s+(?:because|for)\s+(?P<reason>.+))?",),
        _reject,
        "Rejecting KYC",
        0.85,
    ),
]


class KycDomain(BaseDomain):
    NAME = "kyc"
    VERSION = "1.0.0"
    DESCRIPTION = "Know-your-customer case from document collection to decision"
    KEYWORDS = (
        "kyc",
        "know your customer",
        "due diligence",
        "screening",
        "sanctions",
        "pep",
        "documents",
        "risk rating",
    )
    CONTEXT_KEYS = ("kyc_case_id",)
    CONTEXT_ARGUMENTS = {"kyc-case": "kyc_case_id"}

    def build_vocabulary(self) -> Vocabulary:
        return _build_vocabulary()

    def build_state_machine(self) -> StateMachine:
        return StateMachine(TRANSITIONS, initial_state="INITIATED", guards=GUARDS)

    def instruction_rules(self) -> list[InstructionRule]:
        return list(RULES)
