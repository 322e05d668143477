"""Client onboarding domain — case creation through attribute population."""

from __future__ import annotations

import re
from typing import Any

from dslctl.domain.lifecycle import StateMachine, flag_guard
from dslctl.domain.vocabulary import Vocabulary, VocabularyBuilder, arg, moves
from dslctl.domains.base import BaseDomain
from dslctl.domains.generator import (
    ATTRIBUTES_KEY,
    GenerationRequest,
    InstructionRule,
    compact,
    context_value,
    group,
)

STATES: tuple[str, ...] = (
    "CREATED",
    "PRODUCTS_ADDED",
    "KYC_DISCOVERED",
    "SERVICES_DISCOVERED",
    "RESOURCES_DISCOVERED",
    "ATTRIBUTES_POPULATED",
    "COMPLETED",
)

TRANSITIONS: dict[str, list[str]] = {
    "CREATED": ["PRODUCTS_ADDED"],
    "PRODUCTS_ADDED": ["KYC_DISCOVERED"],
    "KYC_DISCOVERED": ["SERVICES_DISCOVERED"],
    "SERVICES_DISCOVERED": ["RESOURCES_DISCOVERED"],
    "RESOURCES_DISCOVERED": ["ATTRIBUTES_POPULATED"],
    "ATTRIBUTES_POPULATED": ["COMPLETED"],
    "COMPLETED": [],
}

PRODUCTS = ("CUSTODY", "FUND_ACCOUNTING", "TRANSFER_AGENCY", "HEDGE_FUND")

GUARDS = {
    ("ATTRIBUTES_POPULATED", "COMPLETED"): [
        flag_guard(
            "attributes_complete", "attributes_complete", "All required attributes populated"
        ),
    ],
}


def _build_vocabulary() -> Vocabulary:
    v = VocabularyBuilder("onboarding", "1.0.0", "Client business unit onboarding")
    v.category("case", "Case lifecycle")
    v.category("discovery", "Product, KYC, service and resource discovery")
    v.category("attributes", "Attribute population")

    case = arg("case", "uuid", required=True, description="Onboarding case UUID")
    jurisdiction = arg("jurisdiction", "string", pattern=r"^[A-Z]{2}$", hint="must be 2 letters")

    v.verb(
        "case.create",
        "case",
        "Open an onboarding case for a client business unit",
        arg("case", "uuid", description="Onboarding case UUID, minted when absent"),
        arg("cbu-id", "string", required=True, min_length=1),
        arg("nature-purpose", "string", required=True, min_length=1),
        jurisdiction,
        transition=moves("CREATED"),
        produces=("case_id",),
        examples=('(case.create :cbu-id "CBU-1234" :nature-purpose "UCITS equity fund")',),
    )
    v.verb(
        "products.add",
        "discovery",
        "Add a product to the case",
        case,
        arg("product", "enum", required=True, enum_values=PRODUCTS),
        transition=moves("PRODUCTS_ADDED", "CREATED", "PRODUCTS_ADDED"),
    )
    v.verb(
        "kyc.discover",
        "discovery",
        "Derive KYC requirements from products and jurisdiction",
        case,
        arg("documents", "string"),
        jurisdiction,
        transition=moves("KYC_DISCOVERED", "PRODUCTS_ADDED"),
    )
    v.verb(
        "services.discover",
        "discovery",
        "Record a service the products require",
        case,
        arg("service", "string", required=True),
        transition=moves("SERVICES_DISCOVERED", "KYC_DISCOVERED", "SERVICES_DISCOVERED"),
    )
    v.verb(
        "resources.plan",
        "discovery",
        "Plan a resource needed to deliver the services",
        case,
        arg("resource", "string", required=True),
        arg("owner", "string"),
        transition=moves("RESOURCES_DISCOVERED", "SERVICES_DISCOVERED", "RESOURCES_DISCOVERED"),
    )
    v.verb(
        "attributes.populate",
        "attributes",
        "Populate dictionary attributes for the case",
        case,
        transition=moves(
            "ATTRIBUTES_POPULATED", "RESOURCES_DISCOVERED", "ATTRIBUTES_POPULATED"
        ),
        accepts_attributes=True,
    )
    v.verb(
        "case.complete",
        "case",
        "Close the onboarding case",
        case,
        transition=moves("COMPLETED", "ATTRIBUTES_POPULATED"),
    )
    v.verb(
        "case.note",
        "case",
        "Attach a free-text note to the case",
        case,
        arg("text", "string", required=True),
    )
    return v.build(STATES)


def _case(req: GenerationRequest) -> Any:
    return context_value(req, "case_id")


def _create(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        cbu_id=group(m, "cbu") or context_value(req, "cbu_id"),
        nature_purpose=context_value(req, "nature_purpose") or "Client onboarding",
        jurisdiction=context_value(req, "jurisdiction"),
    )


def _add_product(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    raw = group(m, "product")
    product = re.sub(r"[\s-]+", "_", raw).upper() if raw else None
    return compact(case=_case(req), product=product)


def _discover_kyc(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        case=_case(req),
        documents=context_value(req, "documents"),
        jurisdiction=context_value(req, "jurisdiction"),
    )


def _discover_service(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(case=_case(req), service=group(m, "service") or context_value(req, "service"))


def _plan_resource(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        case=_case(req),
        resource=group(m, "resource") or context_value(req, "resource"),
        owner=context_value(req, "resource_owner"),
    )


def _populate(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(case=_case(req), **{ATTRIBUTES_KEY: context_value(req, "attribute_values")})


def _complete(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(case=_case(req))


RULES: list[InstructionRule] = [
    InstructionRule(
        "case.create",
        (r"(?:create|open)\s+(?:a\s+)?(?:new\s+)?case(?:\s+for\s+(?:cbu\s+)?(?P<cbu>[\w-]+))?",),
        _create,
        "Opening onboarding case",
        0.9,
    ),
    InstructionRule(
        "products.add",
        (
            r"add\s+(?:the\s+)?(?:product\s+)?"
            r"(?P<product>custody|fund[\s_-]accounting|transfer[\s_-]agency|hedge[\s_-]fund)",
        ),
        _add_product,
        "Adding product",
    ),
    InstructionRule(
        "kyc.discover",
        (r"discover\s+kyc|kyc\s+requirements",),
        _discover_kyc,
        "Discovering KYC requirements",
    ),
    InstructionRule(
        "services.discover",
        (r"discover\s+(?:the\s+)?services?(?:\s+(?P<service>[\w-]+))?",),
        _discover_service,
        "Discovering services",
    ),
    InstructionRule(
        "resources.plan",
        (r"plan\s+(?:the\s+)?resources?(?:\s+(?P<resource>[\w-]+))?",),
        _plan_resource,
        "Planning resources",
    ),
    InstructionRule(
        "attributes.populate",
        (r"populate\s+(?:the\s+)?attributes",),
        _populate,
        "Populating attributes",
    ),
    InstructionRule(
        "case.complete",
        (r"complete\s+(?:the\s+)?case|finish\s+onboarding",),
        _complete,
        "Completing case",
    ),
]


class OnboardingDomain(BaseDomain):
    """Client business unit (CBU) onboarding case."""

    NAME = "onboarding"
    VERSION = "1.0.0"
    DESCRIPTION = "Client onboarding from case creation to attribute population"
    KEYWORDS = (
        "onboarding",
        "case",
        "cbu",
        "client",
        "products",
        "services",
        "resources",
        "attributes",
    )
    CONTEXT_KEYS = ("case_id", "cbu_id")
    CONTEXT_ARGUMENTS = {"case": "case_id", "cbu-id": "cbu_id"}

    def build_vocabulary(self) -> Vocabulary:
        return _build_vocabulary()

    def build_state_machine(self) -> StateMachine:
        return StateMachine(TRANSITIONS, initial_state="CREATED", guards=GUARDS)

    def instruction_rules(self) -> list[InstructionRule]:
        return list(RULES)
