"""Ultimate beneficial owner (UBO) discovery and verification."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any

from dslctl.domain.lifecycle import Guard, StateMachine, flag_guard
from dslctl.domain.vocabulary import Vocabulary, VocabularyBuilder, arg, moves
from dslctl.domains.base import BaseDomain
from dslctl.domains.generator import (
    GenerationRequest,
    InstructionRule,
    compact,
    context_value,
    group,
)

STATES: tuple[str, ...] = ("DISCOVERY", "OWNERS_IDENTIFIED", "CONTROL_MAPPED", "VERIFIED")

TRANSITIONS: dict[str, list[str]] = {
    "DISCOVERY": ["OWNERS_IDENTIFIED"],
    "OWNERS_IDENTIFIED": ["CONTROL_MAPPED"],
    "CONTROL_MAPPED": ["VERIFIED", "OWNERS_IDENTIFIED"],
    "VERIFIED": [],
}

# Ownership share at or above which a natural person is a beneficial owner.
DEFAULT_THRESHOLD = Decimal("25")


def _ownership_accounted(_entity: Any, ctx: Any) -> bool:
    return Decimal(str(ctx["ownership_identified"])) >= Decimal(str(ctx["ownership_required"]))


GUARDS = {
    ("OWNERS_IDENTIFIED", "CONTROL_MAPPED"): [
        Guard(
            "ownership_accounted",
            "Identified ownership covers the required share",
            ("ownership_identified", "ownership_required"),
            _ownership_accounted,
        ),
    ],
    ("CONTROL_MAPPED", "VERIFIED"): [
        flag_guard(
            "owners_verified", "owners_verified", "Every owner verified against evidence"
        ),
    ],
}


def _build_vocabulary() -> Vocabulary:
    v = VocabularyBuilder("ubo", "1.0.0", "Beneficial ownership discovery")
    v.category("discovery", "Ownership discovery")
    v.category("control", "Control mapping")
    v.category("verification", "Verification")

    case = arg("ubo-case", "uuid", required=True, description="UBO case UUID")
    share = {"min_value": 0, "min_exclusive": True, "max_value": 100}

    v.verb(
        "ubo.start",
        "discovery",
        "Start beneficial ownership discovery for an entity",
        arg("ubo-case", "uuid", description="UBO case UUID, minted when absent"),
        arg("entity", "string", required=True, min_length=1),
        arg("threshold", "decimal", default=DEFAULT_THRESHOLD, **share),
        transition=moves("DISCOVERY"),
        idempotent=True,
        produces=("ubo_case_id",),
        examples=('(ubo.start :entity "Acme Holdings Ltd" :threshold 25)',),
    )
    v.verb(
        "ubo.add-owner",
        "discovery",
        "Record an owner and their share",
        case,
        arg("name", "string", required=True, min_length=1),
        arg("ownership", "decimal", required=True, **share),
        arg(
            "owner-type",
            "enum",
            enum_values=("NATURAL_PERSON", "LEGAL_ENTITY"),
            default="NATURAL_PERSON",
        ),
        arg("nationality", "string", pattern=r"^[A-Z]{2}$", hint="must be 2 letters"),
        transition=moves("OWNERS_IDENTIFIED", "DISCOVERY", "OWNERS_IDENTIFIED"),
    )
    v.verb(
        "ubo.map-control",
        "control",
        "Record who controls the entity and how",
        case,
        arg("controller", "string", required=True),
        arg(
            "mechanism",
            "enum",
            required=True,
            enum_values=("VOTING", "BOARD", "CONTRACT", "OTHER"),
        ),
        transition=moves("CONTROL_MAPPED", "OWNERS_IDENTIFIED", "CONTROL_MAPPED"),
    )
    v.verb(
        "ubo.revise",
        "control",
        "Reopen owner identification",
        case,
        arg("reason", "string", required=True),
        transition=moves("OWNERS_IDENTIFIED", "CONTROL_MAPPED"),
    )
    v.verb(
        "ubo.verify",
        "verification",
        "Confirm the ownership structure",
        case,
        arg("verified-by", "string", required=True),
        transition=moves("VERIFIED", "CONTROL_MAPPED"),
    )
    return v.build(STATES)


def _case(req: GenerationRequest) -> Any:
    return context_value(req, "ubo_case_id")


def _start(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        entity=group(m, "entity") or context_value(req, "legal_name", "party"),
        threshold=context_value(req, "ubo_threshold"),
    )


def _add_owner(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    share = group(m, "share")
    return compact(
        ubo_case=_case(req),
        name=group(m, "name") or context_value(req, "owner_name"),
        ownership=Decimal(share) if share else context_value(req, "ownership"),
        nationality=context_value(req, "nationality"),
    )


def _map_control(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    mechanism = group(m, "mechanism")
    return compact(
        ubo_case=_case(req),
        controller=group(m, "controller") or context_value(req, "controller"),
        mechanism=mechanism.upper() if mechanism else context_value(req, "control_mechanism"),
    )


def _revise(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(ubo_case=_case(req), reason=context_value(req, "reason") or req.instruction)


def _verify(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(ubo_case=_case(req), verified_by=context_value(req, "actor") or "system")


RULES: list[InstructionRule] = [
    InstructionRule(
        "ubo.start",
        (
            r"(?:start|begin|discover)\s+(?:the\s+)?(?:ubo|beneficial\s+owner(?:ship)?)"
            r"(?:\s+discovery)?(?:\s+for\s+(?P<entity>.+?))?\s*$",
        ),
        _start,
        "Starting UBO discovery",
        0.9,
    ),
    InstructionRule(
        "ubo.add-owner",
        (
            r"add\s+(?:an?\s+)?owner\s+(?P<name>[\w .'-]+?)"
            r"(?:\s+(?:with|holding)\s+(?P<share>\d+(?:\.\d+)?)\s*%)?\s*$",
        ),
        _add_owner,
        "Recording owner",
    ),
    InstructionRule(
        "ubo.map-control",
        (
            r"(?P<controller>[\w .'-]+?)\s+controls\s+(?:the\s+entity\s+)?(?:via|through|by)"
            r"\s+(?P<mechanism>voting|board|contract)",
            r"map\s+(?:the\s+)?control",
        ),
        _map_control,
        "Mapping control",
    ),
    InstructionRule(
        "ubo.revise",
        (r"revise\s+(?:the\s+)?owners|reopen\s+(?:owner\s+)?identification",),
        _revise,
        "Reopening owner identification",
    ),
    InstructionRule(
        "ubo.verify",
        (r"verify\s+(?:the\s+)?(?:ubo|ownership|owners)",),
        _verify,
        "Verifying ownership",
        0.85,
    ),
]


class UboDomain(BaseDomain):
    NAME = "ubo"
    VERSION = "1.0.0"
    DESCRIPTION = "Beneficial ownership discovery, control mapping and verification"
    KEYWORDS = (
        "ubo",
        "beneficial owner",
        "ownership",
        "owner",
        "shareholder",
        "control",
        "controller",
    )
    CONTEXT_KEYS = ("ubo_case_id",)
    CONTEXT_ARGUMENTS = {"ubo-case": "ubo_case_id"}

    def build_vocabulary(self) -> Vocabulary:
        return _build_vocabulary()

    def build_state_machine(self) -> StateMachine:
        return StateMachine(TRANSITIONS, initial_state="DISCOVERY", guards=GUARDS)

    def instruction_rules(self) -> list[InstructionRule]:
        return list(RULES)
