"""Product provisioning domains: custody, fund accounting, transfer agency.

All three share one lifecycle; they differ in verb namespace, keywords and
the configuration arguments their ``configure`` verb takes.

Lifecycle::

    REQUESTED -> CONFIGURED -> PROVISIONED -> VALIDATED -> ACTIVE
"""

from __future__ import annotations

import re
from typing import Any, ClassVar

from dslctl.domain.lifecycle import StateMachine, flag_guard, present_guard
from dslctl.domain.vocabulary import ArgumentSpec, Vocabulary, VocabularyBuilder, arg, moves
from dslctl.domains.base import BaseDomain
from dslctl.domains.generator import (
    GenerationRequest,
    InstructionRule,
    compact,
    context_value,
    group,
)

STATES: tuple[str, ...] = ("REQUESTED", "CONFIGURED", "PROVISIONED", "VALIDATED", "ACTIVE")

TRANSITIONS: dict[str, list[str]] = {
    "REQUESTED": ["CONFIGURED"],
    "CONFIGURED": ["PROVISIONED"],
    "PROVISIONED": ["VALIDATED", "CONFIGURED"],
    "VALIDATED": ["ACTIVE"],
    "ACTIVE": [],
}

GUARDS = {
    ("CONFIGURED", "PROVISIONED"): [
        present_guard("resources_planned", "resources", "Delivery resources planned"),
    ],
    ("VALIDATED", "ACTIVE"): [
        flag_guard("validation_passed", "validation_passed", "Service validation passed"),
    ],
}

CURRENCY = {"pattern": r"^[A-Z]{3}$", "hint": "must be 3 letters"}


class ProductDomain(BaseDomain):
    """Shared lifecycle for one provisioned product.

    Subclasses set ``PREFIX`` (verb namespace) and ``CONFIG_ARGUMENTS``.
    """

    PREFIX: ClassVar[str] = ""
    CONFIG_ARGUMENTS: ClassVar[tuple[ArgumentSpec, ...]] = ()

    @property
    def request_key(self) -> str:
        """Context key holding this product's request id."""
        return f"{self.PREFIX.replace('-', '_')}_request_id"

    def build_vocabulary(self) -> Vocabulary:
        p = self.PREFIX
        v = VocabularyBuilder(self.NAME, self.VERSION, self.DESCRIPTION)
        v.category("request", "Product request")
        v.category("setup", "Configuration and provisioning")
        v.category("go-live", "Validation and activation")

        request = arg("request", "uuid", required=True, description="Product request UUID")
        v.verb(
            f"{p}.request",
            "request",
            f"Request the {self.NAME} product for a client",
            arg("request", "uuid", description="Product request UUID, minted when absent"),
            arg("cbu-id", "string", required=True, min_length=1),
            arg("requested-by", "string"),
            transition=moves("REQUESTED"),
            idempotent=True,
            produces=(self.request_key,),
        )
        v.verb(
            f"{p}.configure",
            "setup",
            f"Configure {self.NAME}",
            request,
            *self.CONFIG_ARGUMENTS,
            transition=moves("CONFIGURED", "REQUESTED", "CONFIGURED"),
        )
        v.verb(
            f"{p}.provision",
            "setup",
            "Provision a delivery resource",
            request,
            arg("resource", "string", required=True),
            arg("owner", "string"),
            transition=moves("PROVISIONED", "CONFIGURED", "PROVISIONED"),
        )
        v.verb(
            f"{p}.reconfigure",
            "setup",
            "Return to configuration after a provisioning problem",
            request,
            arg("reason", "string", required=True),
            transition=moves("CONFIGURED", "PROVISIONED"),
        )
        v.verb(
            f"{p}.validate",
            "go-live",
            "Record service validation",
            request,
            arg("checked-by", "string", required=True),
            transition=moves("VALIDATED", "PROVISIONED"),
        )
        v.verb(
            f"{p}.activate",
            "go-live",
            "Activate the product",
            request,
            arg("effective-date", "date", required=True),
            transition=moves("ACTIVE", "VALIDATED"),
        )
        return v.build(STATES)

    def build_state_machine(self) -> StateMachine:
        return StateMachine(TRANSITIONS, initial_state="REQUESTED", guards=GUARDS)

    def configuration(self, request: GenerationRequest) -> dict[str, Any]:
        """Configuration arguments drawn from the request context."""
        return {
            spec.name: request.context[spec.name.replace("-", "_")]
            for spec in self.CONFIG_ARGUMENTS
            if request.context.get(spec.name.replace("-", "_")) not in (None, "")
        }

    def instruction_rules(self) -> list[InstructionRule]:
        p = re.escape(self.PREFIX)
        noun = p.replace(r"\-", r"[\s-]")

        def request_id(req: GenerationRequest) -> Any:
            return context_value(req, self.request_key)

        def _request(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                cbu_id=context_value(req, "cbu_id"),
                requested_by=context_value(req, "actor"),
            )

        def _configure(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return {**compact(request=request_id(req)), **self.configuration(req)}

        def _provision(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                request=request_id(req),
                resource=group(m, "resource") or context_value(req, "resource"),
                owner=context_value(req, "resource_owner"),
            )

        def _validate(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                request=request_id(req),
                checked_by=context_value(req, "actor") or "system",
            )

        def _activate(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
            return compact(
                request=request_id(req),
                effective_date=context_value(req, "effective_date"),
            )

        return [
            InstructionRule(
                f"{self.PREFIX}.request",
                (rf"(?:request|order|set\s+up)\s+(?:the\s+)?{noun}",),
                _request,
                f"Requesting {self.NAME}",
                0.85,
            ),
            InstructionRule(
                f"{self.PREFIX}.configure",
                (rf"configure\s+(?:the\s+)?{noun}",),
                _configure,
                f"Configuring {self.NAME}",
            ),
            InstructionRule(
                f"{self.PREFIX}.provision",
                (rf"provision\s+(?:the\s+)?(?:{noun}\s+)?(?P<resource>[\w-]+)?",),
                _provision,
                "Provisioning resource",
            ),
            InstructionRule(
                f"{self.PREFIX}.validate",
                (rf"validate\s+(?:the\s+)?{noun}",),
                _validate,
                f"Validating {self.NAME}",
            ),
            InstructionRule(
                f"{self.PREFIX}.activate",
                (rf"(?:activate|go\s+live\s+with)\s+(?:the\s+)?{noun}",),
                _activate,
                f"Activating {self.NAME}",
            ),
        ]


class CustodyDomain(ProductDomain):
    NAME = "custody"
    PREFIX = "custody"
    DESCRIPTION = "Custody and safekeeping provisioning"
    KEYWORDS = ("custody", "custodian", "safekeeping", "sub-custodian", "settlement")
    CONTEXT_KEYS = ("custody_request_id",)
    CONTEXT_ARGUMENTS = {"request": "custody_request_id"}
    CONFIG_ARGUMENTS = (
        arg("market", "string", required=True, pattern=r"^[A-Z]{2}$", hint="must be 2 letters"),
        arg("settlement-currency", "string", required=True, **CURRENCY),
        arg("sub-custodian", "string"),
    )


class FundAccountingDomain(ProductDomain):
    NAME = "fund-accounting"
    PREFIX = "fund-accounting"
    DESCRIPTION = "Fund accounting and NAV calculation provisioning"
    KEYWORDS = ("fund accounting", "accounting", "valuation", "ledger", "nav calculation")
    CONTEXT_KEYS = ("fund_accounting_request_id",)
    CONTEXT_ARGUMENTS = {"request": "fund_accounting_request_id"}
    CONFIG_ARGUMENTS = (
        arg(
            "valuation-frequency",
            "enum",
            required=True,
            enum_values=("DAILY", "WEEKLY", "MONTHLY"),
        ),
        arg("base-currency", "string", required=True, **CURRENCY),
    )


class TransferAgencyDomain(ProductDomain):
    NAME = "transfer-agency"
    PREFIX = "transfer-agency"
    DESCRIPTION = "Transfer agency and shareholder register provisioning"
    KEYWORDS = (
        "transfer agency",
        "transfer agent",
        "registrar",
        "shareholder register",
        "dealing",
    )
    CONTEXT_KEYS = ("transfer_agency_request_id",)
    CONTEXT_ARGUMENTS = {"request": "transfer_agency_request_id"}
    CONFIG_ARGUMENTS = (
        arg(
            "dealing-frequency",
            "enum",
            required=True,
            enum_values=("DAILY", "WEEKLY", "MONTHLY"),
        ),
        arg("register-type", "enum", enum_values=("DIRECT", "NOMINEE"), default="DIRECT"),
    )
