"""Hedge fund investor domain — opportunity through offboarding.

Lifecycle::

    OPPORTUNITY -> PRECHECKS -> KYC_PENDING -> KYC_APPROVED -> SUB_PENDING_CASH
    -> FUNDED_PENDING_NAV -> ISSUED -> ACTIVE -> REDEEM_PENDING -> REDEEMED
    -> OFFBOARDED

with backward edges for corrections (e.g. KYC_PENDING -> PRECHECKS) and
top-ups (ACTIVE -> SUB_PENDING_CASH, REDEEMED -> SUB_PENDING_CASH).
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from dslctl.domain.lifecycle import (
    Guard,
    StateMachine,
    flag_guard,
    positive_guard,
    present_guard,
)
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
    "OPPORTUNITY",
    "PRECHECKS",
    "KYC_PENDING",
    "KYC_APPROVED",
    "SUB_PENDING_CASH",
    "FUNDED_PENDING_NAV",
    "ISSUED",
    "ACTIVE",
    "REDEEM_PENDING",
    "REDEEMED",
    "OFFBOARDED",
)

TRANSITIONS: dict[str, list[str]] = {
    "OPPORTUNITY": ["PRECHECKS"],
    "PRECHECKS": ["KYC_PENDING", "OPPORTUNITY"],
    "KYC_PENDING": ["KYC_APPROVED", "PRECHECKS"],
    "KYC_APPROVED": ["SUB_PENDING_CASH"],
    "SUB_PENDING_CASH": ["FUNDED_PENDING_NAV", "KYC_APPROVED"],
    "FUNDED_PENDING_NAV": ["ISSUED"],
    "ISSUED": ["ACTIVE"],
    "ACTIVE": ["REDEEM_PENDING", "SUB_PENDING_CASH"],
    "REDEEM_PENDING": ["REDEEMED", "ACTIVE"],
    "REDEEMED": ["OFFBOARDED", "SUB_PENDING_CASH"],
    "OFFBOARDED": [],
}

INVESTOR_TYPES = ("INDIVIDUAL", "CORPORATE", "TRUST", "FOHF", "NOMINEE")


def _minimum_investment_met(_entity: Any, ctx: Any) -> bool:
    return Decimal(str(ctx["subscription_amount"])) >= Decimal(str(ctx["minimum_investment"]))


GUARDS: dict[tuple[str, str], list[Guard]] = {
    ("OPPORTUNITY", "PRECHECKS"): [
        present_guard("indication_recorded", "indication", "Investment indication recorded"),
    ],
    ("PRECHECKS", "KYC_PENDING"): [
        present_guard(
            "initial_docs_submitted", "initial_documents", "Initial documentation submitted"
        ),
    ],
    ("KYC_PENDING", "KYC_APPROVED"): [
        flag_guard("documents_verified", "documents_verified", "All KYC documents verified"),
        Guard(
            "screening_passed",
            "Sanctions and PEP screening returned CLEAR",
            ("screening_result",),
            lambda _e, ctx: ctx["screening_result"] == "CLEAR",
        ),
        present_guard("risk_rating_assigned", "risk_rating", "Risk rating assigned"),
    ],
    ("KYC_APPROVED", "SUB_PENDING_CASH"): [
        present_guard(
            "valid_subscription_order", "subscription_order", "Valid subscription order"
        ),
        Guard(
            "minimum_investment_met",
            "Subscription amount meets the fund minimum",
            ("subscription_amount", "minimum_investment"),
            _minimum_investment_met,
        ),
        present_guard(
            "banking_instructions_set", "banking_instructions", "Banking instructions on file"
        ),
    ],
    ("SUB_PENDING_CASH", "FUNDED_PENDING_NAV"): [
        flag_guard("settlement_funds_received", "funds_received", "Settlement funds received"),
    ],
    ("FUNDED_PENDING_NAV", "ISSUED"): [
        positive_guard("nav_struck", "nav_per_share", "NAV struck for the dealing date"),
        positive_guard("units_allocated", "units_allocated", "Units allocated to the investor"),
    ],
    ("ACTIVE", "REDEEM_PENDING"): [
        present_guard("valid_redemption_notice", "redemption_notice", "Valid redemption notice"),
        flag_guard("notice_period_met", "notice_period_satisfied", "Notice period satisfied"),
    ],
    ("REDEEM_PENDING", "REDEEMED"): [
        positive_guard("all_units_redeemed", "units_redeemed", "Units redeemed"),
        flag_guard("cash_payment_made", "cash_payment_made", "Redemption proceeds paid"),
    ],
    ("REDEEMED", "OFFBOARDED"): [
        flag_guard(
            "final_documentation_complete", "final_docs_complete", "Final documentation complete"
        ),
    ],
}


def _build_vocabulary() -> Vocabulary:
    v = VocabularyBuilder(
        "hedge-fund-investor", "1.0.0", "Hedge fund investor register lifecycle"
    )
    v.category("opportunity", "Investor opportunity and indication")
    v.category("kyc", "Know-your-customer due diligence")
    v.category("monitoring", "Ongoing screening")
    v.category("tax-banking", "Tax classification and banking instructions")
    v.category("subscription", "Subscriptions, cash, NAV and issuance")
    v.category("redemption", "Redemption requests and settlement")
    v.category("offboarding", "Investor offboarding")

    investor = arg("investor", "uuid", required=True, description="Investor UUID")
    currency = arg(
        "currency", "string", required=True, pattern=r"^[A-Z]{3}$", hint="must be 3 letters"
    )
    fund = arg("fund", "uuid", required=True, description="Fund UUID")
    share_class = arg("class", "uuid", required=True, description="Share class UUID")
    trade = arg("trade", "uuid", required=True, description="Trade UUID")

    v.verb(
        "investor.start-opportunity",
        "opportunity",
        "Create an investor opportunity",
        arg("legal-name", "string", required=True, min_length=1, max_length=200),
        arg("type", "enum", required=True, enum_values=INVESTOR_TYPES),
        arg("domicile", "string", pattern=r"^[A-Z]{2}$", hint="must be 2 letters"),
        arg("source", "string"),
        transition=moves("OPPORTUNITY"),
        idempotent=True,
        produces=("investor_id",),
        examples=('(investor.start-opportunity :legal-name "Acme Capital LP" :type CORPORATE)',),
    )
    v.verb(
        "investor.record-indication",
        "opportunity",
        "Record an indication of interest",
        investor,
        fund,
        share_class,
        arg("ticket", "decimal", required=True, min_value=0, min_exclusive=True),
        currency,
        transition=moves("PRECHECKS", "OPPORTUNITY"),
    )
    v.verb(
        "kyc.begin",
        "kyc",
        "Start KYC at the chosen tier",
        investor,
        arg(
            "tier",
            "enum",
            enum_values=("SIMPLIFIED", "STANDARD", "ENHANCED"),
            default="STANDARD",
        ),
        transition=moves("KYC_PENDING", "PRECHECKS"),
    )
    v.verb(
        "kyc.collect-doc",
        "kyc",
        "Collect a KYC document",
        investor,
        arg("doc-type", "string", required=True),
        arg("subject", "string"),
        arg("file-path", "string"),
        transition=moves("KYC_PENDING", "KYC_PENDING"),
    )
    v.verb(
        "kyc.screen",
        "kyc",
        "Screen against sanctions and PEP lists",
        investor,
        arg(
            "provider",
            "enum",
            required=True,
            enum_values=("worldcheck", "refinitiv", "accelus"),
        ),
        transition=moves("KYC_PENDING", "KYC_PENDING"),
    )
    v.verb(
        "kyc.approve",
        "kyc",
        "Approve KYC with a risk rating",
        investor,
        arg("risk", "enum", required=True, enum_values=("LOW", "MEDIUM", "HIGH")),
        arg("refresh-due", "date", required=True),
        arg("approved-by", "string", required=True),
        arg("comments", "string"),
        transition=moves("KYC_APPROVED", "KYC_PENDING"),
    )
    v.verb(
        "kyc.refresh-schedule",
        "kyc",
        "Set the periodic KYC refresh schedule",
        investor,
        arg("frequency", "enum", required=True, enum_values=("MONTHLY", "QUARTERLY", "ANNUAL")),
        arg("next", "date", required=True),
        transition=moves("KYC_APPROVED", "KYC_APPROVED"),
    )
    v.verb(
        "screen.continuous",
        "monitoring",
        "Enable continuous screening",
        investor,
        arg("frequency", "enum", required=True, enum_values=("DAILY", "WEEKLY", "MONTHLY")),
    )
    v.verb(
        "tax.capture",
        "tax-banking",
        "Capture FATCA/CRS classification",
        investor,
        arg("fatca", "enum", enum_values=("US_PERSON", "NON_US_PERSON", "UNKNOWN")),
        arg("crs", "enum", enum_values=("REPORTABLE", "NON_REPORTABLE", "UNKNOWN")),
        arg("form", "enum", enum_values=("W9", "W8BEN", "W8BEN_E", "OTHER")),
        arg("tin-type", "enum", enum_values=("SSN", "EIN", "FOREIGN", "OTHER")),
        arg("tin-value", "string"),
        transition=moves("KYC_APPROVED", "KYC_APPROVED"),
    )
    v.verb(
        "bank.set-instruction",
        "tax-banking",
        "Record settlement banking instructions",
        investor,
        currency,
        arg("bank-name", "string", required=True),
        arg("account-name", "string", required=True),
        arg("iban", "string", pattern=r"^[A-Z]{2}\d{2}[A-Z0-9]{10,30}$", hint="must be an IBAN"),
        arg("swift", "string", pattern=r"^[A-Z0-9]{8}([A-Z0-9]{3})?$", hint="must be a BIC"),
        arg("account-num", "string"),
        transition=moves("KYC_APPROVED", "KYC_APPROVED"),
    )
    v.verb(
        "subscribe.request",
        "subscription",
        "Submit a subscription order",
        investor,
        fund,
        share_class,
        arg("amount", "decimal", required=True, min_value=0, min_exclusive=True),
        currency,
        arg("trade-date", "date", required=True),
        arg("value-date", "date", required=True),
        transition=moves("SUB_PENDING_CASH", "KYC_APPROVED", "ACTIVE"),
        produces=("trade_id",),
    )
    v.verb(
        "cash.confirm",
        "subscription",
        "Confirm receipt of subscription cash",
        investor,
        trade,
        arg("amount", "decimal", required=True, min_value=0, min_exclusive=True),
        arg("value-date", "date", required=True),
        arg("bank-currency", "string", pattern=r"^[A-Z]{3}$", hint="must be 3 letters"),
        arg("reference", "string"),
        transition=moves("FUNDED_PENDING_NAV", "SUB_PENDING_CASH"),
    )
    v.verb(
        "deal.nav",
        "subscription",
        "Strike the dealing NAV",
        fund,
        share_class,
        arg("nav-date", "date", required=True),
        arg("nav", "decimal", required=True, min_value=0, min_exclusive=True),
        transition=moves("FUNDED_PENDING_NAV", "FUNDED_PENDING_NAV"),
    )
    v.verb(
        "subscribe.issue",
        "subscription",
        "Issue units at the struck NAV",
        investor,
        trade,
        share_class,
        arg("series", "uuid"),
        arg("nav-per-share", "decimal", required=True, min_value=0, min_exclusive=True),
        arg("units", "decimal", required=True, min_value=0, min_exclusive=True),
        transition=moves("ISSUED", "FUNDED_PENDING_NAV"),
    )
    v.verb(
        "subscribe.activate",
        "subscription",
        "Activate the holding once units are registered",
        investor,
        transition=moves("ACTIVE", "ISSUED"),
    )
    v.verb(
        "redeem.request",
        "redemption",
        "Request a redemption by units or percentage",
        investor,
        share_class,
        arg("units", "decimal", min_value=0, min_exclusive=True),
        arg("percentage", "decimal", min_value="0.01", max_value=100),
        arg("notice-date", "date", required=True),
        arg("value-date", "date", required=True),
        transition=moves("REDEEM_PENDING", "ACTIVE"),
        one_of=(("units", "percentage"),),
    )
    v.verb(
        "redeem.settle",
        "redemption",
        "Settle a redemption payment",
        investor,
        trade,
        arg("amount", "decimal", required=True, min_value=0, min_exclusive=True),
        arg("settle-date", "date", required=True),
        arg("reference", "string"),
        transition=moves("REDEEMED", "REDEEM_PENDING"),
    )
    v.verb(
        "offboard.close",
        "offboarding",
        "Close the investor relationship",
        investor,
        arg("reason", "string", required=True),
        transition=moves("OFFBOARDED", "REDEEMED"),
    )
    return v.build(STATES)


# ---------------------------------------------------------------------------
# Instruction rules
# ---------------------------------------------------------------------------


def _today() -> str:
    return datetime.now(UTC).date().isoformat()


def _amount(raw: str | None) -> Decimal | None:
    return Decimal(raw.replace(",", "")) if raw else None


def _upper(raw: str | None) -> str | None:
    return raw.upper() if raw else None


def _investor(request: GenerationRequest) -> Any:
    return context_value(request, "investor_id", "investor")


def _start_opportunity(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        legal_name=group(m, "name") or context_value(req, "legal_name"),
        type=_upper(group(m, "type")) or context_value(req, "investor_type") or "INDIVIDUAL",
        domicile=context_value(req, "domicile"),
    )


def _record_indication(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        fund=context_value(req, "fund_id"),
        **{"class": context_value(req, "class_id")},
        ticket=_amount(group(m, "amount")) or context_value(req, "ticket"),
        currency=_upper(group(m, "currency")) or context_value(req, "currency"),
    )


def _kyc_begin(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(investor=_investor(req), tier=_upper(group(m, "tier")))


def _collect_doc(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(investor=_investor(req), doc_type=_upper(group(m, "doc")))


def _screen(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    provider = group(m, "provider")
    return compact(
        investor=_investor(req),
        provider=provider.lower() if provider else context_value(req, "screening_provider"),
    )


def _approve(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    refresh = (datetime.now(UTC).date() + timedelta(days=365)).isoformat()
    return compact(
        investor=_investor(req),
        risk=_upper(group(m, "risk")) or context_value(req, "risk_rating") or "MEDIUM",
        refresh_due=context_value(req, "refresh_due") or refresh,
        approved_by=context_value(req, "actor") or "system",
    )


def _subscribe(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        fund=context_value(req, "fund_id"),
        **{"class": context_value(req, "class_id")},
        amount=_amount(group(m, "amount")) or context_value(req, "subscription_amount"),
        currency=_upper(group(m, "currency")) or context_value(req, "currency"),
        trade_date=context_value(req, "trade_date") or _today(),
        value_date=context_value(req, "value_date") or _today(),
    )


def _cash_confirm(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        trade=context_value(req, "trade_id"),
        amount=_amount(group(m, "amount")) or context_value(req, "subscription_amount"),
        value_date=context_value(req, "value_date") or _today(),
    )


def _issue(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        trade=context_value(req, "trade_id"),
        **{"class": context_value(req, "class_id")},
        nav_per_share=context_value(req, "nav_per_share"),
        units=context_value(req, "units_allocated"),
    )


def _activate(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(investor=_investor(req))


def _redeem(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        **{"class": context_value(req, "class_id")},
        percentage=_amount(group(m, "percentage")),
        units=context_value(req, "redeem_units"),
        notice_date=context_value(req, "notice_date") or _today(),
        value_date=context_value(req, "value_date") or _today(),
    )


def _settle(m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        trade=context_value(req, "trade_id"),
        amount=_amount(group(m, "amount")) or context_value(req, "redemption_amount"),
        settle_date=context_value(req, "settle_date") or _today(),
    )


def _offboard(_m: re.Match[str], req: GenerationRequest) -> dict[str, Any]:
    return compact(
        investor=_investor(req),
        reason=context_value(req, "offboard_reason") or "Investor request",
    )


RULES: list[InstructionRule] = [
    InstructionRule(
        "investor.start-opportunity",
        (
            r"(?:start\s+(?:an?\s+)?opportunity|create\s+(?:an?\s+)?investor)"
            r"(?:\s+opportunity)?(?:\s+for\s+(?P<name>[\w .,'&-]+?))?"
            r"(?:\s+as\s+(?:an?\s+)?(?P<type>individual|corporate|trust|fohf|nominee))?\s*$",
        ),
        _start_opportunity,
        "Creating investor opportunity",
        0.9,
    ),
    InstructionRule(
        "investor.record-indication",
        (
            r"record\s+(?:an?\s+)?indication"
            r"(?:\s+of\s+(?P<amount>[\d,.]+)\s*(?P<currency>[A-Za-z]{3})?)?",
        ),
        _record_indication,
        "Recording indication of interest",
    ),
    InstructionRule(
        "kyc.begin",
        (r"\b(?:begin|start)\s+(?:(?P<tier>simplified|standard|enhanced)\s+)?kyc\b",),
        _kyc_begin,
        "Starting KYC",
        0.9,
    ),
    InstructionRule(
        "kyc.collect-doc",
        (r"collect\s+(?:the\s+)?(?P<doc>[\w-]+)\s+(?:doc|document)",),
        _collect_doc,
        "Collecting KYC document",
    ),
    InstructionRule(
        "kyc.screen",
        (r"\bscreen\b.*?(?:with|via|using)\s+(?P<provider>worldcheck|refinitiv|accelus)",),
        _screen,
        "Screening investor",
    ),
    InstructionRule(
        "kyc.approve",
        (r"approve\s+(?:the\s+)?kyc(?:\s+(?:with|at)\s+(?P<risk>low|medium|high)\s+risk)?",),
        _approve,
        "Approving KYC",
        0.85,
    ),
    InstructionRule(
        "cash.confirm",
        (r"confirm\s+(?:the\s+)?(?:subscription\s+)?cash|cash\s+(?:received|confirmed)",),
        _cash_confirm,
        "Confirming subscription cash",
    ),
    InstructionRule(
        "subscribe.request",
        (
            r"\bsubscri(?:be|ption)\b"
            r"(?:\D*?(?P<amount>\d[\d,]*(?:\.\d+)?)\s*(?P<currency>[A-Za-z]{3})?\b)?",
        ),
        _subscribe,
        "Submitting subscription request",
        0.75,
    ),
    InstructionRule(
        "subscribe.issue",
        (r"issue\s+(?:the\s+)?units",),
        _issue,
        "Issuing units",
    ),
    InstructionRule(
        "subscribe.activate",
        (r"\bactivate\b",),
        _activate,
        "Activating holding",
    ),
    InstructionRule(
        "redeem.settle",
        (r"settle\s+(?:the\s+)?redemption(?:\D*?(?P<amount>\d[\d,]*(?:\.\d+)?))?",),
        _settle,
        "Settling redemption",
    ),
    InstructionRule(
        "redeem.request",
        (r"\bredeem\b(?:\D*?(?P<percentage>\d+(?:\.\d+)?)\s*%)?",),
        _redeem,
        "Requesting redemption",
    ),
    InstructionRule(
        "offboard.close",
        (r"\boffboard\b|close\s+(?:the\s+)?(?:investor|account)",),
        _offboard,
        "Offboarding investor",
    ),
]


class HedgeFundInvestorDomain(BaseDomain):
    """Investor register: opportunity, KYC, subscription, redemption, offboarding."""

    NAME = "hedge-fund-investor"
    VERSION = "1.0.0"
    DESCRIPTION = "Hedge fund investor lifecycle from opportunity to offboarding"
    KEYWORDS = (
        "investor",
        "hedge fund",
        "opportunity",
        "subscription",
        "subscribe",
        "redemption",
        "redeem",
        "nav",
        "units",
        "offboard",
    )
    CONTEXT_KEYS = ("investor_id",)
    CONTEXT_ARGUMENTS = {"investor": "investor_id", "trade": "trade_id"}

    def build_vocabulary(self) -> Vocabulary:
        return _build_vocabulary()

    def build_state_machine(self) -> StateMachine:
        return StateMachine(TRANSITIONS, initial_state="OPPORTUNITY", guards=GUARDS)

    def instruction_rules(self) -> list[InstructionRule]:
        return list(RULES)
