"""Business domains — one vocabulary + state machine per business area.

Domains depend on the domain layer only. Services reach them through the
:class:`~dslctl.domains.base.Domain` interface and never branch on a
domain's name.
"""

from __future__ import annotations

from dslctl.domains.base import BaseDomain, Domain, DomainMetrics, GenerationResult
from dslctl.domains.compliance import (
    ApacComplianceDomain,
    EuComplianceDomain,
    UkComplianceDomain,
    UsComplianceDomain,
)
from dslctl.domains.generator import Candidate, CandidateSource, GenerationRequest
from dslctl.domains.hedge_fund import HedgeFundInvestorDomain
from dslctl.domains.kyc import KycDomain
from dslctl.domains.onboarding import OnboardingDomain
from dslctl.domains.products import CustodyDomain, FundAccountingDomain, TransferAgencyDomain
from dslctl.domains.ubo import UboDomain

BUILTIN_DOMAINS: tuple[type[BaseDomain], ...] = (
    OnboardingDomain,
    KycDomain,
    UboDomain,
    HedgeFundInvestorDomain,
    CustodyDomain,
    FundAccountingDomain,
    TransferAgencyDomain,
    UsComplianceDomain,
    EuComplianceDomain,
    UkComplianceDomain,
    ApacComplianceDomain,
)


def builtin_domains() -> list[BaseDomain]:
    """Fresh instances of every built-in domain, in registration order."""
    return [cls() for cls in BUILTIN_DOMAINS]


__all__ = [
    "BUILTIN_DOMAINS",
    "BaseDomain",
    "Candidate",
    "CandidateSource",
    "Domain",
    "DomainMetrics",
    "GenerationRequest",
    "GenerationResult",
    "builtin_domains",
]
