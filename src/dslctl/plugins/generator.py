"""Candidate source backed by the ``propose_candidate`` hook.

The first plugin to answer wins; with no answer (or a failing plugin) the
domain's rule-based generator is used. Whatever is returned is only a
proposal: the domain re-validates it before anything is accumulated.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dslctl.domains.generator import Candidate, CandidateSource, GenerationRequest

if TYPE_CHECKING:
    from dslctl.domains.base import Domain
    from dslctl.plugins.manager import PluginManager

logger = logging.getLogger(__name__)


class PluginCandidateSource:
    """Ask plugins first, then *fallback*."""

    def __init__(self, plugin_manager: PluginManager, fallback: CandidateSource) -> None:
        self._pm = plugin_manager
        self._fallback = fallback

    @property
    def fallback(self) -> CandidateSource:
        return self._fallback

    def propose(self, domain: Domain, request: GenerationRequest) -> Candidate | None:
        answer = None
        if self._pm.has_implementations("propose_candidate"):
            try:
                answer = self._pm.hook.propose_candidate(
                    domain=domain.name,
                    instruction=request.instruction,
                    current_state=request.current_state,
                    context=dict(request.context),
                )
            except Exception as exc:
                logger.warning("propose_candidate plugin failed for %s: %s", domain.name, exc)
                answer = None

        if answer:
            try:
                candidate = Candidate.from_mapping(answer)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding malformed plugin candidate for %s: %s", domain.name, exc)
            else:
                logger.debug("Plugin proposed %s for %s", candidate.verb, domain.name)
                return candidate

        return self._fallback.propose(domain, request)
