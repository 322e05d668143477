"""Candidate generation — the "instruction -> verb + arguments" step.

The real generator (an NL/AI service) is external and untrusted; it plugs
in through the ``propose_candidate`` plugin hook. Each domain also ships a
small rule table so the engine works without one: a rule is a set of
regex patterns plus a function that builds arguments from the match and
the request context.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from dslctl.domains.base import Domain


@dataclass(frozen=True)
class GenerationRequest:
    """What a domain is asked to turn into DSL."""

    instruction: str
    current_state: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)
    existing_dsl: str = ""


@dataclass(frozen=True)
class Candidate:
    """An untrusted proposal: verb, arguments, and the generator's rationale."""

    verb: str
    arguments: Mapping[str, Any]
    attributes: Mapping[str, Any] = field(default_factory=dict)
    explanation: str = ""
    confidence: float = 0.5

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Candidate:
        """Build from a plugin's plain-dict answer."""
        return cls(
            verb=str(data["verb"]),
            arguments=dict(data.get("arguments") or {}),
            attributes=dict(data.get("attributes") or {}),
            explanation=str(data.get("explanation") or ""),
            confidence=float(data.get("confidence", 0.5)),
        )


class CandidateSource(Protocol):
    """Anything that can propose a candidate for a domain."""

    def propose(self, domain: Domain, request: GenerationRequest) -> Candidate | None: ...


type ArgumentBuilder = Callable[[re.Match[str], GenerationRequest], dict[str, Any]]

# Builders return attribute arguments (uuid -> value) under this key.
ATTRIBUTES_KEY = "@attr"


@dataclass(frozen=True)
class InstructionRule:
    """Maps instruction phrasing to one verb."""

    verb: str
    patterns: tuple[str, ...]
    build: ArgumentBuilder
    explanation: str
    confidence: float = 0.8

    def match(self, instruction: str) -> re.Match[str] | None:
        for pattern in self.patterns:
            found = re.search(pattern, instruction, re.IGNORECASE)
            if found is not None:
                return found
        return None


class RuleBasedGenerator:
    """Deterministic fallback generator driven by :class:`InstructionRule` tables.

    When several rules match, the first one whose verb is allowed from the
    current state wins; otherwise the first match is returned so the
    caller sees a structured state rejection instead of nothing.
    """

    def __init__(self, rules: Iterable[InstructionRule]) -> None:
        self._rules = list(rules)

    @property
    def rules(self) -> list[InstructionRule]:
        return list(self._rules)

    def propose(self, domain: Domain, request: GenerationRequest) -> Candidate | None:
        matches: list[tuple[InstructionRule, re.Match[str]]] = []
        for rule in self._rules:
            found = rule.match(request.instruction)
            if found is not None:
                matches.append((rule, found))
        if not matches:
            return None

        chosen = matches[0]
        for rule, found in matches:
            if domain.allows(rule.verb, request.current_state):
                chosen = (rule, found)
                break

        rule, found = chosen
        arguments = rule.build(found, request)
        attributes = arguments.pop(ATTRIBUTES_KEY, None) or {}
        return Candidate(
            verb=rule.verb,
            arguments=arguments,
            attributes=attributes,
            explanation=rule.explanation,
            confidence=rule.confidence,
        )


# ---------------------------------------------------------------------------
# Builder helpers
# ---------------------------------------------------------------------------


def context_value(request: GenerationRequest, *keys: str) -> Any:
    """First non-empty context value among *keys*, or None."""
    for key in keys:
        value = request.context.get(key)
        if value not in (None, ""):
            return value
    return None


def group(found: re.Match[str], name: str) -> str | None:
    """Named regex group, stripped, or None when absent or empty."""
    try:
        value = found.group(name)
    except IndexError:
        return None
    if value is None:
        return None
    return value.strip() or None


def compact(**values: Any) -> dict[str, Any]:
    """Drop None values so missing inputs surface as missing arguments."""
    return {k.replace("_", "-"): v for k, v in values.items() if v is not None}
