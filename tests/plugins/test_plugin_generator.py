"""Tests for PluginCandidateSource — plugin-first candidate generation."""

from __future__ import annotations

from typing import Any

import pytest

from dslctl.domain.errors import ValidationError
from dslctl.domains import GenerationRequest
from dslctl.domains.generator import RuleBasedGenerator
from dslctl.domains.kyc import KycDomain
from dslctl.plugins.generator import PluginCandidateSource
from dslctl.plugins.hookspecs import hookimpl
from dslctl.plugins.manager import PluginManager


class FixedAnswerPlugin:
    """Answers every propose_candidate call with ``answer``."""

    def __init__(self, answer: Any) -> None:
        self.answer = answer
        self.seen: list[dict[str, Any]] = []

    @hookimpl
    def propose_candidate(
        self,
        domain: str,
        instruction: str,
        current_state: str | None,
        context: dict[str, Any],
    ) -> Any:
        self.seen.append({"domain": domain, "instruction": instruction, "state": current_state})
        return self.answer


class ExplodingPlugin:
    @hookimpl
    def propose_candidate(
        self,
        domain: str,
        instruction: str,
        current_state: str | None,
        context: dict[str, Any],
    ) -> Any:
        raise RuntimeError("model offline")


def _domain_with(plugin: object | None) -> KycDomain:
    pm = PluginManager()
    if plugin is not None:
        pm.register_plugin(plugin)
    kyc = KycDomain()
    kyc.use_generator(PluginCandidateSource(pm, kyc.generator))
    return kyc


class TestPluginFirst:
    def test_plugin_answer_used(self) -> None:
        plugin = FixedAnswerPlugin(
            {
                "verb": "kyc.open",
                "arguments": {"party": "Plugin Party", "party-type": "INDIVIDUAL"},
                "explanation": "from the model",
                "confidence": 0.97,
            }
        )
        kyc = _domain_with(plugin)
        result = kyc.generate_dsl(GenerationRequest("onboard this person"))
        assert result.verb == "kyc.open"
        assert result.arguments["party"] == "Plugin Party"
        assert result.explanation == "from the model"
        assert result.confidence == 0.97
        assert plugin.seen == [
            {"domain": "kyc", "instruction": "onboard this person", "state": None}
        ]

    def test_plugin_answer_is_revalidated(self) -> None:
        plugin = FixedAnswerPlugin(
            {"verb": "kyc.open", "arguments": {"party": "X", "party-type": "ROBOT"}}
        )
        kyc = _domain_with(plugin)
        with pytest.raises(ValidationError) as exc_info:
            kyc.generate_dsl(GenerationRequest("open kyc for X"))
        assert exc_info.value.reason == "constraint_violation"

    def test_plugin_cannot_invent_verbs(self) -> None:
        kyc = _domain_with(FixedAnswerPlugin({"verb": "kyc.approve-everything"}))
        with pytest.raises(ValidationError) as exc_info:
            kyc.generate_dsl(GenerationRequest("open kyc for X"))
        assert exc_info.value.reason == "unknown_verb"


class TestFallback:
    @pytest.mark.parametrize(
        "plugin",
        [
            None,
            FixedAnswerPlugin(None),
            FixedAnswerPlugin({"arguments": {}}),
            FixedAnswerPlugin({"verb": "kyc.open", "confidence": "very"}),
            ExplodingPlugin(),
        ],
        ids=["no-plugin", "no-answer", "no-verb", "bad-confidence", "plugin-error"],
    )
    def test_rules_used(self, plugin: object | None) -> None:
        kyc = _domain_with(plugin)
        result = kyc.generate_dsl(GenerationRequest("open kyc for Acme Holdings"))
        assert result.verb == "kyc.open"
        assert result.arguments["party"] == "Acme Holdings"
        assert result.explanation == "Opening KYC case"

    def test_fallback_exposed(self) -> None:
        fallback = RuleBasedGenerator([])
        source = PluginCandidateSource(PluginManager(), fallback)
        assert source.fallback is fallback
