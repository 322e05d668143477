"""Tests for the error taxonomy and the attribute dictionary."""

from __future__ import annotations

import pytest

from dslctl.domain.attributes import AttributeDefinition, StaticAttributeDictionary
from dslctl.domain.errors import (
    ConfigError,
    DslError,
    OrchestrationError,
    RegistryError,
    RoutingError,
    StateError,
    StoreError,
    ValidationError,
    Violation,
)
from dslctl.domain.vocabulary import ArgumentType


class TestErrors:
    @pytest.mark.parametrize(
        ("cls", "code"),
        [
            (ValidationError, "VALIDATION_FAILED"),
            (StateError, "STATE_REJECTED"),
            (RoutingError, "ROUTING_FAILED"),
            (OrchestrationError, "ORCHESTRATION_FAILED"),
            (RegistryError, "REGISTRY_REJECTED"),
            (ConfigError, "CONFIG_INVALID"),
        ],
    )
    def test_codes(self, cls: type[DslError], code: str) -> None:
        err = cls("boom", reason="because", extra=1)
        assert err.code == code
        assert err.reason == "because"
        assert err.detail["reason"] == "because"
        assert err.detail["extra"] == 1
        assert str(err) == "boom"

    def test_from_violations_keeps_first_reason(self) -> None:
        err = ValidationError.from_violations(
            "kyc.open",
            [
                Violation("party", "missing_argument", "missing required argument party"),
                Violation("colour", "unknown_argument", "unknown argument colour"),
            ],
        )
        assert err.reason == "missing_argument"
        assert err.fields == ["party", "colour"]
        assert err.message == (
            "kyc.open: missing required argument party; unknown argument colour"
        )
        assert err.detail["violations"][1] == {
            "field": "colour",
            "reason": "unknown_argument",
            "message": "unknown argument colour",
        }

    def test_store_error_names_operation(self) -> None:
        err = StoreError("insert_dsl", "disk full")
        assert err.operation == "insert_dsl"
        assert err.reason == "store_failure"
        assert "insert_dsl" in err.message


class TestStaticAttributeDictionary:
    def test_case_insensitive_lookup(self) -> None:
        definition = AttributeDefinition("ABC-1", "fund.name", ArgumentType.STRING)
        dictionary = StaticAttributeDictionary([definition])
        assert dictionary.resolve("abc-1") is definition
        assert "Abc-1" in dictionary
        assert 42 not in dictionary
        assert len(dictionary) == 1

    def test_unknown(self) -> None:
        assert StaticAttributeDictionary().resolve("missing") is None
