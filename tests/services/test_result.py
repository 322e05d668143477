"""Tests for ServiceResult and ServiceError."""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from dslctl.domain.errors import StateError, Violation, ValidationError
from dslctl.services.result import ServiceError, ServiceResult


class TestServiceResult:
    def test_success_construction(self) -> None:
        result = ServiceResult(ok=True, op="accumulate", data={"version": 1})
        assert result.ok is True
        assert result.op == "accumulate"
        assert result.data == {"version": 1}
        assert result.warnings == []
        assert result.error is None
        assert result.meta is None

    def test_json_serialization(self) -> None:
        result = ServiceResult(ok=True, op="test", data={"key": "value"}, meta={"n": 42})
        parsed = json.loads(result.model_dump_json())
        assert parsed["ok"] is True
        assert parsed["data"]["key"] == "value"
        assert parsed["meta"]["n"] == 42

    def test_frozen(self) -> None:
        result = ServiceResult(ok=True, op="test")
        with pytest.raises(PydanticValidationError):
            result.ok = False  # type: ignore[misc]

    def test_failure_from_state_error(self) -> None:
        exc = StateError(
            "kyc.clear not allowed from INITIATED",
            reason="illegal_transition",
            allowed=["UNDER_REVIEW"],
        )
        result = ServiceResult.failure("transition", exc, ["careful"])
        assert result.ok is False
        assert result.warnings == ["careful"]
        assert result.error is not None
        assert result.error.code == "STATE_REJECTED"
        assert result.error.reason == "illegal_transition"
        assert result.error.detail["allowed"] == ["UNDER_REVIEW"]


class TestServiceError:
    def test_reason_absent(self) -> None:
        assert ServiceError(code="X", message="m").reason is None

    def test_from_validation_error_keeps_violations(self) -> None:
        exc = ValidationError.from_violations(
            "subscribe.request",
            [
                Violation("amount", "constraint_violation", "must be > 0"),
                Violation("fund", "missing_argument", "missing required argument fund"),
            ],
        )
        error = ServiceError.from_exception(exc)
        assert error.code == "VALIDATION_FAILED"
        assert error.reason == "constraint_violation"
        assert [v["field"] for v in error.detail["violations"]] == ["amount", "fund"]
        assert error.detail["verb"] == "subscribe.request"
