"""Error taxonomy for the DSL engine.

Every rejection carries a stable ``code`` (error family) and a
machine-checkable ``reason`` so an upstream generator or UI can
self-correct. ``detail`` holds the offending verb/guard/field names.

Domain code raises these; services convert them into
:class:`~dslctl.services.result.ServiceError` payloads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


class DslError(Exception):
    """Base class for all engine errors."""

    code: ClassVar[str] = "DSL_ERROR"

    def __init__(self, message: str, *, reason: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.detail: dict[str, Any] = {"reason": reason, **detail}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Violation:
    """One failed argument or vocabulary rule."""

    field: str
    reason: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "reason": self.reason, "message": self.message}


class ValidationError(DslError):
    """Unknown verb, missing/malformed argument, unresolved attribute, parse error."""

    code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        violations: list[Violation] | None = None,
        **detail: Any,
    ) -> None:
        self.violations: list[Violation] = list(violations or [])
        super().__init__(
            message,
            reason=reason,
            violations=[v.to_dict() for v in self.violations],
            **detail,
        )

    @classmethod
    def from_violations(cls, verb: str, violations: list[Violation]) -> ValidationError:
        """Build one error listing every violation for *verb*.

        The top-level reason is the first violation's reason.
        """
        joined = "; ".join(v.message for v in violations)
        return cls(
            f"{verb}: {joined}",
            reason=violations[0].reason,
            violations=violations,
            verb=verb,
        )

    @property
    def fields(self) -> list[str]:
        return [v.field for v in self.violations]


# ---------------------------------------------------------------------------
# State, routing, orchestration, registry
# ---------------------------------------------------------------------------


class StateError(DslError):
    """Illegal transition, terminal-state violation, or guard failure."""

    code = "STATE_REJECTED"


class RoutingError(DslError):
    """No routing strategy matched, or the match was ambiguous."""

    code = "ROUTING_FAILED"


class OrchestrationError(DslError):
    """Dependency cycle, unmet dependency, session limit, unknown session."""

    code = "ORCHESTRATION_FAILED"


class RegistryError(DslError):
    """A domain could not be registered or looked up."""

    code = "REGISTRY_REJECTED"


class OperationCancelled(DslError):
    """Cancellation observed before commit."""

    code = "CANCELLED"

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} cancelled", reason="cancelled", operation=operation)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(DslError):
    """Opaque failure from the Store, wrapped with operation context."""

    code = "STORE_FAILED"

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        super().__init__(
            f"Store operation {operation} failed: {cause}",
            reason="store_failure",
            operation=operation,
        )
        self.operation = operation


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(DslError):
    """Unreadable or invalid ``dslctl.toml``."""

    code = "CONFIG_INVALID"
