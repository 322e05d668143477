"""ServiceResult and ServiceError — the universal service contract.

INVARIANT: Services that change persisted state return ServiceResult.
Any transport (CLI, HTTP, a worker queue) consumes this type rather than
catching engine exceptions.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from dslctl.domain.errors import DslError


class ServiceError(BaseModel):
    """Structured error payload within a ServiceResult."""

    model_config = {"frozen": True}

    code: str
    message: str
    detail: dict[str, Any] = Field(default_factory=dict)

    @property
    def reason(self) -> str | None:
        """Machine-checkable rejection reason (``detail['reason']``)."""
        reason = self.detail.get("reason")
        return None if reason is None else str(reason)

    @classmethod
    def from_exception(cls, exc: DslError) -> ServiceError:
        return cls(code=exc.code, message=exc.message, detail=dict(exc.detail))


class ServiceResult(BaseModel):
    """Universal return type for service operations.

    Attributes:
        ok: Whether the operation succeeded.
        op: Name of the operation (e.g. ``"accumulate"``).
        data: Operation-specific payload on success.
        warnings: Non-fatal issues encountered during the operation.
        error: Structured error if ``ok`` is False.
        meta: Optional metadata (timing, counts, etc.).
    """

    model_config = {"frozen": True}

    ok: bool
    op: str
    data: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    error: ServiceError | None = None
    meta: dict[str, Any] | None = None

    @classmethod
    def failure(
        cls,
        op: str,
        exc: DslError,
        warnings: list[str] | None = None,
    ) -> ServiceResult:
        """Failed result carrying *exc*'s code, message and detail."""
        return cls(
            ok=False,
            op=op,
            warnings=list(warnings or []),
            error=ServiceError.from_exception(exc),
        )
