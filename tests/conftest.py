"""Shared pytest fixtures and test helpers for dslctl tests."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from dslctl.config.settings import DslSettings
from dslctl.domain.cancel import CancellationToken
from dslctl.domains import builtin_domains
from dslctl.infrastructure.store import Store
from dslctl.services.accumulator import AccumulatorService
from dslctl.services.lifecycle import LifecycleService
from dslctl.services.registry import DomainRegistry
from dslctl.services.runtime import Runtime
from dslctl.services.telemetry import _current_span, disable_telemetry


@pytest.fixture(autouse=True)
def _reset_telemetry_state() -> Iterator[None]:
    """Telemetry is a ContextVar; never let one test's setting leak."""
    yield
    disable_telemetry()
    _current_span.set(None)


@pytest.fixture(autouse=True)
def _no_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DSLCTL_CONFIG", raising=False)


@pytest.fixture
def store() -> Iterator[Store]:
    """In-memory store with every table created."""
    s = Store.in_memory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def registry() -> DomainRegistry:
    """Registry holding a fresh instance of every built-in domain."""
    reg = DomainRegistry()
    for domain in builtin_domains():
        reg.register(domain)
    return reg


@pytest.fixture
def accumulator(store: Store) -> AccumulatorService:
    return AccumulatorService(store)


@pytest.fixture
def lifecycle(
    store: Store,
    registry: DomainRegistry,
    accumulator: AccumulatorService,
) -> LifecycleService:
    return LifecycleService(store, registry, accumulator)


@pytest.fixture
def runtime() -> Iterator[Runtime]:
    """Fully wired runtime with synchronous events and no background sweeps."""
    settings = DslSettings(events={"sync": True})
    rt = Runtime(settings)
    try:
        yield rt
    finally:
        rt.shutdown()


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class CancelAfter(CancellationToken):
    """Token that turns cancelled once it has been checked *checks* times."""

    def __init__(self, checks: int) -> None:
        super().__init__()
        self._remaining = checks

    def raise_if_cancelled(self, operation: str) -> None:
        if self._remaining <= 0:
            self.cancel()
        self._remaining -= 1
        super().raise_if_cancelled(operation)


def investor_fragment(**overrides: Any) -> str:
    """A valid ``investor.start-opportunity`` fragment."""
    legal_name = overrides.get("legal_name", "Acme Capital LP")
    kind = overrides.get("type", "CORPORATE")
    return f'(investor.start-opportunity :legal-name "{legal_name}" :type {kind})'
