"""Tests for DomainRegistry — registration, lookups and the health sweep."""

from __future__ import annotations

import threading
import time

import pytest

from dslctl.domain.errors import RegistryError
from dslctl.domain.vocabulary import VocabularyBuilder, moves
from dslctl.domains import builtin_domains
from dslctl.domains.kyc import KycDomain
from dslctl.services.registry import DomainRegistry


class NamelessKyc(KycDomain):
    NAME = ""


class BrokenKyc(KycDomain):
    NAME = "broken"

    def build_vocabulary(self):  # type: ignore[no-untyped-def]
        v = VocabularyBuilder("broken", "1.0.0")
        v.verb("broken.fly", "c", "Nowhere", transition=moves("MOON", "INITIATED"))
        return v.build(())


class ExplodingKyc(KycDomain):
    def health_check(self) -> bool:
        msg = "probe timed out"
        raise RuntimeError(msg)


def _wait_for(predicate, timeout: float = 5.0) -> bool:  # type: ignore[no-untyped-def]
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# ── registration ─────────────────────────────────────────────────────


class TestRegister:
    def test_builtins_in_order(self, registry: DomainRegistry) -> None:
        assert registry.names()[:4] == ["onboarding", "kyc", "ubo", "hedge-fund-investor"]
        assert len(registry) == 11
        assert "kyc" in registry
        assert "astrology" not in registry

    def test_duplicate_rejected(self, registry: DomainRegistry) -> None:
        with pytest.raises(RegistryError) as exc_info:
            registry.register(KycDomain())
        assert exc_info.value.reason == "duplicate_domain"
        assert len(registry) == 11

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(RegistryError) as exc_info:
            DomainRegistry().register(NamelessKyc())
        assert exc_info.value.reason == "invalid_name"

    def test_inconsistent_vocabulary_rejected(self) -> None:
        registry = DomainRegistry()
        with pytest.raises(RegistryError) as exc_info:
            registry.register(BrokenKyc())
        assert exc_info.value.reason == "invalid_vocabulary"
        problems = exc_info.value.detail["problems"]
        assert "verb 'broken.fly' targets undeclared state 'MOON'" in problems
        assert "broken" not in registry

    def test_unregister(self, registry: DomainRegistry) -> None:
        registry.unregister("kyc")
        assert registry.get("kyc") is None
        assert registry.find_domains_by_verb("kyc.open") == []
        assert "kyc" not in registry.health().domains
        with pytest.raises(RegistryError) as exc_info:
            registry.unregister("kyc")
        assert exc_info.value.reason == "unknown_domain"


# ── lookups ──────────────────────────────────────────────────────────


class TestLookups:
    def test_get_and_require(self, registry: DomainRegistry) -> None:
        domain = registry.get("kyc")
        assert domain is not None
        assert registry.require("kyc") is domain
        assert registry.get("astrology") is None
        with pytest.raises(RegistryError) as exc_info:
            registry.require("astrology")
        assert exc_info.value.reason == "unknown_domain"
        assert exc_info.value.detail["domain"] == "astrology"

    def test_list_domains_returns_copy(self, registry: DomainRegistry) -> None:
        listed = registry.list_domains()
        listed.clear()
        assert len(registry.list_domains()) == 11

    def test_find_by_verb(self, registry: DomainRegistry) -> None:
        assert registry.find_domains_by_verb("kyc.open") == ["kyc"]
        assert registry.find_domains_by_verb("custody.request") == ["custody"]
        assert registry.find_domains_by_verb("nothing.here") == []

    def test_find_by_category(self, registry: DomainRegistry) -> None:
        assert registry.find_domains_by_category("discovery") == ["onboarding", "ubo"]
        assert registry.find_domains_by_category("case") == ["onboarding", "kyc"]
        assert registry.find_domains_by_category("astrology") == []

    def test_metrics_keyed_by_name(self, registry: DomainRegistry) -> None:
        metrics = registry.metrics()
        assert list(metrics) == registry.names()
        assert metrics["kyc"].total_requests == 0

    def test_concurrent_reads_during_registration(self) -> None:
        registry = DomainRegistry()
        domains = builtin_domains()
        errors: list[Exception] = []
        done = threading.Event()

        def reader() -> None:
            while not done.is_set():
                try:
                    names = registry.names()
                    assert names == [d.name for d in registry.list_domains()][: len(names)]
                except Exception as exc:  # noqa: BLE001
                    errors.append(exc)
                    return

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for domain in domains:
            registry.register(domain)
        done.set()
        for t in threads:
            t.join(timeout=10)
        assert errors == []
        assert len(registry) == len(domains)


# ── health ───────────────────────────────────────────────────────────


class TestHealth:
    def test_starts_healthy(self, registry: DomainRegistry) -> None:
        health = registry.health()
        assert health.healthy
        assert health.sweeps == 0
        assert set(health.domains) == set(registry.names())

    def test_check_health_records_unhealthy_domain(self, registry: DomainRegistry) -> None:
        kyc = registry.require("kyc")
        kyc.set_healthy(False)  # type: ignore[attr-defined]
        health = registry.check_health()
        assert not health.healthy
        assert not registry.healthy
        assert health.domains["kyc"] is False
        assert health.domains["ubo"] is True
        assert health.sweeps == 1

        kyc.set_healthy(True)  # type: ignore[attr-defined]
        assert registry.check_health().healthy

    def test_raising_health_check_counts_as_unhealthy(self) -> None:
        registry = DomainRegistry()
        registry.register(ExplodingKyc())
        assert registry.check_health().domains == {"kyc": False}

    def test_background_sweep(self, registry: DomainRegistry) -> None:
        sweeping = DomainRegistry(health_interval=0.01)
        for domain in registry.list_domains():
            sweeping.register(domain)
        sweeping.start()
        try:
            assert sweeping.sweeping
            assert _wait_for(lambda: sweeping.health().sweeps >= 2)
        finally:
            sweeping.shutdown()
        assert not sweeping.sweeping

    def test_shutdown_is_final(self) -> None:
        registry = DomainRegistry(health_interval=0.01)
        registry.shutdown()
        registry.shutdown()
        with pytest.raises(RegistryError) as exc_info:
            registry.start()
        assert exc_info.value.reason == "shut_down"
