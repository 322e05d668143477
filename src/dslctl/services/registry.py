"""DomainRegistry — thread-safe name -> Domain map with a health sweep.

Reads (``get``, ``list_domains``, the ``find_*`` lookups) run concurrently under
the read side of an :class:`RWLock`; ``register`` and health updates take
the write side. Lookups return fresh lists, so callers never hold a
reference to the registry's own collections.

The health sweep polls each domain outside the lock and then records the
result under a short write lock, so a slow ``health_check()`` never
blocks readers for more than one domain's update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dslctl.domain.errors import RegistryError
from dslctl.domains.base import Domain, DomainMetrics
from dslctl.infrastructure.locks import RWLock
from dslctl.infrastructure.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_INTERVAL = 30.0


@dataclass(frozen=True)
class RegistryHealth:
    """Snapshot of the latest sweep."""

    healthy: bool
    domains: dict[str, bool]
    sweeps: int


class DomainRegistry:
    """Owns the registered domains and their health status.

    Args:
        health_interval: Seconds between health sweeps once :meth:`start` runs.
    """

    def __init__(self, *, health_interval: float = DEFAULT_HEALTH_INTERVAL) -> None:
        self._lock = RWLock()
        self._domains: dict[str, Domain] = {}
        self._verbs: dict[str, list[str]] = {}
        self._health: dict[str, bool] = {}
        self._sweeps = 0
        self._sweeper = PeriodicTask("dslctl-health-sweep", health_interval, self.check_health)
        self._shut_down = False

    # ── registration ─────────────────────────────────────────────────

    def register(self, domain: Domain) -> None:
        """Add *domain*.

        Raises:
            RegistryError: Empty or duplicate name (``duplicate_domain``), or
                a vocabulary with duplicate verbs, dangling category members,
                or unknown guard names (``invalid_vocabulary``).
        """
        name = domain.name
        if not name:
            raise RegistryError("domain name must not be empty", reason="invalid_name")
        problems = domain.integrity_errors()
        if problems:
            raise RegistryError(
                f"domain {name} rejected: {'; '.join(problems)}",
                reason="invalid_vocabulary",
                domain=name,
                problems=problems,
            )
        verbs = domain.vocabulary().verb_names()
        with self._lock.write():
            if name in self._domains:
                raise RegistryError(
                    f"domain {name} is already registered",
                    reason="duplicate_domain",
                    domain=name,
                )
            self._domains[name] = domain
            self._health[name] = True
            for verb in verbs:
                self._verbs.setdefault(verb, []).append(name)
        logger.info("Registered domain %s (%d verbs)", name, len(verbs))

    def unregister(self, name: str) -> None:
        with self._lock.write():
            if self._domains.pop(name, None) is None:
                raise RegistryError(
                    f"domain {name} is not registered", reason="unknown_domain", domain=name
                )
            self._health.pop(name, None)
            for verb in list(self._verbs):
                owners = [n for n in self._verbs[verb] if n != name]
                if owners:
                    self._verbs[verb] = owners
                else:
                    del self._verbs[verb]

    # ── reads ────────────────────────────────────────────────────────

    def get(self, name: str) -> Domain | None:
        with self._lock.read():
            return self._domains.get(name)

    def require(self, name: str) -> Domain:
        """Like :meth:`get` but raises ``RegistryError(unknown_domain)``."""
        domain = self.get(name)
        if domain is None:
            raise RegistryError(
                f"domain {name} is not registered", reason="unknown_domain", domain=name
            )
        return domain

    def list_domains(self) -> list[Domain]:
        """Registered domains in registration order."""
        with self._lock.read():
            return list(self._domains.values())

    def names(self) -> list[str]:
        with self._lock.read():
            return list(self._domains)

    def __contains__(self, name: object) -> bool:
        with self._lock.read():
            return name in self._domains

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._domains)

    def find_domains_by_verb(self, verb: str) -> list[str]:
        """Names of the domains whose vocabulary defines *verb*."""
        with self._lock.read():
            return list(self._verbs.get(verb, ()))

    def find_domains_by_category(self, category: str) -> list[str]:
        with self._lock.read():
            domains = list(self._domains.values())
        return [d.name for d in domains if d.vocabulary().category(category) is not None]

    def metrics(self) -> dict[str, DomainMetrics]:
        return {d.name: d.metrics() for d in self.list_domains()}

    # ── health ───────────────────────────────────────────────────────

    @property
    def healthy(self) -> bool:
        """True when every registered domain passed its last health check."""
        with self._lock.read():
            return all(self._health.values())

    def health(self) -> RegistryHealth:
        with self._lock.read():
            return RegistryHealth(
                healthy=all(self._health.values()),
                domains=dict(self._health),
                sweeps=self._sweeps,
            )

    def check_health(self) -> RegistryHealth:
        """Poll every domain once and record the results."""
        for domain in self.list_domains():
            try:
                ok = bool(domain.health_check())
            except Exception as exc:
                logger.warning("Health check for %s raised: %s", domain.name, exc)
                ok = False
            with self._lock.write():
                if domain.name not in self._health:
                    # Unregistered mid-sweep.
                    continue
                if self._health[domain.name] != ok:
                    logger.info(
                        "Domain %s is now %s", domain.name, "healthy" if ok else "unhealthy"
                    )
                self._health[domain.name] = ok
        with self._lock.write():
            self._sweeps += 1
        return self.health()

    # ── lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background health sweep."""
        if self._shut_down:
            raise RegistryError("registry is shut down", reason="shut_down")
        self._sweeper.start()

    @property
    def sweeping(self) -> bool:
        return self._sweeper.running

    def shutdown(self) -> None:
        """Stop the health sweep. Idempotent and safe from any thread."""
        self._shut_down = True
        self._sweeper.stop()
