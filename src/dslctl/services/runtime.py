"""Runtime — one wired set of components built from :class:`DslSettings`.

Wiring order: Store -> PluginManager -> EventBus (sharing the store's
write lock) -> domains (plugin-first candidate source) -> DomainRegistry
-> AccumulatorService / LifecycleService -> Router -> Orchestrator.

``start()`` launches the registry health sweep and the session eviction
sweep; ``shutdown()`` stops both, drains the event bus and closes the
store. Both are idempotent, and the runtime is a context manager::

    with Runtime(DslSettings.load()) as rt:
        session = rt.orchestrator.create_session("CORPORATE", ["CUSTODY"], "GB")
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from types import TracebackType
from typing import TYPE_CHECKING

from dslctl.config.settings import DslSettings
from dslctl.domains import BaseDomain, builtin_domains
from dslctl.infrastructure.store import Store
from dslctl.plugins.builtins.audit import AuditLogPlugin
from dslctl.plugins.event_bus import EventBus
from dslctl.plugins.generator import PluginCandidateSource
from dslctl.plugins.manager import PluginManager
from dslctl.services.accumulator import AccumulatorService
from dslctl.services.lifecycle import LifecycleService
from dslctl.services.orchestrator import Orchestrator
from dslctl.services.registry import DomainRegistry
from dslctl.services.router import Router
from dslctl.services.telemetry import enable_telemetry

if TYPE_CHECKING:
    from dslctl.domain.vocabulary import AttributeResolver
    from dslctl.domains.base import Domain

logger = logging.getLogger(__name__)


class Runtime:
    """Owns every long-lived component and their shutdown order.

    Args:
        settings: Loaded settings; defaults (in-memory store) when omitted.
        domains: Domains to register instead of the built-in set.
        plugins: Plugin instances registered before discovery.
        attributes: Attribute dictionary for ``@attr{uuid}`` arguments.
    """

    def __init__(
        self,
        settings: DslSettings | None = None,
        *,
        domains: Iterable[Domain] | None = None,
        plugins: Iterable[object] = (),
        attributes: AttributeResolver | None = None,
    ) -> None:
        self.settings = settings or DslSettings()
        cfg = self.settings
        if cfg.verbose:
            enable_telemetry()

        self.store = Store(cfg.store.path)

        self.plugin_manager = PluginManager()
        self.audit: AuditLogPlugin | None = None
        if cfg.plugins.audit:
            self.audit = AuditLogPlugin()
            self.plugin_manager.register_plugin(self.audit, name="dslctl-audit")
        for plugin in plugins:
            self.plugin_manager.register_plugin(plugin)
        self.plugin_manager.discover_and_load(local_dir=cfg.plugins.local_dir)

        self.event_bus = EventBus(
            self.store.engine,
            self.plugin_manager,
            sync=cfg.events.sync,
            max_retries=cfg.events.max_retries,
            max_workers=cfg.events.max_workers,
            write_lock=self.store.write_lock,
        )

        self.registry = DomainRegistry(health_interval=cfg.registry.health_interval)
        for domain in builtin_domains() if domains is None else domains:
            if isinstance(domain, BaseDomain):
                domain.use_generator(PluginCandidateSource(self.plugin_manager, domain.generator))
                if attributes is not None:
                    domain.use_attributes(attributes)
            self.registry.register(domain)

        self.accumulator = AccumulatorService(self.store, self.event_bus)
        self.lifecycle = LifecycleService(
            self.store, self.registry, self.accumulator, self.event_bus
        )
        self.router = Router(
            self.registry,
            default_domain=cfg.router.default_domain,
            aliases=cfg.router.aliases,
            event_bus=self.event_bus,
        )
        self.orchestrator = Orchestrator(
            self.store,
            self.registry,
            self.router,
            self.accumulator,
            event_bus=self.event_bus,
            max_sessions=cfg.orchestrator.max_sessions,
            session_timeout=cfg.orchestrator.session_timeout,
            eviction_interval=cfg.orchestrator.eviction_interval,
        )

        self._lock = threading.Lock()
        self._closed = False
        logger.debug(
            "Runtime ready: %d domains, plugins %s",
            len(self.registry),
            self.plugin_manager.list_plugin_names(),
        )

    def start(self) -> Runtime:
        """Start the background sweeps."""
        self.registry.start()
        self.orchestrator.start()
        return self

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self) -> None:
        """Stop sweeps, flush events, close the store. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.orchestrator.shutdown()
        self.registry.shutdown()
        self.event_bus.shutdown()
        self.store.close()
        logger.debug("Runtime shut down")

    def __enter__(self) -> Runtime:
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()
