"""Service layer — accumulator, lifecycle, registry, router, orchestrator.

Services compose the domain and infrastructure layers. Operations that
change persisted state return :class:`~dslctl.services.result.ServiceResult`;
the registry and router raise :class:`~dslctl.domain.errors.DslError`
subclasses directly.
"""
