"""LifecycleService — entities, guarded transitions and DSL application.

An entity's state only changes together with its audit record: the
:class:`LifecycleRecord` insert and the entity update share one Store
transaction, and the update is conditional on the state the transition
was validated against. ``apply`` goes one step further and commits the
accumulated fragment and its ``@attr`` values in the same unit, so the
document, the attribute store and the entity never disagree.

Writes for one entity are serialized by a keyed lock; different entities
proceed independently.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from dslctl.domain.cancel import CancellationToken, check_cancelled
from dslctl.domain.errors import DslError, StateError
from dslctl.domain.grammar import parse_one
from dslctl.domain.lifecycle import Entity, LifecycleRecord
from dslctl.infrastructure.locks import KeyedLock
from dslctl.services._helpers import now_iso
from dslctl.services.base import BaseService
from dslctl.services.result import ServiceResult
from dslctl.services.telemetry import trace_span, traced

if TYPE_CHECKING:
    from dslctl.domains.base import Domain
    from dslctl.infrastructure.store import Store
    from dslctl.plugins.event_bus import EventBus
    from dslctl.services.accumulator import AccumulatorService
    from dslctl.services.registry import DomainRegistry

logger = logging.getLogger(__name__)


def _unknown_entity(entity_id: str) -> StateError:
    return StateError(
        f"entity {entity_id} does not exist", reason="unknown_entity", entity_id=entity_id
    )


class LifecycleService(BaseService):
    """Create entities, move them through their domain's state machine."""

    def __init__(
        self,
        store: Store,
        registry: DomainRegistry,
        accumulator: AccumulatorService,
        event_bus: EventBus | None = None,
    ) -> None:
        super().__init__(store, event_bus)
        self._registry = registry
        self._accumulator = accumulator
        self._entity_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entity(self, entity_id: str) -> Entity | None:
        return self._store.get_entity(entity_id)

    def history(self, entity_id: str) -> list[LifecycleRecord]:
        """Lifecycle records for *entity_id*, oldest first (creation included)."""
        return self._store.get_lifecycle_records(entity_id)

    def valid_transitions(self, entity_id: str) -> list[str]:
        entity = self._require_entity(entity_id)
        if entity.state is None:
            return []
        return self._domain_for(entity).state_machine().valid_transitions(entity.state)

    def path(self, entity_id: str, to_state: str) -> list[str]:
        """Shortest state path from the entity's current state to *to_state*."""
        entity = self._require_entity(entity_id)
        machine = self._domain_for(entity).state_machine()
        return machine.path(entity.state or machine.initial_state, to_state)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @traced
    def create_entity(
        self,
        domain: str,
        entity_type: str,
        *,
        entity_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
        actor: str = "system",
        cancel: CancellationToken | None = None,
    ) -> ServiceResult:
        """Persist a new entity in its domain's initial state.

        The initial :class:`LifecycleRecord` (``from_state=None``) is written
        in the same transaction.
        """
        op = "create_entity"
        warnings: list[str] = []
        try:
            owner = self._registry.require(domain)
            machine = owner.state_machine()
            now = now_iso()
            entity = Entity(
                id=entity_id or str(uuid.uuid4()),
                domain=owner.name,
                entity_type=entity_type,
                state=machine.initial_state,
                attributes=dict(attributes or {}),
                created=now,
                modified=now,
            )
            record = machine.initial_record(entity, trigger="create", actor=actor)
            check_cancelled(cancel, op)
            with self._entity_locks.hold(entity.id), self._store.transaction(op) as txn:
                if txn.get_entity(entity.id) is not None:
                    raise StateError(
                        f"entity {entity.id} already exists",
                        reason="duplicate_entity",
                        entity_id=entity.id,
                    )
                txn.create_entity(entity)
                txn.add_record(record)
                check_cancelled(cancel, op)
        except DslError as exc:
            return ServiceResult.failure(op, exc, warnings)

        owner.record_transition(None, machine.initial_state)
        self._dispatch_event(
            "post_entity_create",
            {
                "entity_id": entity.id,
                "domain": entity.domain,
                "entity_type": entity.entity_type,
                "state": machine.initial_state,
            },
            warnings,
        )
        logger.info("Created %s entity %s in %s", entity.domain, entity.id, entity.state)
        return ServiceResult(
            ok=True,
            op=op,
            data={
                "entity_id": entity.id,
                "domain": entity.domain,
                "entity_type": entity.entity_type,
                "state": entity.state,
                "record": record.to_dict(),
            },
            warnings=warnings,
        )

    @traced
    def transition(
        self,
        entity_id: str,
        to_state: str,
        *,
        context: Mapping[str, Any] | None = None,
        trigger: str = "manual",
        actor: str = "system",
        guards: tuple[str, ...] = (),
        cancel: CancellationToken | None = None,
    ) -> ServiceResult:
        """Validate and commit one state change.

        Every guard on the edge (plus any extra *guards* by name) must pass
        against *context* merged over the entity's attributes. On rejection
        nothing is written.
        """
        op = "transition"
        warnings: list[str] = []
        try:
            check_cancelled(cancel, op)
            with self._entity_locks.hold(entity_id):
                entity = self._require_entity(entity_id)
                domain = self._domain_for(entity)
                guard_context = {**dict(entity.attributes), **dict(context or {})}
                moved, record = domain.state_machine().transition(
                    entity,
                    to_state,
                    trigger=trigger,
                    context=guard_context,
                    actor=actor,
                    extra_guards=guards,
                )
                with self._store.transaction(op) as txn:
                    txn.add_record(record)
                    txn.update_entity(moved, expected_state=entity.state)
                    check_cancelled(cancel, op)
        except DslError as exc:
            logger.debug("transition %s -> %s rejected: %s", entity_id, to_state, exc.message)
            return ServiceResult.failure(op, exc, warnings)

        domain.record_transition(record.from_state, record.to_state)
        self._dispatch_transition(entity, record, warnings)
        return ServiceResult(
            ok=True,
            op=op,
            data={
                "entity_id": entity_id,
                "from_state": record.from_state,
                "to_state": record.to_state,
                "record": record.to_dict(),
            },
            warnings=warnings,
        )

    @traced
    def apply(
        self,
        entity_id: str,
        fragment: str,
        *,
        context: Mapping[str, Any] | None = None,
        actor: str = "system",
        cancel: CancellationToken | None = None,
    ) -> ServiceResult:
        """Parse, validate and commit one DSL fragment against an entity.

        Steps: parse -> vocabulary validation -> state precondition and
        guards -> one transaction appending the fragment (``dsl_id`` is the
        entity id), upserting ``@attr`` values, recording the transition and
        updating the entity. Verbs that stay in the current state append
        without a lifecycle record.
        """
        op = "apply"
        warnings: list[str] = []
        record: LifecycleRecord | None = None
        try:
            check_cancelled(cancel, op)
            with trace_span("validate"):
                form = parse_one(fragment)
            with self._entity_locks.hold(entity_id), self._accumulator.writer(entity_id):
                entity = self._require_entity(entity_id)
                domain = self._domain_for(entity)
                machine = domain.state_machine()
                verb, _normalized = domain.validate(form)
                target = domain.transition_check(verb, entity.state)
                attributes = form.attribute_arguments()
                guard_context = {
                    **dict(entity.attributes),
                    **attributes,
                    **dict(context or {}),
                }

                moved = entity
                if target is not None and target != entity.state:
                    moved, record = machine.transition(
                        entity,
                        target,
                        trigger=verb.name,
                        context=guard_context,
                        actor=actor,
                        extra_guards=verb.guards,
                    )
                else:
                    for name in verb.guards:
                        guard = machine.guard(name)
                        if guard is None:
                            raise StateError(
                                f"unknown guard {name}", reason="guard_unevaluable", guard=name
                            )
                        guard.evaluate(entity, guard_context)

                if attributes:
                    moved = replace(
                        moved,
                        attributes={**dict(moved.attributes), **attributes},
                        modified=now_iso(),
                    )

                with self._store.transaction(op) as txn:
                    version = self._accumulator.append(txn, entity_id, fragment)
                    for attribute_id, value in attributes.items():
                        txn.set_attribute_value(entity_id, attribute_id, value)
                    if record is not None:
                        txn.add_record(record)
                    if moved is not entity:
                        txn.update_entity(moved, expected_state=entity.state)
                    check_cancelled(cancel, op)
        except DslError as exc:
            logger.debug("apply to %s rejected: %s", entity_id, exc.message)
            return ServiceResult.failure(op, exc, warnings)

        self._dispatch_event(
            "post_accumulate",
            {"dsl_id": entity_id, "version": version.version, "fragment": fragment},
            warnings,
        )
        if record is not None:
            domain.record_transition(record.from_state, record.to_state)
            self._dispatch_transition(entity, record, warnings)

        return ServiceResult(
            ok=True,
            op=op,
            data={
                "entity_id": entity_id,
                "dsl_id": entity_id,
                "version": version.version,
                "verb": verb.name,
                "from_state": entity.state,
                "to_state": moved.state,
                "attributes": attributes,
                "record": None if record is None else record.to_dict(),
            },
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_entity(self, entity_id: str) -> Entity:
        entity = self._store.get_entity(entity_id)
        if entity is None:
            raise _unknown_entity(entity_id)
        return entity

    def _domain_for(self, entity: Entity) -> Domain:
        return self._registry.require(entity.domain)

    def _dispatch_transition(
        self,
        entity: Entity,
        record: LifecycleRecord,
        warnings: list[str],
    ) -> None:
        self._dispatch_event(
            "post_transition",
            {
                "entity_id": entity.id,
                "domain": entity.domain,
                "from_state": record.from_state,
                "to_state": record.to_state,
                "trigger": record.trigger,
                "actor": record.actor,
            },
            warnings,
        )
