"""Attribute dictionary — resolves ``@attr{uuid}`` references.

The authoritative dictionary lives outside the engine; anything with a
``resolve(attribute_id)`` method can stand in for it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from dslctl.domain.vocabulary import ArgumentType


@dataclass(frozen=True)
class AttributeDefinition:
    """One entry of the attribute dictionary."""

    attribute_id: str
    name: str
    value_type: ArgumentType = ArgumentType.STRING
    description: str = ""


class StaticAttributeDictionary:
    """In-memory attribute dictionary."""

    def __init__(self, definitions: Iterable[AttributeDefinition] = ()) -> None:
        self._by_id: dict[str, AttributeDefinition] = {}
        for definition in definitions:
            self.add(definition)

    def add(self, definition: AttributeDefinition) -> None:
        self._by_id[definition.attribute_id.lower()] = definition

    def resolve(self, attribute_id: str) -> AttributeDefinition | None:
        return self._by_id.get(attribute_id.lower())

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, attribute_id: object) -> bool:
        return isinstance(attribute_id, str) and attribute_id.lower() in self._by_id
