"""Accumulated DSL documents — immutable, versioned fragments."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class DslVersion:
    """One accepted fragment. Version *k* is the k-th fragment for ``dsl_id``."""

    dsl_id: str
    version: int
    fragment: str
    created: str

    def to_dict(self) -> dict[str, object]:
        return {
            "dsl_id": self.dsl_id,
            "version": self.version,
            "fragment": self.fragment,
            "created": self.created,
        }


def join_fragments(fragments: Iterable[str]) -> str:
    """The document text: fragments in version order, one per line."""
    return "\n".join(fragments)


def document_at(versions: Iterable[DslVersion], version: int) -> str:
    """Reconstruct the document as it stood after *version*."""
    return join_fragments(v.fragment for v in versions if v.version <= version)
