"""Verb vocabulary — declarative verb/argument schemas and pure validation.

A :class:`Vocabulary` is the closed set of verbs a domain understands.
Validation never stops at the first problem: every violation is collected
and the whole invocation is rejected with one :class:`ValidationError`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any, Protocol
from uuid import UUID

from dslctl.domain.errors import ValidationError, Violation


class ArgumentType(StrEnum):
    """Value types an argument may declare."""

    STRING = "string"
    UUID = "uuid"
    DECIMAL = "decimal"
    DATE = "date"
    ENUM = "enum"
    BOOLEAN = "boolean"


_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ---------------------------------------------------------------------------
# Schema types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArgumentSpec:
    """Schema for one verb argument.

    ``hint`` replaces the generated rule text in violation messages
    (e.g. ``"must be 3 letters"`` instead of the raw pattern).
    """

    name: str
    type: ArgumentType
    required: bool = False
    description: str = ""
    pattern: str | None = None
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    min_exclusive: bool = False
    max_exclusive: bool = False
    min_length: int | None = None
    max_length: int | None = None
    enum_values: tuple[str, ...] = ()
    default: Any = None
    hint: str | None = None


@dataclass(frozen=True)
class StateTransition:
    """The state change a verb implies.

    An empty ``from_states`` marks an initial verb: it applies to an
    entity that has no state yet.
    """

    to_state: str
    from_states: frozenset[str] = frozenset()

    @property
    def is_initial(self) -> bool:
        return not self.from_states


@dataclass(frozen=True)
class VerbDefinition:
    """A namespaced verb (``kyc.begin``) and its argument contract."""

    name: str
    category: str
    description: str = ""
    arguments: tuple[ArgumentSpec, ...] = ()
    transition: StateTransition | None = None
    guards: tuple[str, ...] = ()
    idempotent: bool = False
    one_of: tuple[tuple[str, ...], ...] = ()
    accepts_attributes: bool = False
    produces: tuple[str, ...] = ()
    examples: tuple[str, ...] = ()

    @property
    def namespace(self) -> str:
        return self.name.split(".", 1)[0]

    def argument(self, name: str) -> ArgumentSpec | None:
        return next((a for a in self.arguments if a.name == name), None)


@dataclass(frozen=True)
class VerbCategory:
    """A named group of verbs (``kyc``, ``subscription``)."""

    name: str
    description: str
    verbs: tuple[str, ...]


@dataclass(frozen=True)
class Vocabulary:
    """All verbs, categories, and states of one domain."""

    domain: str
    version: str
    verbs: tuple[VerbDefinition, ...]
    categories: tuple[VerbCategory, ...] = ()
    states: tuple[str, ...] = ()
    description: str = ""

    def get(self, name: str) -> VerbDefinition | None:
        """Look up a verb by name."""
        return next((v for v in self.verbs if v.name == name), None)

    def verb_names(self) -> list[str]:
        return [v.name for v in self.verbs]

    def category(self, name: str) -> VerbCategory | None:
        return next((c for c in self.categories if c.name == name), None)

    def integrity_errors(self) -> list[str]:
        """Structural problems: duplicate verbs, categories naming unknown verbs."""
        errors: list[str] = []
        seen: set[str] = set()
        for verb in self.verbs:
            if verb.name in seen:
                errors.append(f"duplicate verb {verb.name!r}")
            seen.add(verb.name)
        for cat in self.categories:
            errors.extend(
                f"category {cat.name!r} references undefined verb {name!r}"
                for name in cat.verbs
                if name not in seen
            )
        return errors


# ---------------------------------------------------------------------------
# Attribute dictionary
# ---------------------------------------------------------------------------


class AttributeResolver(Protocol):
    """Anything that can answer whether an attribute UUID is defined."""

    def resolve(self, attribute_id: str) -> Any | None: ...


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _range_rule(spec: ArgumentSpec, value: Decimal) -> str | None:
    if spec.min_value is not None:
        if spec.min_exclusive and value <= spec.min_value:
            return f"must be > {spec.min_value}"
        if not spec.min_exclusive and value < spec.min_value:
            return f"must be >= {spec.min_value}"
    if spec.max_value is not None:
        if spec.max_exclusive and value >= spec.max_value:
            return f"must be < {spec.max_value}"
        if not spec.max_exclusive and value > spec.max_value:
            return f"must be <= {spec.max_value}"
    return None


def _check_value(spec: ArgumentSpec, value: Any) -> tuple[Any, str | None]:
    """Coerce *value* to the declared type. Returns (normalized, rule_broken)."""
    if spec.type == ArgumentType.STRING:
        if not isinstance(value, str):
            return value, "expected string"
        if spec.min_length is not None and len(value) < spec.min_length:
            return value, f"length must be >= {spec.min_length}"
        if spec.max_length is not None and len(value) > spec.max_length:
            return value, f"length must be <= {spec.max_length}"
        if spec.pattern is not None and re.fullmatch(spec.pattern, value) is None:
            return value, f"must match {spec.pattern}"
        return str(value), None

    if spec.type == ArgumentType.UUID:
        if isinstance(value, UUID):
            return str(value), None
        if not isinstance(value, str):
            return value, "expected uuid"
        try:
            return str(UUID(value)), None
        except ValueError:
            return value, "expected uuid"

    if spec.type == ArgumentType.DECIMAL:
        if isinstance(value, bool) or not isinstance(value, Decimal | int | float):
            return value, "expected decimal"
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation:
            return value, "expected decimal"
        if not number.is_finite():
            return value, "expected finite decimal"
        return number, _range_rule(spec, number)

    if spec.type == ArgumentType.DATE:
        if isinstance(value, date):
            return value, None
        if isinstance(value, str) and _DATE_RE.match(value):
            try:
                return date.fromisoformat(value), None
            except ValueError:
                pass
        return value, "unparsable date (expected YYYY-MM-DD)"

    if spec.type == ArgumentType.ENUM:
        if isinstance(value, bool) or str(value) not in spec.enum_values:
            return value, "must be one of " + ", ".join(spec.enum_values)
        return str(value), None

    # BOOLEAN
    if not isinstance(value, bool):
        return value, "expected boolean"
    return value, None


def validate_arguments(
    verb: VerbDefinition,
    arguments: Mapping[str, Any],
    *,
    attributes: Mapping[str, Any] | None = None,
    resolver: AttributeResolver | None = None,
) -> dict[str, Any]:
    """Validate *arguments* against *verb*; return them normalized with defaults.

    Raises:
        ValidationError: listing every violation found.
    """
    violations: list[Violation] = []
    normalized: dict[str, Any] = {}
    declared = {a.name for a in verb.arguments}

    for spec in verb.arguments:
        if spec.name not in arguments or arguments[spec.name] is None:
            if spec.required:
                violations.append(
                    Violation(
                        field=spec.name,
                        reason="missing_argument",
                        message=f"missing required argument {spec.name}",
                    )
                )
            elif spec.default is not None:
                normalized[spec.name] = spec.default
            continue

        value, broken = _check_value(spec, arguments[spec.name])
        if broken is not None:
            rule = spec.hint or broken
            violations.append(
                Violation(
                    field=spec.name,
                    reason="constraint_violation",
                    message=f"constraint violation {spec.name}: {rule}",
                )
            )
        normalized[spec.name] = value

    violations.extend(
        Violation(field=name, reason="unknown_argument", message=f"unknown argument {name}")
        for name in arguments
        if name not in declared
    )

    for group in verb.one_of:
        if not any(arguments.get(name) is not None for name in group):
            joined = " or ".join(group)
            violations.append(
                Violation(
                    field=joined,
                    reason="missing_argument",
                    message=f"missing required argument {joined}",
                )
            )

    if attributes:
        if not verb.accepts_attributes:
            violations.append(
                Violation(
                    field="@attr",
                    reason="unknown_argument",
                    message=f"{verb.name} does not accept attribute arguments",
                )
            )
        else:
            for attr_id, value in attributes.items():
                definition = resolver.resolve(attr_id) if resolver is not None else None
                if definition is None:
                    violations.append(
                        Violation(
                            field=attr_id,
                            reason="unresolved_attribute",
                            message=f"unresolved attribute {attr_id}",
                        )
                    )
                    continue
                value_type = getattr(definition, "value_type", ArgumentType.STRING)
                _, broken = _check_value(ArgumentSpec(name=attr_id, type=value_type), value)
                if broken is not None:
                    violations.append(
                        Violation(
                            field=attr_id,
                            reason="constraint_violation",
                            message=f"constraint violation {attr_id}: {broken}",
                        )
                    )

    if violations:
        raise ValidationError.from_violations(verb.name, violations)
    return normalized


def validate_invocation(
    vocabulary: Vocabulary,
    verb_name: str,
    arguments: Mapping[str, Any],
    *,
    attributes: Mapping[str, Any] | None = None,
    resolver: AttributeResolver | None = None,
) -> tuple[VerbDefinition, dict[str, Any]]:
    """Look up *verb_name* and validate its arguments in one step."""
    verb = vocabulary.get(verb_name)
    if verb is None:
        raise ValidationError(
            f"unknown verb {verb_name}",
            reason="unknown_verb",
            violations=[Violation(field=verb_name, reason="unknown_verb", message="unknown verb")],
            verb=verb_name,
            domain=vocabulary.domain,
        )
    normalized = validate_arguments(verb, arguments, attributes=attributes, resolver=resolver)
    return verb, normalized


# ---------------------------------------------------------------------------
# Declaration helpers for concrete vocabularies
# ---------------------------------------------------------------------------


def arg(name: str, type_: ArgumentType | str, **kwargs: Any) -> ArgumentSpec:
    """Shorthand constructor used by domain vocabularies."""
    for key in ("min_value", "max_value"):
        if kwargs.get(key) is not None and not isinstance(kwargs[key], Decimal):
            kwargs[key] = Decimal(str(kwargs[key]))
    if "enum_values" in kwargs:
        kwargs["enum_values"] = tuple(kwargs["enum_values"])
    return ArgumentSpec(name=name, type=ArgumentType(type_), **kwargs)


def moves(to_state: str, *from_states: str) -> StateTransition:
    """Shorthand for a :class:`StateTransition`."""
    return StateTransition(to_state=to_state, from_states=frozenset(from_states))


class VocabularyBuilder:
    """Collects verbs and derives categories in declaration order."""

    def __init__(self, domain: str, version: str, description: str = "") -> None:
        self.domain = domain
        self.version = version
        self.description = description
        self._verbs: list[VerbDefinition] = []
        self._category_docs: dict[str, str] = {}

    def category(self, name: str, description: str) -> None:
        self._category_docs[name] = description

    def verb(
        self,
        name: str,
        category: str,
        description: str,
        *args: ArgumentSpec,
        **kw: Any,
    ) -> None:
        self._verbs.append(
            VerbDefinition(
                name=name,
                category=category,
                description=description,
                arguments=args,
                **kw,
            )
        )

    def build(self, states: tuple[str, ...]) -> Vocabulary:
        grouped: dict[str, list[str]] = {name: [] for name in self._category_docs}
        for verb in self._verbs:
            grouped.setdefault(verb.category, []).append(verb.name)
        categories = tuple(
            VerbCategory(
                name=name,
                description=self._category_docs.get(name, ""),
                verbs=tuple(names),
            )
            for name, names in grouped.items()
        )
        return Vocabulary(
            domain=self.domain,
            version=self.version,
            verbs=tuple(self._verbs),
            categories=categories,
            states=states,
            description=self.description,
        )
