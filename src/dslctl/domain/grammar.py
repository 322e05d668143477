"""S-expression DSL — tokenizer, typed AST, parser, and renderer.

Grammar::

    document  := form*
    form      := "(" VERB item* ")"
    item      := KEYWORD value | ATTR "=" value | value
    value     := STRING | NUMBER | DATE | BOOL | SYMBOL | form | "[" value* "]"

Strings are double-quoted with backslash escapes, dates are bare
``YYYY-MM-DD``, decimals are bare numerals, and ``@attr{uuid} = value``
stands in for a keyword when the argument is an attribute-dictionary entry.

Regex verb extraction survives only as a recovery path for text that does
not parse (free-form messages, truncated fragments).
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from dslctl.domain.errors import ValidationError, Violation

# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


class Symbol(str):
    """A bare word (enum member, flag) rendered without quotes."""

    __slots__ = ()


@dataclass(frozen=True)
class AttrRef:
    """``@attr{uuid}`` argument key."""

    attribute_id: str


@dataclass(frozen=True)
class Argument:
    """One ``:key value`` or ``@attr{uuid} = value`` pair."""

    key: str | AttrRef
    value: Any

    @property
    def is_attribute(self) -> bool:
        return isinstance(self.key, AttrRef)


@dataclass(frozen=True)
class Form:
    """A parenthesised verb invocation."""

    verb: str
    arguments: tuple[Argument, ...] = ()
    positional: tuple[Any, ...] = field(default=())

    def keyword_arguments(self) -> dict[str, Any]:
        """Keyword arguments in declaration order."""
        return {a.key: a.value for a in self.arguments if isinstance(a.key, str)}

    def attribute_arguments(self) -> dict[str, Any]:
        """Attribute arguments keyed by attribute UUID."""
        return {a.key.attribute_id: a.value for a in self.arguments if isinstance(a.key, AttrRef)}

    def walk(self) -> Iterator[Form]:
        """Yield this form and every nested form, depth first."""
        yield self
        for value in (*self.positional, *(a.value for a in self.arguments)):
            yield from _walk_value(value)


def _walk_value(value: Any) -> Iterator[Form]:
    if isinstance(value, Form):
        yield from value.walk()
    elif isinstance(value, tuple):
        for item in value:
            yield from _walk_value(item)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


_TOKEN_RE = re.compile(
    r"""
    (?P<skip>\s+|;[^\n]*)
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<lbracket>\[)
    |(?P<rbracket>\])
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<attr>@attr\{[^}\s]+\})
    |(?P<equals>=)
    |(?P<keyword>:[A-Za-z][\w.\-]*)
    |(?P<date>\d{4}-\d{2}-\d{2}(?![\w.\-]))
    |(?P<number>[-+]?\d+(?:\.\d+)?(?![\w.\-]))
    |(?P<symbol>[^\s()\[\]";:=@][^\s()\[\]";=]*)
    """,
    re.VERBOSE,
)

_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t"}


def _parse_error(message: str, pos: int) -> ValidationError:
    return ValidationError(
        f"parse error at offset {pos}: {message}",
        reason="parse_error",
        violations=[Violation(field="<dsl>", reason="parse_error", message=message)],
        position=pos,
    )


def tokenize(text: str) -> list[Token]:
    """Split *text* into tokens, dropping whitespace and ``;`` comments."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise _parse_error(f"unexpected character {text[pos]!r}", pos)
        kind = match.lastgroup
        assert kind is not None
        if kind != "skip":
            tokens.append(Token(kind=kind, text=match.group(), pos=pos))
        pos = match.end()
    return tokens


def _unescape(raw: str) -> str:
    out: list[str] = []
    chars = iter(raw[1:-1])
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, tokens: list[Token], text_length: int) -> None:
        self._tokens = tokens
        self._index = 0
        self._end = text_length

    def peek(self) -> Token | None:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def take(self) -> Token:
        token = self.peek()
        if token is None:
            raise _parse_error("unexpected end of input", self._end)
        self._index += 1
        return token

    def document(self) -> list[Form]:
        forms: list[Form] = []
        while (token := self.peek()) is not None:
            if token.kind != "lparen":
                raise _parse_error(f"expected '(' but found {token.text!r}", token.pos)
            forms.append(self.form())
        return forms

    def form(self) -> Form:
        open_tok = self.take()
        head = self.take()
        if head.kind != "symbol":
            raise _parse_error(f"expected verb name but found {head.text!r}", head.pos)

        arguments: list[Argument] = []
        positional: list[Any] = []
        seen: set[str] = set()
        while True:
            token = self.peek()
            if token is None:
                raise _parse_error(f"unclosed form {head.text!r}", open_tok.pos)
            if token.kind == "rparen":
                self.take()
                break
            if token.kind == "keyword":
                self.take()
                name = token.text[1:]
                if name in seen:
                    raise _parse_error(f"duplicate argument :{name}", token.pos)
                seen.add(name)
                arguments.append(Argument(key=name, value=self.value(after=token)))
            elif token.kind == "attr":
                self.take()
                attr_id = token.text[len("@attr{") : -1]
                if attr_id in seen:
                    raise _parse_error(f"duplicate attribute {attr_id}", token.pos)
                seen.add(attr_id)
                eq = self.take()
                if eq.kind != "equals":
                    raise _parse_error(f"expected '=' after {token.text}", eq.pos)
                arguments.append(Argument(key=AttrRef(attr_id), value=self.value(after=eq)))
            else:
                positional.append(self.value(after=token))
        return Form(verb=head.text, arguments=tuple(arguments), positional=tuple(positional))

    def value(self, *, after: Token) -> Any:
        token = self.peek()
        if token is None or token.kind in {"rparen", "rbracket", "keyword", "attr", "equals"}:
            raise _parse_error(f"{after.text} has no value", after.pos)
        if token.kind == "lparen":
            return self.form()
        self.take()
        if token.kind == "lbracket":
            items: list[Any] = []
            while (nxt := self.peek()) is not None and nxt.kind != "rbracket":
                items.append(self.value(after=token))
            if nxt is None:
                raise _parse_error("unclosed '['", token.pos)
            self.take()
            return tuple(items)
        if token.kind == "string":
            return _unescape(token.text)
        if token.kind == "number":
            return Decimal(token.text)
        if token.kind == "date":
            try:
                return date.fromisoformat(token.text)
            except ValueError:
                return Symbol(token.text)
        if token.kind == "symbol":
            if token.text == "true":
                return True
            if token.text == "false":
                return False
            return Symbol(token.text)
        raise _parse_error(f"unexpected token {token.text!r}", token.pos)


def parse(text: str) -> list[Form]:
    """Parse a DSL document into its top-level forms."""
    return _Parser(tokenize(text), len(text)).document()


def parse_one(text: str) -> Form:
    """Parse a fragment that must contain exactly one top-level form."""
    forms = parse(text)
    if len(forms) != 1:
        raise _parse_error(f"expected exactly one form, found {len(forms)}", 0)
    return forms[0]


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
    )
    return f'"{escaped}"'


def render_value(value: Any) -> str:
    """Render a single argument value as DSL text."""
    if isinstance(value, Form):
        return render(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, int | float):
        return format(Decimal(str(value)), "f")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Symbol):
        return str(value)
    if isinstance(value, UUID):
        return _quote(str(value))
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, tuple | list):
        return "[" + " ".join(render_value(v) for v in value) + "]"
    msg = f"Cannot render value of type {type(value).__name__}"
    raise TypeError(msg)


def render(form: Form) -> str:
    """Render *form* as canonical single-line DSL text."""
    parts = [form.verb]
    parts.extend(render_value(v) for v in form.positional)
    for arg in form.arguments:
        if isinstance(arg.key, AttrRef):
            parts.append(f"@attr{{{arg.key.attribute_id}}} = {render_value(arg.value)}")
        else:
            parts.append(f":{arg.key} {render_value(arg.value)}")
    return "(" + " ".join(parts) + ")"


def build_form(
    verb: str,
    arguments: Mapping[str, Any],
    *,
    attributes: Mapping[str, Any] | None = None,
    positional: Sequence[Any] = (),
) -> Form:
    """Assemble a :class:`Form` from plain mappings (generator output)."""
    args = [Argument(key=k, value=v) for k, v in arguments.items()]
    args.extend(Argument(key=AttrRef(k), value=v) for k, v in (attributes or {}).items())
    return Form(verb=verb, arguments=tuple(args), positional=tuple(positional))


# ---------------------------------------------------------------------------
# Verb extraction
# ---------------------------------------------------------------------------

_VERB_RE = re.compile(r"(?:^|[\s(])([a-z][a-z0-9-]*(?:\.[a-z][a-z0-9-]*)+)(?=[\s()]|$)")


@dataclass(frozen=True)
class VerbExtraction:
    """Verbs found in a text, and whether the parser (not regex) found them."""

    verbs: tuple[str, ...]
    parsed: bool

    def __bool__(self) -> bool:
        return bool(self.verbs)


def extract_verbs(text: str) -> VerbExtraction:
    """Extract namespaced verb names from *text*.

    Parses first; falls back to regex scanning when the text is not a
    well-formed DSL document.
    """
    if not text.strip():
        return VerbExtraction(verbs=(), parsed=True)
    try:
        forms = parse(text)
    except ValidationError:
        found = tuple(dict.fromkeys(_VERB_RE.findall(text)))
        return VerbExtraction(verbs=found, parsed=False)
    verbs = (f.verb for form in forms for f in form.walk() if "." in f.verb)
    return VerbExtraction(verbs=tuple(dict.fromkeys(verbs)), parsed=True)
