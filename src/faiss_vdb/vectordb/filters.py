"""Filter expressions over record metadata.

Grammar::

    expr      := and_expr (("or" | "||") and_expr)*
    and_expr  := not_expr (("and" | "&&") not_expr)*
    not_expr  := ("not" | "!") not_expr | "(" expr ")" | predicate
    predicate := FIELD cmp literal
               | FIELD ["not"] "in" "[" [literal ("," literal)*] "]"
               | FIELD ["not"] "like" STRING
               | "exists" FIELD
    cmp       := "==" | "!=" | "<" | "<=" | ">" | ">="
    literal   := STRING | NUMBER | "true" | "false"

``id`` names the record identifier. A predicate on a field missing from the
metadata is false, and so is a comparison between incompatible types.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from faiss_vdb.errors import InvalidFilterSyntax

if TYPE_CHECKING:
    from collections.abc import Mapping

    from faiss_vdb.vectordb.codec import MetadataValue

ID_FIELD = "id"
MAX_DEPTH = 100

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<number>[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
    |(?P<op>==|!=|<=|>=|&&|\|\||<|>|!)
    |(?P<punct>[()\[\],])
    |(?P<name>[A-Za-z_][A-Za-z0-9_.]*)
    """,
    re.VERBOSE,
)
_ESCAPE_PATTERN = re.compile(r"\\(.)")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}
_KEYWORDS = {"and", "or", "not", "in", "like", "exists", "true", "false"}
_COMPARATORS = {"==", "!=", "<", "<=", ">", ">="}

_MISSING = object()


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int
    value: Any = None


class Node(ABC):
    """Base class of filter expression nodes."""

    @abstractmethod
    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        """Return ``True`` when the record satisfies this node."""


@dataclass(frozen=True)
class MatchAll(Node):
    """Expression matching every record."""

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        return True


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        return self.left.evaluate(record_id, metadata) and self.right.evaluate(record_id, metadata)


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        return self.left.evaluate(record_id, metadata) or self.right.evaluate(record_id, metadata)


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        return not self.operand.evaluate(record_id, metadata)


def _lookup(field: str, record_id: str, metadata: Mapping[str, MetadataValue]) -> Any:
    if field == ID_FIELD:
        return record_id
    return metadata.get(field, _MISSING)


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int | float):
        return "number"
    return "string"


@dataclass(frozen=True)
class Compare(Node):
    field: str
    op: str
    value: MetadataValue

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        actual = _lookup(self.field, record_id, metadata)
        if actual is _MISSING or _kind(actual) != _kind(self.value):
            return False
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if isinstance(actual, bool):
            return False
        if self.op == "<":
            return actual < self.value
        if self.op == "<=":
            return actual <= self.value
        if self.op == ">":
            return actual > self.value
        return actual >= self.value


@dataclass(frozen=True)
class Membership(Node):
    field: str
    values: tuple[MetadataValue, ...]
    negated: bool = False

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        actual = _lookup(self.field, record_id, metadata)
        if actual is _MISSING:
            return False
        kind = _kind(actual)
        found = any(_kind(value) == kind and value == actual for value in self.values)
        return found != self.negated


@dataclass(frozen=True)
class Like(Node):
    field: str
    pattern: re.Pattern[str]
    negated: bool = False

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        actual = _lookup(self.field, record_id, metadata)
        if not isinstance(actual, str):
            return False
        return (self.pattern.fullmatch(actual) is not None) != self.negated


@dataclass(frozen=True)
class Exists(Node):
    field: str

    def evaluate(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        return _lookup(self.field, record_id, metadata) is not _MISSING


def _like_pattern(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


def _unescape(body: str) -> str:
    return _ESCAPE_PATTERN.sub(lambda match: _ESCAPES.get(match.group(1), match.group(1)), body)


def format_literal(value: MetadataValue) -> str:
    """Render ``value`` as a filter literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return repr(value)
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\n", "\\n").replace("\t", "\\t").replace("\r", "\\r")
    return f'"{escaped}"'


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_PATTERN.match(expression, position)
        if match is None:
            message = f"unexpected character {expression[position]!r}"
            raise InvalidFilterSyntax(message, expression, position)
        kind = match.lastgroup or ""
        text = match.group(0)
        if kind == "string":
            tokens.append(_Token("literal", text, position, _unescape(text[1:-1])))
        elif kind == "number":
            value: int | float = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(_Token("literal", text, position, value))
        elif kind == "name" and text.lower() in {"true", "false"}:
            tokens.append(_Token("literal", text, position, text.lower() == "true"))
        elif kind == "name" and text.lower() in _KEYWORDS:
            tokens.append(_Token("keyword", text.lower(), position))
        elif kind != "ws":
            tokens.append(_Token(kind, text, position))
        position = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing a :class:`Node` tree."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._index = 0
        self._depth = 0

    def parse(self) -> Node:
        if not self._tokens:
            return MatchAll()
        node = self._or()
        if self._index < len(self._tokens):
            self._fail("unexpected token", self._tokens[self._index])
        return node

    def _peek(self) -> _Token | None:
        return self._tokens[self._index] if self._index < len(self._tokens) else None

    def _advance(self) -> _Token:
        token = self._peek()
        if token is None:
            self._fail("unexpected end of expression", None)
        self._index += 1
        return token

    def _accept(self, *texts: str) -> bool:
        token = self._peek()
        if token is not None and token.kind in {"keyword", "op", "punct"} and token.text in texts:
            self._index += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            self._fail(f"expected {text!r}", self._peek())

    def _fail(self, message: str, token: _Token | None) -> Any:
        position = token.position if token is not None else len(self._expression)
        raise InvalidFilterSyntax(message, self._expression, position)

    def _or(self) -> Node:
        node = self._and()
        while self._accept("or", "||"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._accept("and", "&&"):
            node = And(node, self._not())
        return node

    def _not(self) -> Node:
        token = self._peek()
        if self._accept("not", "!"):
            self._enter(token)
            node: Node = Not(self._not())
            self._depth -= 1
            return node
        if self._accept("("):
            self._enter(token)
            node = self._or()
            self._expect(")")
            self._depth -= 1
            return node
        if self._accept("exists"):
            return Exists(self._field())
        return self._predicate()

    def _enter(self, token: _Token | None) -> None:
        self._depth += 1
        if self._depth > MAX_DEPTH:
            self._fail(f"expression nested deeper than {MAX_DEPTH} levels", token)

    def _field(self) -> str:
        token = self._advance()
        if token.kind != "name":
            self._fail("expected a field name", token)
        return token.text

    def _literal(self) -> MetadataValue:
        token = self._advance()
        if token.kind != "literal":
            self._fail("expected a literal value", token)
        return token.value

    def _predicate(self) -> Node:
        field = self._field()
        negated = self._accept("not")
        if self._accept("in"):
            return Membership(field, self._list(), negated)
        if self._accept("like"):
            token = self._advance()
            if token.kind != "literal" or not isinstance(token.value, str):
                self._fail("like expects a string pattern", token)
            return Like(field, _like_pattern(token.value), negated)
        if negated:
            self._fail("expected 'in' or 'like' after 'not'", self._peek())
        token = self._advance()
        if token.kind != "op" or token.text not in _COMPARATORS:
            self._fail("expected a comparison operator", token)
        return Compare(field, token.text, self._literal())

    def _list(self) -> tuple[MetadataValue, ...]:
        self._expect("[")
        values: list[MetadataValue] = []
        if self._accept("]"):
            return ()
        values.append(self._literal())
        while self._accept(","):
            values.append(self._literal())
        self._expect("]")
        return tuple(values)


@dataclass(frozen=True)
class FilterExpression:
    """Parsed filter that can be evaluated against records."""

    source: str
    root: Node

    def matches(self, record_id: str, metadata: Mapping[str, MetadataValue]) -> bool:
        """Return ``True`` if the record satisfies the expression."""
        return self.root.evaluate(record_id, metadata)

    __call__ = matches

    @property
    def matches_all(self) -> bool:
        return isinstance(self.root, MatchAll)


def parse_filter(expression: str | None) -> FilterExpression:
    """Parse ``expression``, raising :class:`InvalidFilterSyntax` when malformed."""
    source = (expression or "").strip()
    return FilterExpression(source=source, root=_Parser(source).parse())
