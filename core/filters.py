"""
Attribute filter language.

A small CQL-like predicate grammar over literal comparisons:

    predicate  := term (OR term)*
    term       := factor (AND factor)*
    factor     := NOT factor | '(' predicate ')' | INCLUDE | EXCLUDE | comparison
    comparison := field op literal
    op         := = | != | <> | < | <= | > | >= | LIKE

Text is parsed once into an unbound tree, then bound against a Schema. Binding
resolves field names and checks operator/literal types so that a filter which
can never match for type reasons fails before any scan begins.

Functions:
    parse_filter: Filter text -> unbound predicate tree
    bind_filter: Unbound tree + Schema -> BoundFilter
    compile_filter: parse_filter + bind_filter
    evaluate: Apply a BoundFilter to a Feature
"""

import datetime
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

from core.errors import InvalidFilterSyntax, TypeMismatch
from core.schema import Feature, FieldType, Schema

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
      | (?P<op><=|>=|<>|!=|=|<|>)
      | (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
      | (?P<bad>\S)
    )""", re.VERBOSE)

KEYWORDS = {'AND', 'OR', 'NOT', 'LIKE', 'INCLUDE', 'EXCLUDE'}

_ORDERING = {
    '=': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
}
_EQUALITY = {'=', '!='}


@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    position: int


def tokenize(text: str) -> List[Token]:
    tokens = []
    position = 0
    text = text.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        kind = match.lastgroup
        raw = match.group(kind)
        start = match.start(kind)
        position = match.end()

        if kind == 'bad':
            raise InvalidFilterSyntax(f"Unexpected character {raw!r} at position {start}")
        if kind == 'string':
            tokens.append(Token('string', raw[1:-1].replace("''", "'"), start))
        elif kind == 'number':
            value = float(raw) if any(c in raw for c in '.eE') else int(raw)
            tokens.append(Token('number', value, start))
        elif kind == 'op':
            tokens.append(Token('op', '!=' if raw == '<>' else raw, start))
        elif kind == 'word' and raw.upper() in KEYWORDS:
            keyword = raw.upper()
            tokens.append(Token('op' if keyword == 'LIKE' else keyword, keyword, start))
        else:
            tokens.append(Token(kind, raw, start))
    return tokens


# ---------------------------------------------------------------- tree

@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    literal: Any


@dataclass(frozen=True)
class Constant:
    value: bool

    def matches(self, feature: Feature) -> bool:
        return self.value


@dataclass(frozen=True)
class And:
    left: Any
    right: Any

    def matches(self, feature: Feature) -> bool:
        return self.left.matches(feature) and self.right.matches(feature)


@dataclass(frozen=True)
class Or:
    left: Any
    right: Any

    def matches(self, feature: Feature) -> bool:
        return self.left.matches(feature) or self.right.matches(feature)


@dataclass(frozen=True)
class Not:
    operand: Any

    def matches(self, feature: Feature) -> bool:
        return not self.operand.matches(feature)


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise InvalidFilterSyntax(f"Unexpected end of filter: {self.text!r}")
        self.index += 1
        return token

    def parse(self):
        if not self.tokens:
            raise InvalidFilterSyntax("Empty filter")
        node = self.predicate()
        leftover = self.peek()
        if leftover is not None:
            raise InvalidFilterSyntax(
                f"Unexpected {leftover.value!r} at position {leftover.position}")
        return node

    def predicate(self):
        node = self.term()
        while self.peek() is not None and self.peek().kind == 'OR':
            self.advance()
            node = Or(node, self.term())
        return node

    def term(self):
        node = self.factor()
        while self.peek() is not None and self.peek().kind == 'AND':
            self.advance()
            node = And(node, self.factor())
        return node

    def factor(self):
        token = self.advance()
        if token.kind == 'NOT':
            return Not(self.factor())
        if token.kind == 'INCLUDE':
            return Constant(True)
        if token.kind == 'EXCLUDE':
            return Constant(False)
        if token.kind == 'lparen':
            node = self.predicate()
            closing = self.advance()
            if closing.kind != 'rparen':
                raise InvalidFilterSyntax(f"Expected ')' at position {closing.position}")
            return node
        if token.kind == 'word':
            return self.comparison(token)
        raise InvalidFilterSyntax(f"Unexpected {token.value!r} at position {token.position}")

    def comparison(self, field_token: Token) -> Comparison:
        op = self.advance()
        if op.kind != 'op':
            raise InvalidFilterSyntax(
                f"Expected an operator after '{field_token.value}' at position {op.position}")
        literal = self.advance()
        if literal.kind not in ('string', 'number'):
            raise InvalidFilterSyntax(f"Expected a literal at position {literal.position}")
        return Comparison(field_token.value, op.value, literal.value)


def parse_filter(text: str):
    """
    Parse filter text into an unbound predicate tree.

    Raises:
        InvalidFilterSyntax: On malformed input (unbalanced parentheses,
            unknown operators, missing literals, trailing tokens)
    """
    return _Parser(text).parse()


# ---------------------------------------------------------------- binding

def like_to_regex(pattern: str) -> 're.Pattern':
    """Translate a LIKE pattern: % is any sequence, _ is any single character."""
    parts = []
    for char in pattern:
        if char == '%':
            parts.append('.*')
        elif char == '_':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    return re.compile(''.join(parts), re.DOTALL)


@dataclass(frozen=True)
class BoundComparison:
    field: str
    op: str
    value: Any
    test: Callable[[Any, Any], bool]

    def matches(self, feature: Feature) -> bool:
        actual = feature.get(self.field)
        if actual is None:
            return False
        return self.test(actual, self.value)


def _like(actual: Any, pattern: 're.Pattern') -> bool:
    return pattern.fullmatch(str(actual)) is not None


def _numeric(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    return lambda actual, value: compare(float(actual), value)


def _bind_comparison(node: Comparison, schema: Schema) -> BoundComparison:
    field_def = schema.field(node.field)
    if field_def is None:
        raise InvalidFilterSyntax(f"Unknown field '{node.field}' in schema '{schema.type_name}'")

    name, op, literal = field_def.name, node.op, node.literal
    is_string = isinstance(literal, str)

    if field_def.type == FieldType.TEXT:
        if not is_string:
            raise TypeMismatch(f"Text field '{name}' compared with number {literal}")
        if op == 'LIKE':
            return BoundComparison(name, op, like_to_regex(literal), _like)
        if op not in _EQUALITY:
            raise TypeMismatch(f"Operator '{op}' is not defined for Text field '{name}'")
        return BoundComparison(name, op, literal, _ORDERING[op])

    if op == 'LIKE':
        raise TypeMismatch(f"LIKE is not defined for {field_def.type.value} field '{name}'")

    if field_def.type.is_numeric:
        if is_string:
            raise TypeMismatch(f"{field_def.type.value} field '{name}' compared with text {literal!r}")
        return BoundComparison(name, op, float(literal), _numeric(_ORDERING[op]))

    # Date
    if not is_string:
        raise TypeMismatch(f"Date field '{name}' compared with number {literal}")
    try:
        value = datetime.date.fromisoformat(literal)
    except ValueError:
        raise TypeMismatch(f"Date field '{name}' compared with non-date literal {literal!r}")
    return BoundComparison(name, op, value, _ORDERING[op])


def _bind(node, schema: Schema):
    if isinstance(node, Comparison):
        return _bind_comparison(node, schema)
    if isinstance(node, And):
        return And(_bind(node.left, schema), _bind(node.right, schema))
    if isinstance(node, Or):
        return Or(_bind(node.left, schema), _bind(node.right, schema))
    if isinstance(node, Not):
        return Not(_bind(node.operand, schema))
    return node


class BoundFilter:
    """A predicate tree whose fields and literals were checked against a schema."""

    def __init__(self, root, schema: Schema, text: Optional[str] = None):
        self.root = root
        self.schema = schema
        self.text = text

    def evaluate(self, feature: Feature) -> bool:
        return self.root.matches(feature)

    __call__ = evaluate

    def __repr__(self):
        return f"BoundFilter({self.text or self.root!r})"


def bind_filter(node, schema: Schema, text: Optional[str] = None) -> BoundFilter:
    """
    Bind a parsed predicate to a schema.

    Raises:
        InvalidFilterSyntax: If a field name is not in the schema
        TypeMismatch: If an operator or literal does not fit the field type
    """
    return BoundFilter(_bind(node, schema), schema, text)


def compile_filter(text: Union[str, BoundFilter, None], schema: Schema) -> Optional[BoundFilter]:
    """Parse and bind filter text; pass through None and already-bound filters."""
    if text is None or isinstance(text, BoundFilter):
        return text
    return bind_filter(parse_filter(text), schema, text)


def evaluate(predicate: BoundFilter, feature: Feature) -> bool:
    """Evaluate a bound filter against one feature."""
    return predicate.evaluate(feature)


def select(predicate: Optional[BoundFilter], features) -> List[Feature]:
    """Return the features a (possibly absent) filter accepts, in order."""
    if predicate is None:
        return list(features)
    return [feature for feature in features if predicate.evaluate(feature)]
