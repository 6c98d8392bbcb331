"""Condition expression language for IF nodes.

Expressions are tokenized and parsed into a small AST once, at compile time,
and evaluated against a ``{"steps": ..., "inputs": ...}`` context at runtime.
No dynamic code execution is involved.

Grammar (lowest to highest precedence):

    expr       := or
    or         := and ( "||" and )*
    and        := comparison ( "&&" comparison )*
    comparison := unary ( ("=="|"!="|"==="|"!=="|"<"|"<="|">"|">=") unary )?
    unary      := "!" unary | primary
    primary    := NUMBER | STRING | "true" | "false" | "null" | reference | "(" expr ")"
    reference  := ("steps" | "inputs") ( "." SEGMENT )*

Semantics:
- ``===`` and ``!==`` are aliases of ``==`` and ``!=``.
- Equality is type-strict: booleans never equal numbers, strings never equal numbers.
- Ordering compares two numbers or two strings; any other pairing is false.
- References that do not resolve evaluate to null.
- The final value is coerced with JavaScript-like truthiness.

Examples:
    >>> evaluate("steps.fetch.outputs.status == 200", {"steps": {"fetch": {"outputs": {"status": 200}}}})
    True
    >>> evaluate("inputs.name != 'bob' && !inputs.disabled", {"inputs": {"name": "amy"}})
    True
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from services.engine.exceptions import ValidationError

REFERENCE_ROOTS = ("steps", "inputs")
KEYWORDS = {"true": True, "false": False, "null": None}

_TOKEN_RE = re.compile(r"""
    (?P<WS>\s+)
  | (?P<NUMBER>-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<STRING>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<OP>===|!==|==|!=|<=|>=|&&|\|\||<|>|!)
  | (?P<LPAREN>\()
  | (?P<RPAREN>\))
  | (?P<DOT>\.)
  | (?P<NAME>[A-Za-z_$][A-Za-z0-9_$\-]*)
""", re.VERBOSE)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}

COMPARISON_OPS = frozenset(["==", "!=", "===", "!==", "<", "<=", ">", ">="])


class ExpressionError(ValidationError):
    """Expression could not be tokenized or parsed."""

    def __init__(self, message: str, source: str, position: Optional[int] = None):
        self.source = source
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid expression{where}: {message} in {source!r}")


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ExpressionError(f"unexpected character {source[pos]!r}", source, pos)
        kind = match.lastgroup
        if kind != "WS":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


# =============================================================================
# AST
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def truthy(value: Any) -> bool:
    """JavaScript-like truthiness."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if _is_number(left) or _is_number(right):
        return False
    if type(left) is not type(right):
        return False
    return left == right


def resolve_path(data: Any, path: Tuple[str, ...]) -> Any:
    """Walk dict keys and list indices; anything missing resolves to None."""
    current = data
    for part in path:
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, context: Dict[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class Reference:
    root: str
    path: Tuple[str, ...]

    def evaluate(self, context: Dict[str, Any]) -> Any:
        return resolve_path(context.get(self.root), self.path)

    def __str__(self) -> str:
        return ".".join((self.root,) + self.path)


@dataclass(frozen=True)
class Not:
    operand: Any

    def evaluate(self, context: Dict[str, Any]) -> Any:
        return not truthy(self.operand.evaluate(context))


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any

    def evaluate(self, context: Dict[str, Any]) -> bool:
        left = self.left.evaluate(context)
        right = self.right.evaluate(context)

        if self.op in ("==", "==="):
            return strict_equal(left, right)
        if self.op in ("!=", "!=="):
            return not strict_equal(left, right)

        comparable = (_is_number(left) and _is_number(right)) or (
            isinstance(left, str) and isinstance(right, str))
        if not comparable:
            return False
        if self.op == "<":
            return left < right
        if self.op == "<=":
            return left <= right
        if self.op == ">":
            return left > right
        return left >= right


@dataclass(frozen=True)
class Logical:
    op: str  # "&&" or "||"
    left: Any
    right: Any

    def evaluate(self, context: Dict[str, Any]) -> Any:
        left = self.left.evaluate(context)
        if self.op == "&&":
            return self.right.evaluate(context) if truthy(left) else left
        return left if truthy(left) else self.right.evaluate(context)


Node = Union[Literal, Reference, Not, Compare, Logical]


# =============================================================================
# PARSER
# =============================================================================

class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise ExpressionError("unexpected end of expression", self.source, len(self.source))
        self.pos += 1
        return token

    def _error(self, message: str, token: Optional[Token]) -> ExpressionError:
        position = token.position if token else len(self.source)
        return ExpressionError(message, self.source, position)

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("empty expression", self.source)
        node = self._or()
        leftover = self._peek()
        if leftover is not None:
            raise self._error(f"unexpected token {leftover.value!r}", leftover)
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._match_op("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._comparison()
        while self._match_op("&&"):
            node = Logical("&&", node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._unary()
        token = self._peek()
        if token is not None and token.kind == "OP" and token.value in COMPARISON_OPS:
            self.pos += 1
            node = Compare(token.value, node, self._unary())
            after = self._peek()
            if after is not None and after.kind == "OP" and after.value in COMPARISON_OPS:
                raise self._error("chained comparisons need parentheses", after)
        return node

    def _unary(self) -> Node:
        if self._match_op("!"):
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()

        if token.kind == "NUMBER":
            text = token.value
            if "." in text or "e" in text or "E" in text:
                return Literal(float(text))
            return Literal(int(text))

        if token.kind == "STRING":
            return Literal(_unquote(token.value))

        if token.kind == "LPAREN":
            node = self._or()
            closing = self._peek()
            if closing is None or closing.kind != "RPAREN":
                raise self._error("missing closing parenthesis", closing)
            self.pos += 1
            return node

        if token.kind == "NAME":
            if token.value in KEYWORDS:
                return Literal(KEYWORDS[token.value])
            if token.value in REFERENCE_ROOTS:
                return Reference(token.value, self._segments())
            raise self._error(
                f"unknown identifier {token.value!r} (references start with steps. or inputs.)", token)

        raise self._error(f"unexpected token {token.value!r}", token)

    def _segments(self) -> Tuple[str, ...]:
        segments: List[str] = []
        while True:
            token = self._peek()
            if token is None or token.kind != "DOT":
                break
            self.pos += 1
            segment = self._advance()
            if segment.kind == "NAME":
                segments.append(segment.value)
            elif segment.kind == "NUMBER" and not segment.value.startswith("-"):
                # "items.0.1" tokenizes the index pair as one number
                segments.extend(segment.value.split("."))
            else:
                raise self._error("expected a field name after '.'", segment)
        return tuple(segments)

    def _match_op(self, op: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "OP" and token.value == op:
            self.pos += 1
            return True
        return False


@dataclass(frozen=True)
class Expression:
    """Parsed condition, reusable across evaluations."""
    source: str
    root: Any

    def evaluate(self, context: Dict[str, Any]) -> bool:
        return truthy(self.root.evaluate(context))

    def value(self, context: Dict[str, Any]) -> Any:
        """Raw (uncoerced) result."""
        return self.root.evaluate(context)


def parse(source: str) -> Expression:
    """Parse an expression string.

    Raises:
        ExpressionError: On any lexical or syntax error
    """
    if not isinstance(source, str) or not source.strip():
        raise ExpressionError("empty expression", str(source))
    return Expression(source, _Parser(source).parse())


def evaluate(expression: Union[str, Expression], context: Dict[str, Any]) -> bool:
    """Evaluate an expression (string or pre-parsed) to a boolean."""
    if isinstance(expression, str):
        expression = parse(expression)
    return expression.evaluate(context)
