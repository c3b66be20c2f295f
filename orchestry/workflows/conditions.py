"""Safe boolean expression evaluator for workflow conditions.

Grammar (lowest to highest precedence)::

    or_expr    := and_expr ("||" and_expr)*
    and_expr   := not_expr ("&&" not_expr)*
    not_expr   := "!" not_expr | comparison
    comparison := primary (("==" | "!=" | ">" | "<" | ">=" | "<=") primary)?
    primary    := "(" or_expr ")" | literal | variable [ "." method "(" primary ")" ]

Variables are ``$name`` (or a bare identifier) and ``$variables.a.b`` for
nested lookups. String methods: ``contains``, ``startsWith``, ``endsWith``.
Nothing is ever passed to ``eval``.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STRING_METHODS = ("contains", "startsWith", "endsWith")
COMPARISON_OPS = ("==", "!=", ">=", "<=", ">", "<")

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'[^']*'|"[^"]*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>&&|\|\||==|!=|>=|<=|[><!().])
      | (?P<name>\$?[A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)
    )
    """,
    re.VERBOSE,
)


class ConditionSyntaxError(ValueError):
    """Raised for malformed condition expressions."""


@dataclass
class Token:
    kind: str
    text: str


@dataclass
class Node:
    kind: str  # literal | variable | not | logical | comparison | string_op
    value: Any = None
    op: Optional[str] = None
    children: List["Node"] = field(default_factory=list)


def tokenize(expression: str) -> List[Token]:
    tokens = []
    pos = 0
    expression = expression.strip()
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if not match or match.end() == pos:
            raise ConditionSyntaxError(f"Unexpected character {expression[pos]!r} at {pos}")
        kind = match.lastgroup
        tokens.append(Token(kind, match.group(kind)))
        pos = match.end()
        while pos < len(expression) and expression[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Token:
        token = self.peek()
        if token is None:
            raise ConditionSyntaxError("Unexpected end of expression")
        self.pos += 1
        return token

    def expect(self, text: str) -> None:
        token = self.take()
        if token.text != text:
            raise ConditionSyntaxError(f"Expected {text!r}, got {token.text!r}")

    def at(self, text: str) -> bool:
        token = self.peek()
        return token is not None and token.kind == "op" and token.text == text

    def parse(self) -> Node:
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionSyntaxError(f"Unexpected token {self.peek().text!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.at("||"):
            self.take()
            node = Node("logical", op="||", children=[node, self.parse_and()])
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.at("&&"):
            self.take()
            node = Node("logical", op="&&", children=[node, self.parse_not()])
        return node

    def parse_not(self) -> Node:
        if self.at("!"):
            self.take()
            return Node("not", children=[self.parse_not()])
        return self.parse_comparison()

    def parse_comparison(self) -> Node:
        left = self.parse_primary()
        token = self.peek()
        if token is not None and token.kind == "op" and token.text in COMPARISON_OPS:
            self.take()
            return Node("comparison", op=token.text, children=[left, self.parse_primary()])
        return left

    def parse_primary(self) -> Node:
        token = self.take()

        if token.kind == "op" and token.text == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if token.kind == "string":
            return Node("literal", value=token.text[1:-1])
        if token.kind == "number":
            return Node("literal", value=float(token.text))
        if token.kind == "name":
            if token.text == "true":
                return Node("literal", value=True)
            if token.text == "false":
                return Node("literal", value=False)
            return self._variable_or_method(token.text)

        raise ConditionSyntaxError(f"Unexpected token {token.text!r}")

    def _variable_or_method(self, name: str) -> Node:
        # "$x.contains" arrives as one name token; split off a trailing string method.
        head, _, method = name.rpartition(".")
        if head and method in STRING_METHODS and self.at("("):
            self.take()
            argument = self.parse_primary()
            self.expect(")")
            return Node("string_op", op=method, children=[Node("variable", value=head), argument])
        return Node("variable", value=name)


def resolve_variable(name: str, variables: Dict[str, Any]) -> Any:
    if name in variables:
        return variables[name]
    stripped = name[1:] if name.startswith("$") else name
    if stripped in variables:
        return variables[stripped]
    if f"${stripped}" in variables:
        return variables[f"${stripped}"]

    path = stripped.split(".")
    if path[0] == "variables":
        path = path[1:]
    current: Any = variables
    for part in path:
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _compare(left: Any, right: Any, op: str) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        left, right = left_num, right_num
    else:
        left, right = _as_text(left), _as_text(right)

    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    return left <= right


class ConditionEvaluator:
    """Evaluates condition expressions against execution variables."""

    def parse(self, expression: str) -> Node:
        return _Parser(tokenize(expression)).parse()

    def evaluate(self, expression: Optional[str], variables: Dict[str, Any]) -> bool:
        """Evaluate ``expression``; malformed or failing expressions are False."""
        if not expression or not expression.strip():
            return False
        try:
            return self._truth(self.parse(expression), variables or {})
        except (ConditionSyntaxError, TypeError) as e:
            logger.warning(f"[WORKFLOW] Condition evaluation failed for '{expression}': {e}")
            return False

    def _value(self, node: Node, variables: Dict[str, Any]) -> Any:
        if node.kind == "literal":
            return node.value
        if node.kind == "variable":
            return resolve_variable(node.value, variables)
        return self._truth(node, variables)

    def _truth(self, node: Node, variables: Dict[str, Any]) -> bool:
        if node.kind in ("literal", "variable"):
            return bool(self._value(node, variables))
        if node.kind == "not":
            return not self._truth(node.children[0], variables)
        if node.kind == "logical":
            left = self._truth(node.children[0], variables)
            if node.op == "||":
                return left or self._truth(node.children[1], variables)
            return left and self._truth(node.children[1], variables)
        if node.kind == "comparison":
            return _compare(
                self._value(node.children[0], variables),
                self._value(node.children[1], variables),
                node.op,
            )
        if node.kind == "string_op":
            text = _as_text(self._value(node.children[0], variables))
            argument = _as_text(self._value(node.children[1], variables))
            if node.op == "contains":
                return argument in text
            if node.op == "startsWith":
                return text.startswith(argument)
            return text.endswith(argument)
        return False


_INTERPOLATION_RE = re.compile(r"\$(\w+(?:\.\w+)*)")


def interpolate(template: str, variables: Dict[str, Any]) -> str:
    """Replace ``$name`` references in ``template``; unknown names are left as written."""

    def _replace(match):
        value = resolve_variable(match.group(1), variables)
        return match.group(0) if value is None else _as_text(value)

    return _INTERPOLATION_RE.sub(_replace, template or "")
