"""Closed expression language for CONDITION steps.

Conditions are parsed into a small AST and interpreted against the
instance context. Nothing is ever executed as code: the string form is
read with ``ast.parse(mode="eval")`` and only a whitelisted set of nodes
is converted, everything else raises :class:`ConditionSyntaxError`.

String form (Python-like)::

    "amount > 1000 and department in ['finance', 'legal']"
    "{{status}} == 'approved'"

Structured form::

    {"all": [{"var": "amount", "op": "gt", "value": 1000},
             {"not": {"var": "status", "op": "eq", "value": "draft"}}]}

Names resolve to context values; a missing name is None. Comparing
incompatible types evaluates to false.
"""

import ast
import operator
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Union

from core.exceptions import ConditionSyntaxError

# {{name}} tokens become plain variable references, also when quoted as a whole literal
_TOKEN_PATTERN = re.compile(r"\{\{(\w+)\}\}")
_QUOTED_TOKEN = re.compile(r"""^(['"])\{\{(\w+)\}\}\1$""")
_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")

_SPELLINGS = (
    ("===", "=="),
    ("!==", "!="),
    ("&&", " and "),
    ("||", " or "),
)

_NAMED_LITERALS = {"true": True, "false": False, "null": None, "none": None}


# ─── AST ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Not:
    operand: "Expr"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    operands: tuple


@dataclass(frozen=True)
class Compare:
    left: "Expr"
    ops: tuple  # operator names, e.g. ("lt", "lte") for a < b <= c
    comparators: tuple


Expr = Union[Literal, Var, Not, BoolOp, Compare]


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return str(item).lower() in container.lower()
    return item in container


COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "in": lambda left, right: left in right,
    "not_in": lambda left, right: left not in right,
    "contains": _contains,
}

_AST_COMPARE_OPS = {
    ast.Eq: "eq",
    ast.NotEq: "ne",
    ast.Gt: "gt",
    ast.GtE: "gte",
    ast.Lt: "lt",
    ast.LtE: "lte",
    ast.In: "in",
    ast.NotIn: "not_in",
}


# ─── Parsing ───────────────────────────────────────────────────

def _normalize_code(segment: str) -> str:
    segment = _TOKEN_PATTERN.sub(lambda m: m.group(1), segment)
    for spelling, replacement in _SPELLINGS:
        segment = segment.replace(spelling, replacement)
    return segment


def _normalize(source: str) -> str:
    """Rewrite JS-style operators and {{name}} tokens outside string literals."""
    parts = _STRING_LITERAL.split(source)
    normalized = []
    for index, part in enumerate(parts):
        if index % 2 == 0:
            normalized.append(_normalize_code(part))
        else:
            quoted = _QUOTED_TOKEN.match(part)
            normalized.append(quoted.group(2) if quoted else part)
    return "".join(normalized).strip()


def _literal_value(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (str, int, float, bool, type(None))):
        return node.value
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        value = _literal_value(node.operand)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return -value if isinstance(node.op, ast.USub) else value
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_literal_value(item) for item in node.elts]
    if isinstance(node, ast.Name) and node.id.lower() in _NAMED_LITERALS:
        return _NAMED_LITERALS[node.id.lower()]
    raise ConditionSyntaxError(f"Unsupported literal: {ast.dump(node)}")


def _convert(node: ast.AST) -> Expr:
    if isinstance(node, ast.BoolOp):
        op = "and" if isinstance(node.op, ast.And) else "or"
        return BoolOp(op, tuple(_convert(value) for value in node.values))
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        return Not(_convert(node.operand))
    if isinstance(node, ast.Compare):
        ops = []
        for op in node.ops:
            name = _AST_COMPARE_OPS.get(type(op))
            if name is None:
                raise ConditionSyntaxError(f"Unsupported comparison: {type(op).__name__}")
            ops.append(name)
        return Compare(_convert(node.left), tuple(ops), tuple(_convert(c) for c in node.comparators))
    if isinstance(node, ast.Name) and node.id.lower() not in _NAMED_LITERALS:
        return Var(node.id)
    return Literal(_literal_value(node))


@lru_cache(maxsize=512)
def _parse_string(source: str) -> Expr:
    normalized = _normalize(source)
    if not normalized:
        raise ConditionSyntaxError("Empty condition")
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as e:
        raise ConditionSyntaxError(f"Invalid condition syntax: {e.msg}") from e
    return _convert(tree.body)


def _parse_structured(node: dict) -> Expr:
    if "all" in node:
        return BoolOp("and", tuple(parse_condition(item) for item in node["all"]))
    if "any" in node:
        return BoolOp("or", tuple(parse_condition(item) for item in node["any"]))
    if "not" in node:
        return Not(parse_condition(node["not"]))
    if "var" in node:
        op = node.get("op", "eq")
        if op not in COMPARATORS:
            raise ConditionSyntaxError(f"Unknown operator: {op}")
        return Compare(Var(str(node["var"])), (op,), (Literal(node.get("value")),))
    raise ConditionSyntaxError(f"Unrecognised condition: {sorted(node)}")


def parse_condition(condition: Any) -> Expr:
    """Parse a string or structured condition into an expression tree."""
    if isinstance(condition, bool):
        return Literal(condition)
    if isinstance(condition, str):
        return _parse_string(condition)
    if isinstance(condition, dict):
        return _parse_structured(condition)
    raise ConditionSyntaxError(f"Unsupported condition type: {type(condition).__name__}")


# ─── Evaluation ────────────────────────────────────────────────

def _compare(op: str, left: Any, right: Any) -> bool:
    try:
        return bool(COMPARATORS[op](left, right))
    except TypeError:
        return False


def evaluate(expr: Expr, context: dict) -> Any:
    """Interpret an expression tree against ``context``."""
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Var):
        return context.get(expr.name)
    if isinstance(expr, Not):
        return not evaluate(expr.operand, context)
    if isinstance(expr, BoolOp):
        if expr.op == "and":
            return all(evaluate(operand, context) for operand in expr.operands)
        return any(evaluate(operand, context) for operand in expr.operands)
    if isinstance(expr, Compare):
        left = evaluate(expr.left, context)
        for op, comparator in zip(expr.ops, expr.comparators):
            right = evaluate(comparator, context)
            if not _compare(op, left, right):
                return False
            left = right
        return True
    raise ConditionSyntaxError(f"Unknown expression node: {type(expr).__name__}")


def evaluate_condition(condition: Any, context: dict) -> bool:
    """Parse and evaluate ``condition``; the result is always a bool."""
    return bool(evaluate(parse_condition(condition), context))
