"""Sandboxed evaluator for decision and edge-condition expressions.

Expressions are parsed with :mod:`ast` in ``eval`` mode and walked against a
whitelist. Only name lookup, attribute/index access into plain data,
comparisons, boolean logic, conditional expressions, basic arithmetic and a
handful of helper functions are accepted; anything else is rejected before
evaluation.

JavaScript-style spellings found in hand-written workflow files are accepted
and rewritten first: ``===``/``!==``, ``&&``/``||``/``!``,
``true``/``false``/``null`` and ``$.data.x`` style references.
"""

from __future__ import annotations

import ast
import math
import re
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ExpressionError

MISSING = object()

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")
_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[\d+\]")
_CONSTANTS = {"true": True, "false": False, "null": None, "None": None, "True": True, "False": False}


def _exists(value: Any) -> bool:
    return value is not None


def _empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _length(value: Any) -> int:
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value)
    return 0


HELPERS: Dict[str, Callable[[Any], Any]] = {
    "exists": _exists,
    "empty": _empty,
    "length": _length,
    "len": _length,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.IfExp,
    ast.Call,
)


# ----------------------------------------------------------------------
# Path lookup
def split_path(path: str) -> list[str | int]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    parts: list[str | int] = []
    for token in _PATH_TOKEN.findall(path.strip()):
        if token.startswith("["):
            parts.append(int(token[1:-1]))
        else:
            parts.append(token)
    return parts


def _step(value: Any, key: str | int) -> Any:
    if isinstance(value, Mapping):
        if isinstance(key, int):
            return value.get(key, value.get(str(key), MISSING))
        return value.get(key, MISSING)
    if isinstance(value, (list, tuple)):
        if isinstance(key, str) and key.isdigit():
            key = int(key)
        if isinstance(key, int) and -len(value) <= key < len(value):
            return value[key]
        if key == "length":
            return len(value)
        return MISSING
    if isinstance(value, str) and key == "length":
        return len(value)
    return MISSING


def lookup_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted/indexed path inside nested dicts and lists."""
    current = data
    for key in split_path(path):
        current = _step(current, key)
        if current is MISSING:
            return default
    return current


def resolve_reference(reference: str, scope: Mapping[str, Any], default: Any = None) -> Any:
    """Resolve a ``$.root.path`` reference (the ``$.`` prefix is optional)."""
    path = reference.strip()
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        return dict(scope)
    return lookup_path(scope, path, default)


# ----------------------------------------------------------------------
# Compilation
def _normalize(source: str) -> str:
    pieces = _STRING_LITERAL.split(source)
    for i in range(0, len(pieces), 2):
        text = pieces[i]
        text = text.replace("===", "==").replace("!==", "!=")
        text = text.replace("&&", " and ").replace("||", " or ")
        text = re.sub(r"!(?!=)", " not ", text)
        text = re.sub(r"\$\.", "", text)
        pieces[i] = text
    return "".join(pieces).strip()


def _check(tree: ast.AST, source: str) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Unsupported syntax '{type(node).__name__}' in expression: {source}"
            )
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExpressionError(f"Invalid name '{node.id}' in expression: {source}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            raise ExpressionError(f"Invalid attribute '{node.attr}' in expression: {source}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in HELPERS:
                raise ExpressionError(f"Only {sorted(HELPERS)} may be called: {source}")
            if node.keywords or any(isinstance(arg, ast.Starred) for arg in node.args):
                raise ExpressionError(f"Helper calls take positional arguments only: {source}")
            if len(node.args) != 1:
                raise ExpressionError(f"Helper '{node.func.id}' takes one argument: {source}")


@lru_cache(maxsize=512)
def compile_expression(source: str) -> ast.Expression:
    """Parse and whitelist-check ``source``; raises ExpressionError."""
    if not source or not source.strip():
        raise ExpressionError("Empty expression")
    normalized = _normalize(source)
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression '{source}': {exc.msg}") from exc
    _check(tree, source)
    return tree


# ----------------------------------------------------------------------
# Evaluation
def truthy(value: Any) -> bool:
    if value is MISSING:
        return False
    return bool(value)


def _number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            number = float(value)
        except ValueError:
            return value
        # "nan" and "inf" stay words.
        return number if math.isfinite(number) else value
    return value


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    # "15" > 10 compares numerically, the way form input usually arrives.
    numeric = (int, float)
    if isinstance(left, numeric) and not isinstance(left, bool) and isinstance(right, str):
        return left, _number(right)
    if isinstance(right, numeric) and not isinstance(right, bool) and isinstance(left, str):
        return _number(left), right
    return left, right


def compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    """Apply a comparison operator; incompatible operands compare False."""
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    if isinstance(op, (ast.In, ast.NotIn)):
        try:
            found = right is not None and left in right
        except TypeError:
            found = False
        return found if isinstance(op, ast.In) else not found
    left, right = _coerce_pair(left, right)
    try:
        if isinstance(op, ast.Eq):
            return left == right
        if isinstance(op, ast.NotEq):
            return left != right
        if isinstance(op, ast.Lt):
            return left < right
        if isinstance(op, ast.LtE):
            return left <= right
        if isinstance(op, ast.Gt):
            return left > right
        if isinstance(op, ast.GtE):
            return left >= right
    except TypeError:
        return False
    raise ExpressionError(f"Unsupported comparison {type(op).__name__}")


class _Evaluator:
    def __init__(self, scope: Mapping[str, Any]) -> None:
        self.scope = scope

    def visit(self, node: ast.AST) -> Any:
        method: Optional[Callable[[Any], Any]] = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax '{type(node).__name__}'")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.scope:
            return self.scope[node.id]
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = _step(self.visit(node.value), node.attr)
        return None if value is MISSING else value

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        key = self.visit(node.slice)
        if not isinstance(key, (str, int)) or isinstance(key, bool):
            return None
        value = _step(self.visit(node.value), key)
        return None if value is MISSING else value

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return [self.visit(element) for element in node.elts]

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not truthy(value):
                return value
            if isinstance(node.op, ast.Or) and truthy(value):
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not truthy(operand)
        operand = _number(operand)
        if not isinstance(operand, (int, float)):
            raise ExpressionError("Unary arithmetic requires a number")
        return -operand if isinstance(node.op, ast.USub) else +operand

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left, right = self.visit(node.left), self.visit(node.right)
        if isinstance(node.op, ast.Add) and isinstance(left, str) and isinstance(right, str):
            return left + right
        left, right = _number(left), _number(right)
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (left, right)):
            raise ExpressionError("Arithmetic requires numeric operands")
        try:
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if isinstance(node.op, ast.Div):
                return left / right
            return left % right
        except ZeroDivisionError as exc:
            raise ExpressionError("Division by zero") from exc

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not compare(op, left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if truthy(self.visit(node.test)):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        helper = HELPERS[node.func.id]  # type: ignore[attr-defined]
        return helper(self.visit(node.args[0]))


def evaluate(source: str, scope: Mapping[str, Any]) -> Any:
    """Evaluate ``source`` against ``scope`` and return the raw value."""
    return _Evaluator(scope).visit(compile_expression(source))


def evaluate_bool(source: str, scope: Mapping[str, Any]) -> bool:
    return truthy(evaluate(source, scope))


__all__ = [
    "MISSING",
    "HELPERS",
    "compare",
    "compile_expression",
    "evaluate",
    "evaluate_bool",
    "lookup_path",
    "resolve_reference",
    "split_path",
    "truthy",
]
