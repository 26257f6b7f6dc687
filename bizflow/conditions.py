"""Restricted predicate evaluation for condition steps.

Expressions use Python syntax but only a small, side-effect free subset is
accepted: literals, names, attribute and subscript lookups, comparisons,
boolean and arithmetic operators, and a handful of helper calls. Names are
looked up in the run context; unknown names evaluate to ``None`` so a
predicate over a missing field is simply false rather than an error.
"""

from __future__ import annotations

import ast
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping

from .errors import ConditionError

_COMPARE: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

# Longest string, list or tuple a repetition may produce
_MAX_SEQUENCE = 10_000


def _multiply(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if len(seq) * count > _MAX_SEQUENCE:
                raise ConditionError(
                    f"Repetition would produce more than {_MAX_SEQUENCE} items"
                )
    return left * right


_BINARY: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda v: str(v).lower(),
    "upper": lambda v: str(v).upper(),
}

_CONSTANTS = {"true": True, "false": False, "null": None, "none": None}


@lru_cache(maxsize=256)
def _parse(expression: str) -> ast.Expression:
    try:
        return ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ConditionError(f"Invalid condition expression {expression!r}: {exc.msg}") from exc


def evaluate(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``context`` and return its truth value."""
    if not expression or not expression.strip():
        return False
    tree = _parse(expression)
    try:
        return bool(_Evaluator(context).visit(tree.body))
    except ConditionError:
        raise
    except Exception as exc:
        raise ConditionError(f"Failed to evaluate {expression!r}: {exc}") from exc


def validate(expression: str) -> None:
    """Raise ``ConditionError`` if ``expression`` uses unsupported syntax."""
    if not expression or not expression.strip():
        return
    _Checker().visit(_parse(expression).body)


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ConditionError(f"Unsupported expression element: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._context:
            return self._context[node.id]
        return _CONSTANTS.get(node.id.lower())

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        return _lookup(self.visit(node.value), self.visit(node.slice))

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Set(self, node: ast.Set) -> Any:
        return {self.visit(e) for e in node.elts}

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ConditionError(f"Unsupported unary operator: {type(node.op).__name__}")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        func = _BINARY.get(type(node.op))
        if func is None:
            raise ConditionError(f"Unsupported operator: {type(node.op).__name__}")
        return func(self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                ok = _COMPARE[type(op)](left, right)
            except TypeError:
                # None or mismatched types never satisfy an ordering
                return False
            if not ok:
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise ConditionError("Only len, str, int, float, bool, lower and upper may be called")
        if node.keywords:
            raise ConditionError("Keyword arguments are not supported")
        return _FUNCTIONS[node.func.id](*(self.visit(a) for a in node.args))


class _Checker(_Evaluator):
    """Walks an expression without a context to reject unsupported syntax early."""

    def __init__(self) -> None:
        super().__init__({})

    def visit(self, node: ast.AST) -> Any:
        if getattr(self, f"visit_{type(node).__name__}", None) is None:
            raise ConditionError(f"Unsupported expression element: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise ConditionError(
                    "Only len, str, int, float, bool, lower and upper may be called"
                )
            if node.keywords:
                raise ConditionError("Keyword arguments are not supported")
        if isinstance(node, ast.BinOp) and type(node.op) not in _BINARY:
            raise ConditionError(f"Unsupported operator: {type(node.op).__name__}")
        for child in ast.iter_child_nodes(node):
            if isinstance(child, ast.expr):
                self.visit(child)
        return None


def _lookup(container: Any, key: Any) -> Any:
    if container is None:
        return None
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple, str)) and isinstance(key, int):
        try:
            return container[key]
        except IndexError:
            return None
    if isinstance(key, str) and not key.startswith("_"):
        return getattr(container, key, None)
    return None
