from __future__ import annotations

import ast
import math
import operator
from collections.abc import Callable
from functools import lru_cache

from marketsync.core.errors import FormulaEvaluationError


MAX_FORMULA_LENGTH = 500
FORMULA_VARIABLE = "stock"

_BINARY_OPS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS: dict[type[ast.unaryop], Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_FUNCTIONS: dict[str, Callable[..., float]] = {
    "max": max,
    "min": min,
}


def _check_node(node: ast.AST) -> None:
    if isinstance(node, ast.Expression):
        _check_node(node.body)
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY_OPS:
            raise FormulaEvaluationError(f"Operator not allowed: {type(node.op).__name__}")
        _check_node(node.left)
        _check_node(node.right)
    elif isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPS:
            raise FormulaEvaluationError(f"Operator not allowed: {type(node.op).__name__}")
        _check_node(node.operand)
    elif isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaEvaluationError(f"Literal not allowed: {node.value!r}")
    elif isinstance(node, ast.Name):
        if node.id != FORMULA_VARIABLE:
            raise FormulaEvaluationError(f"Unknown variable: {node.id}")
    elif isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise FormulaEvaluationError("Only max() and min() calls are allowed")
        if node.keywords or len(node.args) < 2:
            raise FormulaEvaluationError(f"{node.func.id}() takes two or more positional arguments")
        for arg in node.args:
            _check_node(arg)
    else:
        raise FormulaEvaluationError(f"Expression element not allowed: {type(node).__name__}")


@lru_cache(maxsize=256)
def parse_formula(expression: str) -> ast.Expression:
    """
    Parse and whitelist-check a stock formula.

    Accepted grammar: numbers, the variable `stock`, `+ - * /`, unary minus,
    parentheses and `max(...)` / `min(...)`. Anything else is rejected before
    evaluation; nothing is ever passed to `eval`.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise FormulaEvaluationError("Formula is empty")
    if len(expression) > MAX_FORMULA_LENGTH:
        raise FormulaEvaluationError("Formula is too long")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise FormulaEvaluationError(f"Formula syntax error: {e.msg}") from e
    _check_node(tree)
    return tree


def _eval(node: ast.AST, stock: float) -> float:
    if isinstance(node, ast.Expression):
        return _eval(node.body, stock)
    if isinstance(node, ast.BinOp):
        left = _eval(node.left, stock)
        right = _eval(node.right, stock)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except ZeroDivisionError as e:
            raise FormulaEvaluationError("Division by zero") from e
        except ArithmeticError as e:
            raise FormulaEvaluationError(f"Arithmetic error: {e}") from e
    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, stock))
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return stock
    if isinstance(node, ast.Call):
        args = [_eval(a, stock) for a in node.args]
        try:
            return _FUNCTIONS[node.func.id](*args)
        except TypeError as e:
            raise FormulaEvaluationError(f"Invalid call to {node.func.id}()") from e
    raise FormulaEvaluationError(f"Expression element not allowed: {type(node).__name__}")


def evaluate_formula(expression: str, *, stock: int) -> int:
    """Evaluate to a non-negative integer stock level (floored)."""
    tree = parse_formula(expression)
    value = _eval(tree, float(stock))
    if not math.isfinite(value):
        raise FormulaEvaluationError("Formula result is not finite")
    return max(0, math.floor(value))
