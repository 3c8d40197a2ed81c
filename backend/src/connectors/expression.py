"""
Sandboxed arithmetic for `calculate` transformation rules.

Formulas are parsed with `ast` and walked by a whitelist evaluator. The
grammar is numbers, named variables, `+ - * /`, unary sign and
parentheses. Anything else (calls, attributes, subscripts, comparisons,
`**`) is rejected before evaluation, so no user-supplied text ever reaches
a general code evaluator.
"""

import ast
import math
import operator
from typing import Mapping, Union

from .errors import ExpressionError

Number = Union[int, float]

MAX_FORMULA_LENGTH = 512

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def parse_formula(formula: str) -> ast.Expression:
    """Parse and validate a formula without evaluating it.

    Raises:
        ExpressionError: If the formula is empty, too long, malformed or
            uses syntax outside the arithmetic grammar
    """
    if not isinstance(formula, str) or not formula.strip():
        raise ExpressionError("Formula must be a non-empty string")
    if len(formula) > MAX_FORMULA_LENGTH:
        raise ExpressionError(f"Formula exceeds {MAX_FORMULA_LENGTH} characters")

    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Malformed formula: {e.msg}")

    for node in ast.walk(tree):
        if isinstance(node, (ast.Expression, ast.Name, ast.Load)):
            continue
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            continue
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            continue
        if isinstance(node, tuple(_BINARY_OPS) + tuple(_UNARY_OPS)):
            continue
        if isinstance(node, ast.Constant) and _is_number(node.value):
            continue
        raise ExpressionError(f"Unsupported syntax in formula: {type(node).__name__}")

    return tree


def evaluate(formula: str, variables: Mapping[str, Number]) -> Number:
    """Evaluate an arithmetic formula against named numeric variables.

    Args:
        formula: Expression such as "heartRate * 1.0" or "(a + b) / 2"
        variables: Values for the names used in the formula

    Returns:
        The numeric result

    Raises:
        ExpressionError: On malformed input, unknown names, non-numeric
            variables, division by zero or a non-finite result

    Example:
        >>> evaluate("heartRate * 1.0", {"heartRate": 72})
        72.0
    """
    tree = parse_formula(formula)
    result = _eval(tree.body, variables)
    if isinstance(result, float) and not math.isfinite(result):
        raise ExpressionError("Formula produced a non-finite result")
    return result


def referenced_names(formula: str) -> set[str]:
    tree = parse_formula(formula)
    return {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _eval(node: ast.AST, variables: Mapping[str, Number]) -> Number:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id not in variables:
            raise ExpressionError(f"Unknown variable '{node.id}'")
        value = variables[node.id]
        if not _is_number(value):
            raise ExpressionError(f"Variable '{node.id}' is not numeric: {value!r}")
        return value

    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, variables))

    if isinstance(node, ast.BinOp):
        left = _eval(node.left, variables)
        right = _eval(node.right, variables)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except ZeroDivisionError:
            raise ExpressionError("Division by zero")
        except OverflowError:
            raise ExpressionError("Numeric overflow")

    raise ExpressionError(f"Unsupported syntax in formula: {type(node).__name__}")
