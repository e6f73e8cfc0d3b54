"""
Calculator tool.

Evaluates arithmetic expressions by walking the Python AST with a whitelist
of operators, so model-supplied input is never handed to ``eval``. ``^`` is
accepted as exponentiation since that is what people (and models) type.
"""

from __future__ import annotations

import ast
import math
import operator
from collections.abc import Callable
from typing import Any

from cara.tools.registry import Tool, ToolError, ToolParameter

MAX_EXPONENT = 10_000
# str(int) refuses results beyond 4300 digits
MAX_RESULT_BITS = 14_000
MAX_FACTORIAL = 1_000


def _factorial(n: Any) -> int:
    if isinstance(n, int) and n > MAX_FACTORIAL:
        raise ValueError(f"factorial argument must not exceed {MAX_FACTORIAL}")
    return math.factorial(n)


_BINARY_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "round": round,
    "sqrt": math.sqrt,
    "exp": math.exp,
    "ln": math.log,
    "log": math.log,
    "log10": math.log10,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "floor": math.floor,
    "ceil": math.ceil,
    "factorial": _factorial,
}

_CONSTANTS: dict[str, float] = {"pi": math.pi, "e": math.e}


def _checked(value: Any) -> Any:
    if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
        raise ValueError("result too large")
    return value


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise ValueError("exponent too large")
            if isinstance(left, int) and isinstance(right, int) and (left.bit_length() - 1) * right > MAX_RESULT_BITS:
                raise ValueError("result too large")
        return _checked(_BINARY_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and not node.keywords
    ):
        return _checked(_FUNCTIONS[node.func.id](*(_eval_node(arg) for arg in node.args)))
    raise ValueError(f"unsupported syntax '{ast.dump(node)[:40]}'")


def evaluate(expression: str) -> int | float:
    """Evaluate a math expression such as ``"(2+3)^2 / 5"``.

    Raises:
        ToolError: If the expression cannot be parsed or evaluated
    """
    try:
        tree = ast.parse(expression.replace("^", "**"), mode="eval")
        result = _eval_node(tree)
    except (SyntaxError, ValueError, TypeError, ArithmeticError) as e:
        raise ToolError(f"Invalid expression: {e}") from e

    if isinstance(result, float) and result.is_integer() and abs(result) < 2**53:
        return int(result)
    return result


def _calculate(args: dict[str, Any]) -> int | float:
    expression = args.get("expression")
    if not isinstance(expression, str):
        raise ToolError("Missing 'expression' parameter")
    return evaluate(expression)


def calculator_tool() -> Tool:
    return Tool(
        name="calculator",
        description='Safely evaluate a math expression. Example: {"expression":"(2+3)*7"}',
        parameters=(
            ToolParameter(
                name="expression",
                type="string",
                required=True,
                doc='Math expression, e.g., "(2+3)^2 / 5"',
            ),
        ),
        callback=_calculate,
    )
