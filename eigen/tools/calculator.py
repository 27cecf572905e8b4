import ast
import math
import operator
from typing import Any, Dict

from .types import ToolCallRequest, ToolCallResult

SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}
SAFE_UNARY_OPS = {ast.UAdd: lambda v: v, ast.USub: lambda v: -v}
SAFE_NAMES: Dict[str, Any] = {
    "pi": math.pi,
    "e": math.e,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "ln": math.log,
    **{
        name: getattr(math, name)
        for name in ("sqrt", "log", "log10", "log2", "sin", "cos", "tan", "asin", "acos", "atan", "exp", "ceil", "floor")
    },
}
MAX_EXPONENT = 10000


def _pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise ValueError("Exponent too large")
    return operator.pow(base, exponent)


def evaluate(expr: str) -> float:
    """Evaluate an arithmetic expression (numbers, operators and math functions only)."""
    tree = ast.parse(expr, mode="eval")

    def _eval(node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant):
            if isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
                return node.value
            raise ValueError("Unsupported literal")
        if isinstance(node, ast.BinOp) and type(node.op) in SAFE_BIN_OPS:
            left = _eval(node.left)
            right = _eval(node.right)
            if isinstance(node.op, ast.Pow):
                return _pow(left, right)
            return SAFE_BIN_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in SAFE_UNARY_OPS:
            return SAFE_UNARY_OPS[type(node.op)](_eval(node.operand))
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            func = SAFE_NAMES.get(node.func.id)
            if not callable(func) or node.keywords:
                raise ValueError(f"Function not allowed: {node.func.id}")
            return func(*[_eval(arg) for arg in node.args])
        if isinstance(node, ast.Name):
            value = SAFE_NAMES.get(node.id)
            if value is None or callable(value):
                raise ValueError(f"Unknown name: {node.id}")
            return value
        raise ValueError("Expression not allowed")

    result = _eval(tree)
    if isinstance(result, complex):
        raise ValueError("Complex result")
    return float(result)


def format_result(expression: str, result: float) -> str:
    if math.isfinite(result) and result == int(result) and abs(result) < 1e15:
        return f"{expression} = {int(result)}"
    return f"{expression} = {result}"


def execute(request: ToolCallRequest) -> ToolCallResult:
    expression = request.get_str("expression")
    if expression is None:
        return ToolCallResult.fail(request.call_id, "Missing required parameter: expression")
    cleaned = expression.strip().replace("×", "*").replace("÷", "/").replace("^", "**")
    try:
        result = evaluate(cleaned)
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError, OverflowError) as exc:
        return ToolCallResult.fail(request.call_id, f"Failed to evaluate expression '{expression}': {exc}")
    return ToolCallResult.ok(request.call_id, format_result(expression, result))
