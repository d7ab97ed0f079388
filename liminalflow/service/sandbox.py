"""Sandboxed expression evaluation for variable, conditional and edge logic.

Expressions are parsed with :mod:`ast` and walked against an allowlist:
literals, variable references (dotted paths included), arithmetic, string
concatenation, comparisons, boolean logic, subscripts and a fixed set of
helper functions. Anything else is rejected before evaluation.
"""
from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from liminalflow.service.errors import ExpressionError
from liminalflow.service.variables import lookup

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

# JSON spellings accepted next to the Python ones
_LITERAL_NAMES = {"true": True, "false": False, "null": None, "none": None}

_MAX_RECURSION_DEPTH = 100
_MAX_SEQUENCE_REPEAT = 10000
# Longest str, list or tuple an expression may build
_MAX_SEQUENCE_LENGTH = 100000
_MISSING = object()


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    return item in container


SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
    "trim": lambda value: str(value).strip(),
    "contains": _contains,
    "startswith": lambda value, prefix: str(value).startswith(prefix),
    "endswith": lambda value, suffix: str(value).endswith(suffix),
}


def _dotted_name(node: ast.AST) -> str | None:
    parts: list[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    parts.append(node.id)
    return ".".join(reversed(parts))


def _resolve_name(name: str, names: Mapping[str, Any]) -> Any:
    value = lookup(names, name, _MISSING)
    if value is not _MISSING:
        return value
    if name.lower() in _LITERAL_NAMES:
        return _LITERAL_NAMES[name.lower()]
    raise ExpressionError(f"unknown variable {name}", detail={"variable": name})


def _checked_binop(op_type: type, left: Any, right: Any) -> Any:
    if op_type is ast.Mult:
        for seq, count in ((left, right), (right, left)):
            if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                if count > _MAX_SEQUENCE_REPEAT or len(seq) * count > _MAX_SEQUENCE_LENGTH:
                    raise ExpressionError("sequence repetition too large")
    elif op_type is ast.Add:
        if isinstance(left, (str, list, tuple)) and isinstance(right, (str, list, tuple)):
            if len(left) + len(right) > _MAX_SEQUENCE_LENGTH:
                raise ExpressionError("sequence concatenation too large")
    try:
        return _BIN_OPS[op_type](left, right)
    except (TypeError, ZeroDivisionError) as exc:
        raise ExpressionError(f"invalid operation: {exc}") from exc


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any],
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ExpressionError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, allowed_callables, _depth + 1)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, (ast.Name, ast.Attribute)):
        dotted = _dotted_name(node)
        if dotted is None:
            raise ExpressionError("attribute access is only allowed on variable paths")
        return _resolve_name(dotted, names)

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = bool(_eval_node(value, names, allowed_callables, _depth + 1))
                if not result:
                    break
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = bool(_eval_node(value, names, allowed_callables, _depth + 1))
                if result:
                    break
            return result
        raise ExpressionError("unsupported boolean operator")

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, allowed_callables, _depth + 1)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        try:
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        except TypeError as exc:
            raise ExpressionError(f"invalid operation: {exc}") from exc
        raise ExpressionError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        if type(node.op) not in _BIN_OPS:
            raise ExpressionError("unsupported binary operator")
        return _checked_binop(
            type(node.op),
            _eval_node(node.left, names, allowed_callables, _depth + 1),
            _eval_node(node.right, names, allowed_callables, _depth + 1),
        )

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, allowed_callables, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError("unsupported comparator")
            right = _eval_node(comparator, names, allowed_callables, _depth + 1)
            try:
                if not op(left, right):
                    return False
            except TypeError as exc:
                raise ExpressionError(f"invalid comparison: {exc}") from exc
            left = right
        return True

    if isinstance(node, ast.IfExp):
        test = _eval_node(node.test, names, allowed_callables, _depth + 1)
        branch = node.body if test else node.orelse
        return _eval_node(branch, names, allowed_callables, _depth + 1)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ExpressionError("callable references must be simple names")
        if node.func.id not in allowed_callables:
            raise ExpressionError(f"function {node.func.id} is not permitted")
        if node.keywords:
            raise ExpressionError("keyword arguments are not permitted")
        func = allowed_callables[node.func.id]
        args = [
            _eval_node(arg, names, allowed_callables, _depth + 1) for arg in node.args
        ]
        try:
            return func(*args)
        except (TypeError, ValueError) as exc:
            raise ExpressionError(f"{node.func.id}() failed: {exc}") from exc

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, allowed_callables, _depth + 1)
        index = _eval_node(node.slice, names, allowed_callables, _depth + 1)
        if not isinstance(target, (Mapping, Sequence)):
            raise ExpressionError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExpressionError(f"invalid subscript access: {exc}") from exc

    if isinstance(node, ast.Tuple):
        return tuple(
            _eval_node(elt, names, allowed_callables, _depth + 1) for elt in node.elts
        )

    if isinstance(node, ast.List):
        return [
            _eval_node(elt, names, allowed_callables, _depth + 1) for elt in node.elts
        ]

    if isinstance(node, ast.Dict):
        return {
            _eval_node(k, names, allowed_callables, _depth + 1): _eval_node(
                v, names, allowed_callables, _depth + 1
            )
            for k, v in zip(node.keys, node.values)
        }

    raise ExpressionError(f"unsupported expression node: {type(node).__name__}")


def parse_expression(expr: str) -> ast.Expression:
    """Parse ``expr`` and reject constructs outside the allowlist."""
    if not isinstance(expr, str) or not expr.strip():
        raise ExpressionError("expression must be a non-empty string")
    try:
        parsed = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"invalid expression: {expr}") from exc

    for node in ast.walk(parsed):
        if isinstance(
            node,
            (
                ast.Lambda,
                ast.ListComp,
                ast.SetComp,
                ast.DictComp,
                ast.GeneratorExp,
                ast.Await,
                ast.Yield,
                ast.YieldFrom,
                ast.NamedExpr,
                ast.Starred,
                ast.JoinedStr,
            ),
        ):
            raise ExpressionError("disallowed syntax in expression")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError("private attribute access is not permitted")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExpressionError("dunder names are not permitted")
    return parsed


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate an expression with a constrained AST allowlist.

    ``names`` is the variable scope; dotted references such as
    ``review.output`` resolve through it. Only functions listed in
    ``allowed_callables`` (defaults to :data:`SAFE_FUNCTIONS`) may be called.
    """
    parsed = parse_expression(expr)
    callables = SAFE_FUNCTIONS if allowed_callables is None else allowed_callables
    return _eval_node(parsed, names, callables)


# Operators accepted by structured condition documents
_CONDITION_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "eq": operator.eq,
    "!=": operator.ne,
    "ne": operator.ne,
    ">": operator.gt,
    "gt": operator.gt,
    ">=": operator.ge,
    "gte": operator.ge,
    "<": operator.lt,
    "lt": operator.lt,
    "<=": operator.le,
    "lte": operator.le,
    "contains": lambda left, right: _contains(left, right),
    "in": lambda left, right: _contains(right, left),
    "startswith": lambda left, right: str(left).startswith(str(right)),
    "endswith": lambda left, right: str(left).endswith(str(right)),
}


def evaluate_condition(condition: Any, names: Mapping[str, Any]) -> bool:
    """Evaluate an edge or conditional-node condition.

    ``condition`` is either an expression string or a structured document:
    ``{"variable": "score", "operator": ">", "value": 5}``, or
    ``{"all": [...]}`` / ``{"any": [...]}`` / ``{"not": {...}}`` composites.
    """
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, str):
        return bool(safe_eval_expr(condition, names))
    if isinstance(condition, Mapping):
        if "all" in condition:
            return all(evaluate_condition(item, names) for item in condition["all"])
        if "any" in condition:
            return any(evaluate_condition(item, names) for item in condition["any"])
        if "not" in condition:
            return not evaluate_condition(condition["not"], names)
        if "expression" in condition:
            return bool(safe_eval_expr(condition["expression"], names))
        variable = condition.get("variable")
        if not isinstance(variable, str):
            raise ExpressionError("condition document requires a variable name")
        op_name = str(condition.get("operator", "==")).lower()
        op = _CONDITION_OPERATORS.get(op_name)
        if op is None:
            raise ExpressionError(f"unsupported condition operator {op_name}")
        left = lookup(names, variable, _MISSING)
        if left is _MISSING:
            if op_name in {"!=", "ne"}:
                return True
            return False
        try:
            return bool(op(left, condition.get("value")))
        except TypeError as exc:
            raise ExpressionError(f"invalid comparison: {exc}") from exc
    raise ExpressionError(f"unsupported condition type {type(condition).__name__}")


def check_condition_syntax(condition: Any) -> None:
    """Raise :class:`ExpressionError` when ``condition`` cannot be evaluated."""
    if isinstance(condition, bool):
        return
    if isinstance(condition, str):
        parse_expression(condition)
        return
    if isinstance(condition, Mapping):
        for key in ("all", "any"):
            if key in condition:
                items = condition[key]
                if not isinstance(items, Sequence) or isinstance(items, str):
                    raise ExpressionError(f"'{key}' must hold a list of conditions")
                for item in items:
                    check_condition_syntax(item)
                return
        if "not" in condition:
            check_condition_syntax(condition["not"])
            return
        if "expression" in condition:
            parse_expression(condition["expression"])
            return
        if not isinstance(condition.get("variable"), str):
            raise ExpressionError("condition document requires a variable name")
        op_name = str(condition.get("operator", "==")).lower()
        if op_name not in _CONDITION_OPERATORS:
            raise ExpressionError(f"unsupported condition operator {op_name}")
        return
    raise ExpressionError(f"unsupported condition type {type(condition).__name__}")
