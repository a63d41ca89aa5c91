"""Capability-restricted evaluation for script nodes.

Scripts are small programs of assignments followed by a result expression::

    spread = ctx_bull_confidence - ctx_bear_confidence
    {"spread": round(spread, 3), "wide": spread > 0.3}

They are parsed with :mod:`ast` and walked against an allowlist of node types.
Attribute access, imports, lambdas, comprehensions and any callable not
explicitly exposed are rejected, so scripts cannot reach the host process.
The substring denylist in :data:`DENYLISTED_SCRIPT_TOKENS` is only a fast
publish-time rejection; the evaluator itself is the actual boundary.
"""
from __future__ import annotations

import ast
import operator
import time
import uuid
from collections.abc import Mapping, Sequence
from typing import Any, Callable, Dict, List, Optional

from panelflow.logging import get_logger

logger = get_logger(__name__)

SCRIPT_LANGUAGES = frozenset({"expression"})
MAX_SCRIPT_SLEEP_MS = 5000
MAX_SCRIPT_STATEMENTS = 50
_MAX_RECURSION_DEPTH = 100

DENYLISTED_SCRIPT_TOKENS = (
    "__",
    "import",
    "exec(",
    "eval(",
    "compile(",
    "open(",
    "globals(",
    "locals(",
    "getattr(",
    "setattr(",
    "subprocess",
    "os.system",
    "sys.exit",
)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
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
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_DISALLOWED_NODES = (
    ast.Attribute,
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.ClassDef,
    ast.FunctionDef,
    ast.AsyncFunctionDef,
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.Starred,
    ast.NamedExpr,
)


class ScriptError(ValueError):
    """Raised when a script is rejected or fails while evaluating."""


def find_denylisted_tokens(script: str) -> List[str]:
    return [token for token in DENYLISTED_SCRIPT_TOKENS if token in script]


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any],
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ScriptError("expression too deeply nested")

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        raise ScriptError(f"unknown name {node.id}")

    if isinstance(node, ast.BoolOp):
        # Python semantics: return the deciding operand, not a bare bool
        result: Any = None
        for value in node.values:
            result = _eval_node(value, names, allowed_callables, _depth + 1)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, allowed_callables, _depth + 1)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ScriptError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ScriptError("unsupported binary operator")
        left = _eval_node(node.left, names, allowed_callables, _depth + 1)
        right = _eval_node(node.right, names, allowed_callables, _depth + 1)
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > 100:
            raise ScriptError("exponent too large")
        return op(left, right)

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, allowed_callables, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ScriptError("unsupported comparator")
            right = _eval_node(comparator, names, allowed_callables, _depth + 1)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, names, allowed_callables, _depth + 1):
            return _eval_node(node.body, names, allowed_callables, _depth + 1)
        return _eval_node(node.orelse, names, allowed_callables, _depth + 1)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ScriptError("callable references must be simple names")
        func = allowed_callables.get(node.func.id)
        if func is None or not callable(func):
            raise ScriptError(f"callable {node.func.id} is not permitted")
        args = [
            _eval_node(arg, names, allowed_callables, _depth + 1) for arg in node.args
        ]
        for kw in node.keywords:
            if kw.arg is None:
                raise ScriptError("keyword unpacking (**kwargs) not permitted")
        kwargs = {
            kw.arg: _eval_node(kw.value, names, allowed_callables, _depth + 1)
            for kw in node.keywords
        }
        return func(*args, **kwargs)

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, allowed_callables, _depth + 1)
        index = _eval_node(node.slice, names, allowed_callables, _depth + 1)
        if not isinstance(target, (Mapping, Sequence, str)):
            raise ScriptError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ScriptError(f"invalid subscript access: {exc}") from exc

    if isinstance(node, ast.Slice):
        return slice(
            *(
                _eval_node(part, names, allowed_callables, _depth + 1) if part else None
                for part in (node.lower, node.upper, node.step)
            )
        )

    if isinstance(node, (ast.Tuple, ast.List)):
        items = [_eval_node(elt, names, allowed_callables, _depth + 1) for elt in node.elts]
        return tuple(items) if isinstance(node, ast.Tuple) else items

    if isinstance(node, ast.Dict):
        return {
            _eval_node(k, names, allowed_callables, _depth + 1): _eval_node(
                v, names, allowed_callables, _depth + 1
            )
            for k, v in zip(node.keys, node.values)
        }

    if isinstance(node, ast.JoinedStr):
        pieces = []
        for value in node.values:
            if isinstance(value, ast.FormattedValue):
                pieces.append(str(_eval_node(value.value, names, allowed_callables, _depth + 1)))
            else:
                pieces.append(str(_eval_node(value, names, allowed_callables, _depth + 1)))
        return "".join(pieces)

    raise ScriptError(f"unsupported expression node: {type(node).__name__}")


def _parse(script: str) -> ast.Module:
    try:
        parsed = ast.parse(script, mode="exec")
    except SyntaxError as exc:
        raise ScriptError(f"invalid script: {exc.msg}") from exc
    for node in ast.walk(parsed):
        if isinstance(node, _DISALLOWED_NODES):
            raise ScriptError(f"disallowed syntax in script: {type(node).__name__}")
    if len(parsed.body) > MAX_SCRIPT_STATEMENTS:
        raise ScriptError("script has too many statements")
    for statement in parsed.body:
        if isinstance(statement, ast.Assign):
            if len(statement.targets) != 1 or not isinstance(statement.targets[0], ast.Name):
                raise ScriptError("only single-name assignments are allowed")
        elif not isinstance(statement, ast.Expr):
            raise ScriptError(f"unsupported statement: {type(statement).__name__}")
    return parsed


def check_script(script: str) -> List[str]:
    """Publish-time checks: denylisted tokens and allowlisted syntax."""
    errors = [f"script contains denylisted token {token!r}" for token in find_denylisted_tokens(script)]
    if errors:
        return errors
    try:
        _parse(script)
    except ScriptError as exc:
        errors.append(str(exc))
    return errors


def safe_eval_script(
    script: str,
    names: Mapping[str, Any],
    allowed_callables: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Run ``script`` and return the value of its final expression.

    Assignments bind into a local scope layered over ``names``; a script that
    ends with an assignment returns ``None``.
    """
    denied = find_denylisted_tokens(script)
    if denied:
        raise ScriptError(f"script contains denylisted token {denied[0]!r}")
    parsed = _parse(script)
    scope: Dict[str, Any] = dict(names)
    callables = allowed_callables or {}
    result: Any = None
    for statement in parsed.body:
        if isinstance(statement, ast.Assign):
            target = statement.targets[0].id
            if target in callables:
                raise ScriptError(f"cannot rebind helper {target}")
            scope[target] = _eval_node(statement.value, scope, callables)
            result = None
        else:
            result = _eval_node(statement.value, scope, callables)
    return result


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Mapping, Sequence)):
        return len(value) == 0
    return False


def _bounded_sleep(milliseconds: float) -> bool:
    delay = min(max(0.0, float(milliseconds)), MAX_SCRIPT_SLEEP_MS)
    time.sleep(delay / 1000)
    return True


def _format_number(value: Any, decimals: int = 2) -> str:
    return f"{float(value):,.{int(decimals)}f}"


def script_helpers() -> Dict[str, Callable[..., Any]]:
    """Named helpers exposed to scripts."""
    return {
        "max": max,
        "min": min,
        "round": round,
        "abs": abs,
        "len": len,
        "sum": sum,
        "str": str,
        "int": int,
        "float": float,
        "bool": bool,
        "is_empty": _is_empty,
        "is_not_empty": lambda value: not _is_empty(value),
        "generate_uuid": lambda: str(uuid.uuid4()),
        "current_timestamp": lambda: int(time.time() * 1000),
        "format_number": _format_number,
        "sleep": _bounded_sleep,
    }
