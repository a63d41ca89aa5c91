"""Placeholder templating and the condition-node expression language.

Placeholders use ``${key}`` and resolve against the context store, then the
execution input, then execution metadata. Dotted keys walk nested mappings
(``${quant.confidence}``) when no flat key of that name exists.

Condition grammar, loosest binding first::

    expr      := or_expr
    or_expr   := and_expr ("||" and_expr)*
    and_expr  := unary ("&&" unary)*
    unary     := "!" unary | "(" expr ")" | predicate | comparison | literal
    predicate := operand "." ("contains"|"equals"|"startsWith"|"endsWith") "(" operand ")"
    comparison:= operand (">="|"<="|"!="|"=="|">"|"<") operand

Anything that does not parse, or that still holds an unresolved placeholder
after substitution, evaluates to ``False``.
"""
from __future__ import annotations

import re
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from panelflow.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r"\$\{([^{}]+)\}")

MISSING = object()

_COMPARISON_OPERATORS = (">=", "<=", "!=", "==", ">", "<")

_PREDICATE_RE = re.compile(
    r"^(?P<subject>.+?)\.(?P<method>contains|equals|startsWith|endsWith|starts_with|ends_with)"
    r"\((?P<argument>.*)\)$",
    re.DOTALL,
)


class ConditionSyntaxError(ValueError):
    """Raised internally when an expression does not match the grammar."""


def lookup(path: str, sources: Sequence[Mapping[str, Any]]) -> Any:
    """Return the first value for ``path`` across ``sources`` or ``MISSING``."""
    key = path.strip()
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        if key in source:
            return source[key]
        if "." in key:
            current: Any = source
            for part in key.split("."):
                if isinstance(current, Mapping) and part in current:
                    current = current[part]
                else:
                    current = MISSING
                    break
            if current is not MISSING:
                return current
    return MISSING


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def substitute(
    template: str, sources: Sequence[Mapping[str, Any]]
) -> Tuple[str, List[str]]:
    """Replace placeholders in ``template``; return the text and unresolved keys."""
    missing: List[str] = []

    def _replace(match: re.Match) -> str:
        value = lookup(match.group(1), sources)
        if value is MISSING:
            missing.append(match.group(1).strip())
            return match.group(0)
        return format_value(value)

    return PLACEHOLDER_RE.sub(_replace, template), missing


def render_template(template: Optional[str], sources: Sequence[Mapping[str, Any]]) -> str:
    """Fill placeholders for human-facing text; unknown keys are left verbatim."""
    if not template:
        return ""
    rendered, _missing = substitute(str(template), sources)
    return rendered


def resolve_value(value: Any, sources: Sequence[Mapping[str, Any]]) -> Any:
    """Resolve placeholders inside nested configuration values.

    A string that is exactly one placeholder resolves to the raw value, keeping
    its type; mixed strings are rendered as text.
    """
    if isinstance(value, str):
        match = PLACEHOLDER_RE.fullmatch(value.strip())
        if match:
            found = lookup(match.group(1), sources)
            return None if found is MISSING else found
        return render_template(value, sources)
    if isinstance(value, dict):
        return {k: resolve_value(v, sources) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, sources) for v in value]
    return value


def validate_expression(expression: Optional[str]) -> List[str]:
    if not expression or not str(expression).strip():
        return ["condition expression is required"]
    depth = 0
    quote: Optional[str] = None
    for char in str(expression):
        if quote:
            if char == quote:
                quote = None
            continue
        if char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                break
    if depth != 0:
        return ["unbalanced parentheses in condition expression"]
    return []


def evaluate_condition(
    expression: Optional[str], sources: Sequence[Mapping[str, Any]]
) -> bool:
    if not expression or not str(expression).strip():
        return False
    resolved, missing = substitute(str(expression), sources)
    if missing:
        logger.info("condition_unresolved_placeholders", expression=expression, missing=missing)
        return False
    try:
        return _evaluate(resolved)
    except ConditionSyntaxError as exc:
        logger.warning("condition_evaluation_failed", expression=expression, error=str(exc))
        return False


def _evaluate(expression: str) -> bool:
    expr = _strip_outer_parens(expression.strip())
    if not expr:
        raise ConditionSyntaxError("empty expression")

    parts = _split_top_level(expr, "||")
    if len(parts) > 1:
        return any(_evaluate(part) for part in parts)
    parts = _split_top_level(expr, "&&")
    if len(parts) > 1:
        return all(_evaluate(part) for part in parts)

    if expr.startswith("!") and not expr.startswith("!="):
        return not _evaluate(expr[1:])

    lowered = expr.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False

    predicate = _PREDICATE_RE.match(expr)
    if predicate:
        return _apply_predicate(
            _strip_quotes(predicate.group("subject")),
            predicate.group("method"),
            _strip_quotes(predicate.group("argument")),
        )

    for operator in _COMPARISON_OPERATORS:
        position = _find_top_level(expr, operator)
        if position >= 0:
            return _compare(expr[:position], expr[position + len(operator):], operator)

    raise ConditionSyntaxError(f"cannot evaluate {expr!r}")


def _apply_predicate(subject: str, method: str, argument: str) -> bool:
    if method == "contains":
        return argument in subject
    if method == "equals":
        return subject == argument
    if method in ("startsWith", "starts_with"):
        return subject.startswith(argument)
    return subject.endswith(argument)


def _compare(left: str, right: str, operator: str) -> bool:
    lhs = _strip_quotes(left)
    rhs = _strip_quotes(right)
    if not lhs or not rhs:
        raise ConditionSyntaxError(f"missing operand for {operator}")
    try:
        a, b = float(lhs), float(rhs)
    except ValueError:
        if operator == "==":
            return lhs == rhs
        if operator == "!=":
            return lhs != rhs
        raise ConditionSyntaxError(f"non-numeric operands for {operator}")
    if operator == ">=":
        return a >= b
    if operator == "<=":
        return a <= b
    if operator == "!=":
        return a != b
    if operator == "==":
        return a == b
    if operator == ">":
        return a > b
    return a < b


def _strip_quotes(text: str) -> str:
    value = text.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value


def _strip_outer_parens(expr: str) -> str:
    while expr.startswith("(") and _matching_paren(expr, 0) == len(expr) - 1:
        expr = expr[1:-1].strip()
    return expr


def _matching_paren(expr: str, opening: int) -> int:
    depth = 0
    quote: Optional[str] = None
    for position in range(opening, len(expr)):
        char = expr[position]
        if quote:
            if char == quote:
                quote = None
            continue
        if char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return position
    return -1


def _scan_top_level(expr: str, token: str) -> List[int]:
    positions: List[int] = []
    depth = 0
    quote: Optional[str] = None
    position = 0
    while position < len(expr):
        char = expr[position]
        if quote:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif depth == 0 and expr.startswith(token, position):
            positions.append(position)
            position += len(token)
            continue
        position += 1
    return positions


def _find_top_level(expr: str, token: str) -> int:
    positions = _scan_top_level(expr, token)
    return positions[0] if positions else -1


def _split_top_level(expr: str, separator: str) -> List[str]:
    positions = _scan_top_level(expr, separator)
    if not positions:
        return [expr]
    parts: List[str] = []
    previous = 0
    for position in positions:
        parts.append(expr[previous:position])
        previous = position + len(separator)
    parts.append(expr[previous:])
    return parts
