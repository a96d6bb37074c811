"""Condition evaluator for route step branches.

Evaluates minimal boolean expressions against a single record. Uses a
custom clause parser: no ``eval``, ``exec``, or ``ast.parse``.

Supported syntax
~~~~~~~~~~~~~~~~
- Operators: ``=``, ``!=``, ``<``, ``>``, ``<=``, ``>=``
- Conjunction: ``&&`` (AND, all clauses must be true)
- Keys: record field names, dotted paths into nested objects
  (``customer.tier``), or a bare key for a truthiness check
- Literals: strings (``"quoted"``), numbers, booleans (``true``/``false``)

Examples::

    evaluate_condition('status=active', record)
    evaluate_condition('amount >= 100 && currency="EUR"', record)
    evaluate_condition('customer.vip', record)
"""

from __future__ import annotations

import enum
from typing import Any

_MISSING = object()

# Longest operators first so that "<=" is not split as "<".
_OPERATORS = ("!=", "<=", ">=", "=", "<", ">")


class ConditionError(Exception):
    """Raised when a condition expression cannot be parsed or evaluated."""


def evaluate_condition(expression: str, record: dict[str, Any]) -> bool:
    """Evaluate *expression* against *record* and return a boolean.

    Splits on ``&&`` and returns ``True`` only if every clause passes.
    An empty expression is always true.

    Args:
        expression: The condition string (e.g. ``"status=active"``).
        record: The record whose fields the expression references.

    Returns:
        The boolean result of the expression.

    Raises:
        ConditionError: If the expression is syntactically invalid.
    """
    if not expression or not expression.strip():
        return True

    for clause in expression.split("&&"):
        clause = clause.strip()
        if not clause:
            continue
        if not _evaluate_clause(clause, record):
            return False
    return True


def validate_condition_syntax(expression: str) -> str | None:
    """Check whether *expression* is syntactically valid.

    Returns:
        ``None`` if valid, or an error message string.
    """
    if not expression or not expression.strip():
        return None
    try:
        for clause in expression.split("&&"):
            clause = clause.strip()
            if clause:
                _parse_clause(clause)
    except ConditionError as exc:
        return str(exc)
    return None


# ---------------------------------------------------------------------------
# Internal evaluator
# ---------------------------------------------------------------------------


def resolve_path(record: dict[str, Any], key: str) -> Any:
    """Look up a dotted *key* in *record*; missing paths return ``None``."""
    current: Any = record
    for part in key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def _parse_literal(raw: str) -> Any:
    """Parse a literal into a string, number or boolean."""
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ('"', "'"):
        return raw[1:-1]
    lowered = raw.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    return raw


def _find_operator(clause: str) -> tuple[int, str] | None:
    in_quotes = ""
    i = 0
    while i < len(clause):
        ch = clause[i]
        if in_quotes:
            if ch == in_quotes:
                in_quotes = ""
        elif ch in ('"', "'"):
            in_quotes = ch
        else:
            for op in _OPERATORS:
                if clause.startswith(op, i):
                    return i, op
        i += 1
    return None


def _parse_clause(clause: str) -> tuple[str, str, Any] | tuple[str]:
    """Parse a clause into (key, operator, literal) or (bare_key,)."""
    if "==" in clause:
        raise ConditionError(
            f"Unsupported operator '==' in condition: {clause!r}; use '=' for equality"
        )
    for token in clause.split():
        if token in ("and", "or", "not", "||"):
            raise ConditionError(
                f"Unsupported operator '{token}' in condition: {clause!r}; "
                "use '&&' for AND"
            )

    found = _find_operator(clause)
    if found is None:
        key = clause.strip()
        if not key or " " in key:
            raise ConditionError(f"Invalid condition syntax: {clause!r}")
        return (key,)

    index, op = found
    key = clause[:index].strip()
    raw_value = clause[index + len(op):].strip()
    if not key or not raw_value:
        raise ConditionError(f"Invalid condition syntax: {clause!r}")
    return (key, op, _parse_literal(raw_value))


def _normalize(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _evaluate_clause(clause: str, record: dict[str, Any]) -> bool:
    parsed = _parse_clause(clause)

    if len(parsed) == 1:
        return bool(resolve_path(record, parsed[0]))

    key, op, literal = parsed  # type: ignore[misc]
    actual = _normalize(resolve_path(record, key))

    if op == "=":
        return _equals(actual, literal)
    if op == "!=":
        return not _equals(actual, literal)

    if actual is None or literal is None:
        return False
    try:
        if isinstance(literal, (int, float)) and not isinstance(literal, bool):
            actual = float(actual)
        if op == "<":
            return actual < literal
        if op == ">":
            return actual > literal
        if op == "<=":
            return actual <= literal
        if op == ">=":
            return actual >= literal
    except (TypeError, ValueError):
        return False
    raise ConditionError(f"Unsupported operator: {op!r}")


def _equals(actual: Any, literal: Any) -> bool:
    if isinstance(literal, bool) or isinstance(actual, bool):
        return actual == literal
    if isinstance(literal, (int, float)) and isinstance(actual, (int, float)):
        return actual == literal
    if actual is None:
        return literal is None or literal == ""
    return str(actual) == str(literal)
