"""
Filter compiler -- renders trusted ``FilterExpr`` objects as SQL predicates.

Inputs come from a validated ``UserSkillConfig``: column names are already
restricted to safe identifiers and literals are bounded.  Identifiers are
still double-quoted and string literals still escaped here, so the generated
text stays well-formed for any value the schema admits.
"""
from __future__ import annotations

import math
from typing import Any, Sequence

from src.governance.skill_schema import FilterExpr, RelativeTimeValue

_COMPARISON_OPS = {"=", "!=", ">", ">=", "<", "<="}


def quote_identifier(name: str) -> str:
    """Double-quote an identifier (ANSI / DuckDB / PostgreSQL / SQLite)."""
    return '"' + name.strip().replace('"', '""') + '"'


def _quote_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return repr(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite number cannot be rendered as SQL: {value!r}")
        return repr(value)
    if isinstance(value, str):
        return _quote_string(value)
    if isinstance(value, (list, tuple)):
        return "(" + ", ".join(render_literal(v) for v in value) + ")"
    raise TypeError(f"Unsupported literal type: {type(value).__name__}")


def render_relative_time(value: RelativeTimeValue) -> str:
    sign = "-" if value.direction == "past" else "+"
    return f"CURRENT_DATE {sign} INTERVAL '{value.amount} {value.unit}'"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def compile_filter(expr: FilterExpr) -> str:
    col = quote_identifier(expr.column)
    value = expr.value

    if isinstance(value, RelativeTimeValue):
        op = expr.op if expr.op in _COMPARISON_OPS else ">="
        return f"{col} {op} {render_relative_time(value)}"

    if expr.op in ("in", "not_in"):
        items = list(value) if isinstance(value, list) else [value]
        if not items:
            return "1 = 0" if expr.op == "in" else "1 = 1"
        keyword = "IN" if expr.op == "in" else "NOT IN"
        return f"{col} {keyword} {render_literal(items)}"

    if expr.op == "contains":
        needle = value if isinstance(value, str) else str(value)
        return f"{col} LIKE {_quote_string('%' + _escape_like(needle) + '%')} ESCAPE '\\'"

    if isinstance(value, list):
        # Comparison against a list degrades to membership.
        keyword = "NOT IN" if expr.op == "!=" else "IN"
        if not value:
            return "1 = 1" if keyword == "NOT IN" else "1 = 0"
        return f"{col} {keyword} {render_literal(value)}"

    return f"{col} {expr.op} {render_literal(value)}"


def compile_predicates(filters: Sequence[FilterExpr] | None) -> list[str]:
    return [compile_filter(f) for f in filters or []]


def compile_where_clause(filters: Sequence[FilterExpr] | None) -> str:
    """``WHERE a AND b`` for the given filters, ``""`` when there are none."""
    predicates = compile_predicates(filters)
    if not predicates:
        return ""
    return "WHERE " + " AND ".join(predicates)
