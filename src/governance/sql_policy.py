"""
Deterministic SQL policy gate (non-LLM).

Last check before an assembled statement is handed to the query executor.
It operates purely on the SQL text; identifiers and string literals are
masked first so a quoted column or filter value can never trip (or hide
from) a keyword check.

Checks performed:
  1. SQL must be a single SELECT statement (WITH … SELECT allowed)
  2. No write / DDL keywords (DROP, ALTER, INSERT, UPDATE, DELETE, …)
  3. No comments (--, /* */)
  4. Only allowed tables may appear after FROM / JOIN
  5. LIMIT, when present, must be ≤ max_rows
"""
from __future__ import annotations

import re
from typing import Iterable

from src.core.logging import get_logger

logger = get_logger(__name__)

# ── Compiled patterns ────────────────────────────────────

_DANGEROUS_KW = re.compile(
    r"\b(DROP|ALTER|TRUNCATE|INSERT|UPDATE|DELETE|MERGE|GRANT|REVOKE|"
    r"CREATE|REPLACE|EXECUTE|EXEC|CALL|COPY|ATTACH|DETACH|PRAGMA|INSTALL|LOAD|"
    r"SET\s+ROLE|RESET\s+ROLE)\b",
    re.IGNORECASE,
)

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_QUOTED_IDENT = re.compile(r'"(?:[^"]|"")*"')

_MULTI_STMT = re.compile(r";\s*\S")
_COMMENT_INLINE = re.compile(r"--")
_COMMENT_BLOCK = re.compile(r"/\*")

_LIMIT_RE = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)

_FROM_JOIN_RE = re.compile(
    r"\b(?:FROM|JOIN)\s+(\"(?:[^\"]|\"\")*\"|[\w.]+)",
    re.IGNORECASE,
)


def _unquote(ref: str) -> str:
    if ref.startswith('"') and ref.endswith('"'):
        return ref[1:-1].replace('""', '"')
    return ref


def _mask(sql: str) -> str:
    """Blank out string literals and quoted identifiers."""
    masked = _STRING_LITERAL.sub("''", sql)
    return _QUOTED_IDENT.sub('"_"', masked)


def referenced_tables(sql: str) -> list[str]:
    """Table names that follow FROM / JOIN, unquoted."""
    without_strings = _STRING_LITERAL.sub("''", sql)
    return [_unquote(ref) for ref in _FROM_JOIN_RE.findall(without_strings)]


def check_sql_policy(
    sql: str,
    allowed_tables: Iterable[str] | None = None,
    max_rows: int | None = None,
) -> list[str]:
    """Return a list of policy violations (empty list = allowed).

    Parameters
    ----------
    sql : str
        The statement to check.
    allowed_tables : iterable of str, optional
        Tables the statement may read.  ``None`` skips the table check.
    max_rows : int, optional
        Upper bound for an explicit LIMIT.
    """
    errors: list[str] = []
    sql_stripped = sql.strip().rstrip(";").strip()
    masked = _mask(sql_stripped)

    # ── 1. SELECT only, single statement ─────────────
    upper = masked.upper()
    if not (upper.startswith("SELECT") or upper.startswith("WITH")):
        errors.append("SQL must be a SELECT statement.")
    if _MULTI_STMT.search(masked):
        errors.append("Multi-statement SQL is not allowed (found ';' followed by another statement).")

    # ── 2. No write keywords ─────────────────────────
    m = _DANGEROUS_KW.search(masked)
    if m:
        errors.append(f"Dangerous keyword detected: '{m.group(1).upper()}'.")

    # ── 3. No comments ───────────────────────────────
    if _COMMENT_INLINE.search(masked):
        errors.append("Inline comments (--) are not allowed.")
    if _COMMENT_BLOCK.search(masked):
        errors.append("Block comments (/* */) are not allowed.")

    # ── 4. Allowed tables only ───────────────────────
    if allowed_tables is not None:
        allowed = {t.lower() for t in allowed_tables}
        for ref in referenced_tables(sql_stripped):
            if ref.lower() not in allowed:
                errors.append(f"Table '{ref}' is not in the allowed tables list.")

    # ── 5. LIMIT ≤ max_rows ─────────────────────────
    if max_rows is not None:
        for limit_match in _LIMIT_RE.finditer(masked):
            limit_val = int(limit_match.group(1))
            if limit_val > max_rows:
                errors.append(f"LIMIT {limit_val} exceeds maximum allowed ({max_rows}).")

    if errors:
        logger.warning("SQL policy violations: %s", errors)
    return errors
