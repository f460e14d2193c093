"""
Read-only SQL executor -- the query-executor collaborator of the engine.

`execute_readonly`:
  1. Opens a READ ONLY transaction (enforced by PostgreSQL)
  2. Wraps the statement in text() when bound parameters are supplied
  3. Enforces a per-statement timeout (statement_timeout, PostgreSQL only)
  4. Converts Decimal/date/datetime to JSON-safe Python types
  5. Returns rows plus a column schema
"""
from __future__ import annotations

import datetime
import decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine

from src.db.connection import is_postgres, readonly_connection, get_engine
from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    return val


def _type_name(val: Any) -> str:
    if val is None:
        return "unknown"
    if isinstance(val, bool):
        return "boolean"
    if isinstance(val, int):
        return "integer"
    if isinstance(val, (float, decimal.Decimal)):
        return "number"
    if isinstance(val, (datetime.date, datetime.datetime)):
        return "timestamp"
    return "string"


def _infer_schema(columns: list[str], rows: list[tuple]) -> list[dict[str, str]]:
    schema = []
    for idx, col in enumerate(columns):
        sample = next((row[idx] for row in rows if row[idx] is not None), None)
        schema.append({"name": col, "type": _type_name(sample)})
    return schema


def execute_readonly(
    sql: str,
    params: dict | None = None,
    timeout_ms: int | None = None,
    engine: Engine | None = None,
) -> dict[str, Any]:
    """Execute a read-only statement.

    Returns ``{"data": [row dicts], "schema": [{"name", "type"}]}``.
    Database errors propagate as SQLAlchemy exceptions.
    """
    engine = engine or get_engine()
    if timeout_ms is None:
        timeout_ms = get_settings().query_timeout_ms
    logger.info("Executing SQL (%d chars)", len(sql))

    with readonly_connection(engine) as conn:
        if is_postgres(engine):
            conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))

        if params:
            result = conn.execute(text(sql), params)
        else:
            # no binds: colons inside string literals must reach the driver as-is
            result = conn.exec_driver_sql(sql)
        columns = list(result.keys())
        raw_rows = [tuple(row) for row in result.fetchall()]

    rows = [
        {col: _serialise_value(val) for col, val in zip(columns, row)}
        for row in raw_rows
    ]
    logger.info("Returned %d rows", len(rows))
    return {"data": rows, "schema": _infer_schema(columns, raw_rows)}
