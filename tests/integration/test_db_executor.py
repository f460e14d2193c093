"""
Integration tests -- SQL executor against an in-memory SQLite database.

The assembled statements are executed for real, so these tests also catch
SQL that is well-formed on paper but rejected by an actual engine.  Shapes
that rely on DuckDB/PostgreSQL functions (DATE_TRUNC, MEDIAN) are not run
here.
"""
from __future__ import annotations

import datetime
import decimal

import pytest
from sqlalchemy import text

from src.db.connection import build_engine
from src.db.executor import _serialise_value, execute_readonly
from src.governance.skill_schema import FilterExpr
from src.skills.assembler import AssemblyStatus, assemble
from src.skills.fields import FieldResolution, FieldRole
from src.skills.router import QueryType


@pytest.fixture(scope="module")
def engine():
    eng = build_engine("sqlite://")
    with eng.begin() as conn:
        conn.execute(text(
            "CREATE TABLE orders (order_id INTEGER, region TEXT, status TEXT, amount REAL)"
        ))
        conn.execute(text(
            "INSERT INTO orders VALUES "
            "(1, 'north', 'completed', 10.0), "
            "(2, 'north', 'completed', 30.0), "
            "(3, 'south', 'cancelled', 99.0), "
            "(4, 'south', 'completed', 5.5)"
        ))
    yield eng
    eng.dispose()


def _count(engine) -> int:
    return execute_readonly("SELECT COUNT(*) AS n FROM orders", engine=engine)["data"][0]["n"]


# ── Basic execution ──────────────────────────────────────

def test_simple_select(engine):
    result = execute_readonly("SELECT 1 AS n", engine=engine)
    assert result == {"data": [{"n": 1}], "schema": [{"name": "n", "type": "integer"}]}


def test_bound_parameters(engine):
    result = execute_readonly("SELECT :x AS x", params={"x": 5}, engine=engine)
    assert result["data"] == [{"x": 5}]


def test_colon_inside_literal_left_alone(engine):
    result = execute_readonly("SELECT '10:30' AS t", engine=engine)
    assert result["data"] == [{"t": "10:30"}]
    assert result["schema"] == [{"name": "t", "type": "string"}]


def test_empty_result_schema(engine):
    result = execute_readonly("SELECT order_id FROM orders WHERE 1 = 0", engine=engine)
    assert result == {"data": [], "schema": [{"name": "order_id", "type": "unknown"}]}


def test_errors_propagate(engine):
    with pytest.raises(Exception):
        execute_readonly("SELECT * FROM missing_table", engine=engine)


def test_writes_never_persist(engine):
    before = _count(engine)
    with pytest.raises(Exception):
        execute_readonly("INSERT INTO orders VALUES (9, 'x', 'x', 1.0)", engine=engine)
    assert _count(engine) == before


# ── Assembled statements ─────────────────────────────────

_COMPLETED = [FilterExpr(column="status", op="=", value="completed")]


def _run(engine, query_type, resolutions=None, filters=None, row_cap=100, question=""):
    outcome = assemble(query_type, resolutions or {}, "orders", filters, row_cap, question=question)
    assert outcome.status is AssemblyStatus.SUCCESS
    return execute_readonly(outcome.plan.sql, engine=engine)["data"]


def test_kpi_single_applies_default_filter(engine):
    assert _run(engine, QueryType.KPI_SINGLE, filters=_COMPLETED) == [{"total_count": 3}]


def test_grouped_counts(engine):
    resolutions = {FieldRole.DIMENSION: FieldResolution(FieldRole.DIMENSION, "region", "inferred")}
    rows = _run(engine, QueryType.KPI_GROUPED, resolutions, filters=_COMPLETED)
    assert rows == [
        {"dimension": "north", "total_count": 2},
        {"dimension": "south", "total_count": 1},
    ]


def test_topn_rows(engine):
    resolutions = {FieldRole.AMOUNT: FieldResolution(FieldRole.AMOUNT, "amount", "inferred")}
    rows = _run(engine, QueryType.TOPN, resolutions, question="top 2")
    assert [r["order_id"] for r in rows] == [3, 2]


def test_preview_respects_row_cap(engine):
    assert len(_run(engine, QueryType.UNKNOWN, row_cap=2)) == 2


def test_in_filter_executes(engine):
    filters = [FilterExpr(column="region", op="in", value=["south"])]
    assert _run(engine, QueryType.KPI_SINGLE, filters=filters) == [{"total_count": 2}]


def test_contains_filter_executes(engine):
    filters = [FilterExpr(column="status", op="contains", value="cancel")]
    assert _run(engine, QueryType.KPI_SINGLE, filters=filters) == [{"total_count": 1}]


# ── Serialisation ────────────────────────────────────────

def test_serialise_value():
    assert _serialise_value(decimal.Decimal("1.50")) == 1.5
    assert _serialise_value(datetime.date(2024, 1, 2)) == "2024-01-02"
    assert _serialise_value(datetime.datetime(2024, 1, 2, 3, 4)) == "2024-01-02T03:04:00"
    assert _serialise_value(datetime.timedelta(hours=1)) == "1:00:00"
    assert _serialise_value("x") == "x"
