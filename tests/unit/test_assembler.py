"""
Unit tests -- SQL assembler: one statement shape per query type.
"""
import pytest

from src.governance.skill_schema import FilterExpr, MetricDefinition
from src.governance.sql_policy import check_sql_policy
from src.skills.assembler import (
    FALLBACK_TABLE_NAME,
    AssemblyInconsistency,
    AssemblyStatus,
    KpiSingleShape,
    PreviewShape,
    TrendTimeShape,
    assemble,
    detect_grain,
    detect_topn,
    render_sql,
)
from src.skills.fields import FieldResolution, FieldRole
from src.skills.router import QueryType


def _res(source="inferred", **columns):
    return {
        FieldRole(role): FieldResolution(FieldRole(role), column, source if column else None)
        for role, column in columns.items()
    }


_STATUS_DONE = FilterExpr(column="status", op="=", value="completed")


def _sql(query_type, resolutions=None, filters=None, row_cap=100, question="", table="orders", metrics=None):
    outcome = assemble(query_type, resolutions or {}, table, filters, row_cap, question=question, metrics=metrics)
    assert outcome.status is AssemblyStatus.SUCCESS, outcome.message
    return outcome.plan.sql


# ── kpi_single ───────────────────────────────────────────

def test_kpi_single_without_filters():
    sql = _sql(QueryType.KPI_SINGLE)
    assert sql == 'SELECT COUNT(*) AS total_count\nFROM "orders"'


def test_kpi_single_with_default_filter():
    sql = _sql(QueryType.KPI_SINGLE, filters=[_STATUS_DONE])
    assert sql == 'SELECT COUNT(*) AS total_count\nFROM "orders"\nWHERE "status" = \'completed\''


def test_fallback_table_name():
    outcome = assemble(QueryType.KPI_SINGLE, {}, None, None, 100)
    assert outcome.plan.table_name == FALLBACK_TABLE_NAME == "main_table_1"
    assert '"main_table_1"' in outcome.plan.sql


# ── trend_time ───────────────────────────────────────────

def test_trend_by_day():
    sql = _sql(QueryType.TREND_TIME, _res(time="order_time"), filters=[_STATUS_DONE])
    assert "DATE_TRUNC('day', CAST(\"order_time\" AS TIMESTAMP)) AS period" in sql
    assert "WHERE \"status\" = 'completed'" in sql
    assert sql.endswith("GROUP BY period\nORDER BY period\nLIMIT 100")


@pytest.mark.parametrize("question, grain", [
    ("按月趋势", "month"),
    ("weekly trend", "week"),
    ("yearly trend", "year"),
    ("订单趋势", "day"),
])
def test_trend_grain_from_question(question, grain):
    sql = _sql(QueryType.TREND_TIME, _res(time="order_time"), question=question)
    assert f"DATE_TRUNC('{grain}'," in sql


def test_trend_without_time_needs_clarification():
    outcome = assemble(QueryType.TREND_TIME, _res(time=None), "orders", None, 100)
    assert outcome.status is AssemblyStatus.NEED_CLARIFICATION
    assert outcome.plan is None
    assert "time field" in outcome.message


# ── kpi_grouped / comparison ─────────────────────────────

@pytest.mark.parametrize("query_type", [QueryType.KPI_GROUPED, QueryType.COMPARISON])
def test_grouped(query_type):
    sql = _sql(query_type, _res(dimension="region"))
    assert sql == "\n".join([
        'SELECT "region" AS dimension, COUNT(*) AS total_count',
        'FROM "orders"',
        'GROUP BY "region"',
        "ORDER BY total_count DESC",
        "LIMIT 100",
    ])


def test_grouped_without_dimension_needs_clarification():
    outcome = assemble(QueryType.KPI_GROUPED, _res(dimension=None), "orders", None, 100)
    assert outcome.status is AssemblyStatus.NEED_CLARIFICATION
    assert "dimension field" in outcome.message


# ── distribution ─────────────────────────────────────────

def test_distribution():
    sql = _sql(QueryType.DISTRIBUTION, _res(amount="total_amount"))
    for fn in ("AVG", "MEDIAN", "STDDEV_POP", "MIN", "MAX"):
        assert f'{fn}("total_amount")' in sql
    assert "LIMIT" not in sql


def test_distribution_without_amount_needs_clarification():
    outcome = assemble(QueryType.DISTRIBUTION, {}, "orders", None, 100)
    assert outcome.status is AssemblyStatus.NEED_CLARIFICATION
    assert "amount field" in outcome.message


# ── topn ─────────────────────────────────────────────────

def test_topn_row_level():
    sql = _sql(QueryType.TOPN, _res(amount="amount", dimension="status"), question="top 5 orders")
    assert sql.startswith("SELECT *")
    assert sql.endswith('ORDER BY "amount" DESC\nLIMIT 5')


def test_topn_grouped_when_question_names_dimension():
    resolutions = {
        FieldRole.AMOUNT: FieldResolution(FieldRole.AMOUNT, "amount", "inferred"),
        FieldRole.DIMENSION: FieldResolution(FieldRole.DIMENSION, "region", "question"),
    }
    sql = _sql(QueryType.TOPN, resolutions, question="前3 region by sales")
    assert 'SELECT "region" AS dimension, SUM("amount") AS total_amount' in sql
    assert 'GROUP BY "region"' in sql
    assert sql.endswith("ORDER BY total_amount DESC\nLIMIT 3")


def test_topn_capped_by_row_cap():
    sql = _sql(QueryType.TOPN, _res(amount="amount"), question="top 50", row_cap=10)
    assert sql.endswith("LIMIT 10")


def test_topn_default_size():
    assert _sql(QueryType.TOPN, _res(amount="amount"), question="highest orders").endswith("LIMIT 10")


def test_topn_without_amount_or_dimension_needs_clarification():
    outcome = assemble(QueryType.TOPN, {}, "orders", None, 100, question="top 5")
    assert outcome.status is AssemblyStatus.NEED_CLARIFICATION


# ── unknown ──────────────────────────────────────────────

def test_unknown_previews_rows():
    assert _sql(QueryType.UNKNOWN, filters=[_STATUS_DONE]) == (
        'SELECT *\nFROM "orders"\nWHERE "status" = \'completed\'\nLIMIT 100'
    )


# ── Row cap ──────────────────────────────────────────────

@pytest.mark.parametrize("row_cap, expected", [(10_000, 500), (0, 1), (-5, 1), (25, 25)])
def test_row_cap_clamped(row_cap, expected):
    assert _sql(QueryType.UNKNOWN, row_cap=row_cap).endswith(f"LIMIT {expected}")


@pytest.mark.parametrize("row_cap", ["100", 1.5, None, True])
def test_non_integer_row_cap_is_an_error(row_cap):
    outcome = assemble(QueryType.UNKNOWN, {}, "orders", None, row_cap)
    assert outcome.status is AssemblyStatus.ERROR
    assert outcome.plan is None


# ── Configured metrics ───────────────────────────────────

def test_metric_named_in_question_is_used():
    metrics = {"gmv": MetricDefinition(label="GMV", aggregation="sum", column="total_amount")}
    sql = _sql(QueryType.KPI_SINGLE, question="what is the gmv", metrics=metrics)
    assert sql.startswith('SELECT SUM("total_amount") AS gmv')


def test_metric_matched_by_label():
    metrics = {"buyers": MetricDefinition(label="买家数", aggregation="count_distinct", column="user_id")}
    sql = _sql(QueryType.KPI_GROUPED, _res(dimension="region"), question="按地区统计买家数", metrics=metrics)
    assert 'COUNT(DISTINCT "user_id") AS buyers' in sql
    assert "ORDER BY buyers DESC" in sql


def test_metric_where_becomes_filter_clause():
    metrics = {"paid_orders": MetricDefinition(
        label="Paid orders", aggregation="count",
        where=[FilterExpr(column="status", op="=", value="paid")],
    )}
    sql = _sql(QueryType.KPI_SINGLE, question="paid_orders", metrics=metrics)
    assert "COUNT(*) FILTER (WHERE \"status\" = 'paid') AS paid_orders" in sql


def test_unmentioned_metric_ignored():
    metrics = {"gmv": MetricDefinition(label="GMV", aggregation="sum", column="total_amount")}
    assert _sql(QueryType.KPI_SINGLE, question="how many", metrics=metrics).startswith("SELECT COUNT(*)")


def test_non_identifier_metric_alias_is_quoted():
    metrics = {"成交额": MetricDefinition(label="成交额", aggregation="sum", column="amount")}
    assert 'AS "成交额"' in _sql(QueryType.KPI_SINGLE, question="成交额是多少", metrics=metrics)


# ── Plan contents ────────────────────────────────────────

def test_plan_fields():
    outcome = assemble(QueryType.TREND_TIME, _res(time="order_time"), "orders", None, 100)
    plan = outcome.plan
    assert plan.tool == "sql_query_tool"
    assert plan.params == {"query": plan.sql}
    assert plan.bindings == {"time": "order_time"}
    assert plan.query_type is QueryType.TREND_TIME
    assert isinstance(plan.shape, TrendTimeShape)


@pytest.mark.parametrize("query_type, resolutions", [
    (QueryType.KPI_SINGLE, {}),
    (QueryType.KPI_GROUPED, _res(dimension="region")),
    (QueryType.TREND_TIME, _res(time="order_time")),
    (QueryType.DISTRIBUTION, _res(amount="amount")),
    (QueryType.TOPN, _res(amount="amount")),
    (QueryType.UNKNOWN, {}),
])
def test_every_shape_passes_policy(query_type, resolutions):
    sql = _sql(query_type, resolutions, filters=[_STATUS_DONE])
    assert check_sql_policy(sql, allowed_tables=["orders"], max_rows=500) == []


def test_same_input_same_sql():
    first = _sql(QueryType.TREND_TIME, _res(time="order_time"), filters=[_STATUS_DONE])
    assert _sql(QueryType.TREND_TIME, _res(time="order_time"), filters=[_STATUS_DONE]) == first


# ── Shape invariants ─────────────────────────────────────

def test_trend_shape_requires_time_column():
    with pytest.raises(AssemblyInconsistency):
        TrendTimeShape("")


def test_trend_shape_rejects_unknown_grain():
    with pytest.raises(AssemblyInconsistency):
        TrendTimeShape("order_time", grain="fortnight")


def test_render_unknown_shape():
    with pytest.raises(AssemblyInconsistency):
        render_sql(object(), "orders", "", 10)


def test_render_preview_directly():
    assert render_sql(PreviewShape(), "t", "", 7) == 'SELECT *\nFROM "t"\nLIMIT 7'
    assert render_sql(KpiSingleShape(), "t", "", 7) == 'SELECT COUNT(*) AS total_count\nFROM "t"'


# ── Question cues ────────────────────────────────────────

def test_detect_grain_default():
    assert detect_grain("show me the trend") == "day"


@pytest.mark.parametrize("question, n", [("top 3", 3), ("Top10 items", 10), ("前5名", 5), ("前十", 10), ("best", 10)])
def test_detect_topn(question, n):
    assert detect_topn(question) == n
