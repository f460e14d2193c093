"""
SQL assembler -- turns (query type, resolved fields, trusted config) into SQL.

The assembler never invents SQL.  Each query type maps to one statement
shape; each shape is a small frozen dataclass carrying exactly the columns it
needs, so a trend plan without a time column cannot be constructed.

Shapes:
  kpi_single    SELECT <agg> FROM t [WHERE]
  kpi_grouped   SELECT dim, <agg> ... GROUP BY dim ORDER BY <agg> DESC LIMIT n
  comparison    same statement as kpi_grouped
  trend_time    DATE_TRUNC('<grain>', time) ... GROUP BY period ORDER BY period LIMIT n
  distribution  AVG / MEDIAN / STDDEV_POP / MIN / MAX over the amount column
  topn          ranking by amount (grouped when the question names a dimension)
  unknown       row-level preview: SELECT * FROM t [WHERE] LIMIT n

Default filters from the table config become the WHERE clause of every shape;
no filters means no WHERE.  LIMIT is only emitted for shapes that can return
more than one row.

Outcomes:
  SUCCESS             plan populated
  NEED_CLARIFICATION  a field the shape requires could not be resolved
  ERROR               inconsistent input reached the assembler (internal defect)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Sequence, Union

from src.governance.skill_schema import FilterExpr, MetricDefinition
from src.skills.fields import FieldResolution, FieldRole
from src.skills.filters import compile_predicates, compile_where_clause, quote_identifier
from src.skills.router import QueryType
from src.core.utils import clamp
from src.core.logging import get_logger

logger = get_logger(__name__)

FALLBACK_TABLE_NAME = "main_table_1"
MAX_ROW_CAP = 500
TOOL_ID = "sql_query_tool"
DEFAULT_TOPN = 10


class AssemblyStatus(str, Enum):
    SUCCESS = "SUCCESS"
    NEED_CLARIFICATION = "NEED_CLARIFICATION"
    ERROR = "ERROR"


class AssemblyInconsistency(Exception):
    """A shape was asked for without the fields it needs."""


def _require(value: str | None, what: str) -> None:
    if not value:
        raise AssemblyInconsistency(f"{what} is required")


# ── Aggregates ───────────────────────────────────────────

_PLAIN_ALIAS_RE = re.compile(r"[a-z_][a-z0-9_]*")


def _alias(name: str) -> str:
    return name if _PLAIN_ALIAS_RE.fullmatch(name) else quote_identifier(name)


@dataclass(frozen=True)
class Aggregate:
    expression: str
    alias: str = "total_count"

    def render(self) -> str:
        return f"{self.expression} AS {_alias(self.alias)}"


COUNT_ALL = Aggregate("COUNT(*)")


def aggregate_for_metric(name: str, metric: MetricDefinition) -> Aggregate:
    """SQL aggregate for a configured metric, with its own WHERE as a FILTER clause."""
    if metric.aggregation == "count":
        expr = "COUNT(*)"
    elif metric.aggregation == "count_distinct":
        expr = f"COUNT(DISTINCT {quote_identifier(metric.column or '')})"
    else:
        expr = f"{metric.aggregation.upper()}({quote_identifier(metric.column or '')})"

    predicates = compile_predicates(metric.where)
    if predicates:
        expr += f" FILTER (WHERE {' AND '.join(predicates)})"
    return Aggregate(expr, name)


def pick_aggregate(question: str, metrics: Mapping[str, MetricDefinition] | None) -> Aggregate:
    """Use a configured metric when the question names it (key or label), else COUNT(*)."""
    text = question.lower()
    for name, metric in (metrics or {}).items():
        if name.lower() in text or metric.label.lower() in text:
            logger.info("Question references configured metric %s", name)
            return aggregate_for_metric(name, metric)
    return COUNT_ALL


# ── Shapes ───────────────────────────────────────────────

@dataclass(frozen=True)
class KpiSingleShape:
    aggregate: Aggregate = COUNT_ALL


@dataclass(frozen=True)
class KpiGroupedShape:
    dimension: str
    aggregate: Aggregate = COUNT_ALL

    def __post_init__(self) -> None:
        _require(self.dimension, "dimension column")


@dataclass(frozen=True)
class TrendTimeShape:
    time_column: str
    grain: str = "day"
    aggregate: Aggregate = COUNT_ALL

    def __post_init__(self) -> None:
        _require(self.time_column, "time column")
        if self.grain not in _GRAINS:
            raise AssemblyInconsistency(f"unsupported time grain '{self.grain}'")


@dataclass(frozen=True)
class DistributionShape:
    amount_column: str

    def __post_init__(self) -> None:
        _require(self.amount_column, "amount column")


@dataclass(frozen=True)
class TopNShape:
    n: int
    amount_column: str | None = None
    dimension: str | None = None

    def __post_init__(self) -> None:
        if not self.amount_column and not self.dimension:
            raise AssemblyInconsistency("top-N needs an amount column or a dimension")
        if self.n < 1:
            raise AssemblyInconsistency("top-N size must be positive")


@dataclass(frozen=True)
class PreviewShape:
    pass


Shape = Union[KpiSingleShape, KpiGroupedShape, TrendTimeShape, DistributionShape, TopNShape, PreviewShape]


# ── Question cues used by the shapes ─────────────────────

_GRAINS = ("hour", "day", "week", "month", "year")

_GRAIN_KEYWORDS: dict[str, list[str]] = {
    "hour": ["按小时", "每小时", "hourly", "per hour", "by hour"],
    "week": ["按周", "每周", "weekly", "per week", "by week"],
    "month": ["按月", "每月", "monthly", "per month", "by month"],
    "year": ["按年", "每年", "yearly", "annual", "per year", "by year"],
}

_TOPN_RE = re.compile(r"(?:top\s*|前\s*)(\d+)", re.IGNORECASE)
_TOPN_CJK_DIGITS = {"前三": 3, "前五": 5, "前十": 10, "前二十": 20}


def detect_grain(question: str) -> str:
    """Finest grain the question asks for; ``day`` when it does not say."""
    text = question.lower()
    for grain in _GRAINS:
        if any(kw in text for kw in _GRAIN_KEYWORDS.get(grain, [])):
            return grain
    return "day"


def detect_topn(question: str, default: int = DEFAULT_TOPN) -> int:
    m = _TOPN_RE.search(question)
    if m:
        return max(int(m.group(1)), 1)
    for word, n in _TOPN_CJK_DIGITS.items():
        if word in question:
            return n
    return default


# ── Shape selection ──────────────────────────────────────

_CLARIFY: dict[FieldRole, str] = {
    FieldRole.TIME: (
        "Need clarification:\n- Please choose the time field used for the trend "
        "(for example order time, payment time or created time)."
    ),
    FieldRole.DIMENSION: (
        "Need clarification:\n- Please name the dimension field to group by "
        "(for example region, channel or category)."
    ),
    FieldRole.AMOUNT: (
        "Need clarification:\n- Please choose the amount field to analyse "
        "(for example paid amount or order amount)."
    ),
}

REQUIRED_ROLES: dict[QueryType, tuple[FieldRole, ...]] = {
    QueryType.KPI_SINGLE: (),
    QueryType.KPI_GROUPED: (FieldRole.DIMENSION,),
    QueryType.COMPARISON: (FieldRole.DIMENSION,),
    QueryType.TREND_TIME: (FieldRole.TIME,),
    QueryType.DISTRIBUTION: (FieldRole.AMOUNT,),
    QueryType.TOPN: (FieldRole.AMOUNT, FieldRole.DIMENSION),
    QueryType.UNKNOWN: (),
}


@dataclass(frozen=True)
class _Clarification:
    role: FieldRole

    @property
    def message(self) -> str:
        return _CLARIFY[self.role]


def _column(resolutions: Mapping[FieldRole, FieldResolution], role: FieldRole) -> str | None:
    res = resolutions.get(role)
    return res.column if res is not None else None


def select_shape(
    query_type: QueryType,
    resolutions: Mapping[FieldRole, FieldResolution],
    question: str = "",
    aggregate: Aggregate = COUNT_ALL,
) -> Shape | _Clarification:
    """Pick the statement shape; a missing mandatory field yields a clarification."""
    if query_type is QueryType.KPI_SINGLE:
        return KpiSingleShape(aggregate)

    if query_type in (QueryType.KPI_GROUPED, QueryType.COMPARISON):
        dim = _column(resolutions, FieldRole.DIMENSION)
        if not dim:
            return _Clarification(FieldRole.DIMENSION)
        return KpiGroupedShape(dim, aggregate)

    if query_type is QueryType.TREND_TIME:
        ts = _column(resolutions, FieldRole.TIME)
        if not ts:
            return _Clarification(FieldRole.TIME)
        return TrendTimeShape(ts, detect_grain(question), aggregate)

    if query_type is QueryType.DISTRIBUTION:
        amount = _column(resolutions, FieldRole.AMOUNT)
        if not amount:
            return _Clarification(FieldRole.AMOUNT)
        return DistributionShape(amount)

    if query_type is QueryType.TOPN:
        amount = _column(resolutions, FieldRole.AMOUNT)
        dim_res = resolutions.get(FieldRole.DIMENSION)
        # rank groups only when the question itself names the dimension
        dim = dim_res.column if dim_res is not None and dim_res.source in ("mapping", "question") else None
        if not amount and not dim:
            return _Clarification(FieldRole.AMOUNT)
        return TopNShape(detect_topn(question), amount, dim)

    if query_type is QueryType.UNKNOWN:
        return PreviewShape()

    raise AssemblyInconsistency(f"no statement shape for query type '{query_type}'")


# ── Rendering ────────────────────────────────────────────

def render_sql(shape: Shape, table_name: str, where_clause: str, row_cap: int) -> str:
    """Render *shape* against *table_name*; *where_clause* may be empty."""
    table = quote_identifier(table_name)
    parts: list[str]

    if isinstance(shape, KpiSingleShape):
        parts = [f"SELECT {shape.aggregate.render()}", f"FROM {table}"]
        if where_clause:
            parts.append(where_clause)

    elif isinstance(shape, KpiGroupedShape):
        dim = quote_identifier(shape.dimension)
        parts = [f"SELECT {dim} AS dimension, {shape.aggregate.render()}", f"FROM {table}"]
        if where_clause:
            parts.append(where_clause)
        parts += [
            f"GROUP BY {dim}",
            f"ORDER BY {_alias(shape.aggregate.alias)} DESC",
            f"LIMIT {row_cap}",
        ]

    elif isinstance(shape, TrendTimeShape):
        ts = quote_identifier(shape.time_column)
        bucket = f"DATE_TRUNC('{shape.grain}', CAST({ts} AS TIMESTAMP))"
        parts = [f"SELECT {bucket} AS period, {shape.aggregate.render()}", f"FROM {table}"]
        if where_clause:
            parts.append(where_clause)
        parts += ["GROUP BY period", "ORDER BY period", f"LIMIT {row_cap}"]

    elif isinstance(shape, DistributionShape):
        x = quote_identifier(shape.amount_column)
        parts = [
            "SELECT",
            f"  AVG({x}) AS mean_value,",
            f"  MEDIAN({x}) AS median_value,",
            f"  STDDEV_POP({x}) AS stddev_value,",
            f"  MIN({x}) AS min_value,",
            f"  MAX({x}) AS max_value",
            f"FROM {table}",
        ]
        if where_clause:
            parts.append(where_clause)

    elif isinstance(shape, TopNShape):
        n = min(shape.n, row_cap)
        if shape.dimension:
            dim = quote_identifier(shape.dimension)
            agg = Aggregate(f"SUM({quote_identifier(shape.amount_column)})", "total_amount") \
                if shape.amount_column else COUNT_ALL
            parts = [f"SELECT {dim} AS dimension, {agg.render()}", f"FROM {table}"]
            if where_clause:
                parts.append(where_clause)
            parts += [f"GROUP BY {dim}", f"ORDER BY {agg.alias} DESC", f"LIMIT {n}"]
        else:
            parts = ["SELECT *", f"FROM {table}"]
            if where_clause:
                parts.append(where_clause)
            parts += [f"ORDER BY {quote_identifier(shape.amount_column or '')} DESC", f"LIMIT {n}"]

    elif isinstance(shape, PreviewShape):
        parts = ["SELECT *", f"FROM {table}"]
        if where_clause:
            parts.append(where_clause)
        parts.append(f"LIMIT {row_cap}")

    else:
        raise AssemblyInconsistency(f"unknown shape {type(shape).__name__}")

    return "\n".join(parts)


# ── Public API ───────────────────────────────────────────

@dataclass(frozen=True)
class QueryPlan:
    query_type: QueryType
    table_name: str
    sql: str
    shape: Shape
    bindings: dict[str, str] = field(default_factory=dict)
    where_clause: str = ""
    tool: str = TOOL_ID

    @property
    def params(self) -> dict[str, str]:
        return {"query": self.sql}


@dataclass(frozen=True)
class AssemblyOutcome:
    status: AssemblyStatus
    plan: QueryPlan | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is AssemblyStatus.SUCCESS


def resolve_table_name(active_table: str | None) -> str:
    return active_table or FALLBACK_TABLE_NAME


def assemble(
    query_type: QueryType,
    resolutions: Mapping[FieldRole, FieldResolution],
    table_name: str | None,
    default_filters: Sequence[FilterExpr] | None,
    row_cap: int,
    question: str = "",
    metrics: Mapping[str, MetricDefinition] | None = None,
) -> AssemblyOutcome:
    """Build the final statement, or explain why it cannot be built."""
    table = resolve_table_name(table_name)
    try:
        if not isinstance(row_cap, int) or isinstance(row_cap, bool):
            raise AssemblyInconsistency(f"row cap must be an integer, got {row_cap!r}")
        cap = clamp(row_cap, 1, MAX_ROW_CAP)

        shape = select_shape(query_type, resolutions, question, pick_aggregate(question, metrics))
        if isinstance(shape, _Clarification):
            logger.info("Assembly needs clarification: missing %s field", shape.role.value)
            return AssemblyOutcome(AssemblyStatus.NEED_CLARIFICATION, message=shape.message)

        where_clause = compile_where_clause(default_filters)
        sql = render_sql(shape, table, where_clause, cap)
    except AssemblyInconsistency as exc:
        logger.error("Assembly inconsistency for %s: %s", query_type, exc)
        return AssemblyOutcome(AssemblyStatus.ERROR, message=f"Internal assembly error: {exc}")

    bindings = {role.value: res.column for role, res in resolutions.items() if res.column}
    plan = QueryPlan(
        query_type=query_type,
        table_name=table,
        sql=sql,
        shape=shape,
        bindings=bindings,
        where_clause=where_clause,
    )
    logger.info("Assembled %s plan for %s:\n%s", query_type.value, table, sql)
    return AssemblyOutcome(AssemblyStatus.SUCCESS, plan=plan)
