"""
User-skill schema -- the trusted, typed form of a user's table configuration.

A user-skill config tells the engine how to read a table: which column holds
the order time, which holds the amount, which filters always apply, and which
named metrics exist.  Column names and literals from this config end up inside
generated SQL, so every constraint below is a security constraint:

  - identifiers are restricted to letters, digits, underscore and CJK
    ideographs (no quotes, spaces, comment markers or semicolons)
  - literals and arrays are bounded (prompt size and query cost) and
    numbers must be finite
  - collections are bounded (tables, filters, metrics)

Instances are frozen.  They are only ever produced by ``src.governance.validator``.
"""
from __future__ import annotations

import re
from typing import Annotated, Literal, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StringConstraints,
    conlist,
    model_validator,
)

# ── Limits ───────────────────────────────────────────────

MAX_TABLES = 10
MAX_DEFAULT_FILTERS = 20
MAX_METRICS = 50
MAX_METRIC_WHERE = 10
MAX_IDENTIFIER_CHARS = 200
MAX_STRING_LITERAL_CHARS = 1000
MAX_ARRAY_ITEMS = 1000
MAX_ARRAY_ITEM_CHARS = 500
MAX_RELATIVE_AMOUNT = 3650  # ten years of days
MAX_INDUSTRY_CHARS = 50
MAX_LABEL_CHARS = 100

_IDENTIFIER_RE = re.compile("[A-Za-z0-9_\\u4e00-\\u9fa5]+")


def _check_identifier(value: str) -> str:
    if not _IDENTIFIER_RE.fullmatch(value):
        raise ValueError(
            "Column name must contain only letters, numbers, underscores, or Chinese characters"
        )
    return value


ColumnName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=MAX_IDENTIFIER_CHARS),
    AfterValidator(_check_identifier),
]
TableName = ColumnName

Operator = Literal["=", "!=", ">", ">=", "<", "<=", "in", "not_in", "contains"]
Aggregation = Literal["count", "count_distinct", "sum", "avg", "min", "max"]
TimeUnit = Literal["day", "week", "month", "year"]

# inf / nan have no SQL literal form
FiniteFloat = Annotated[float, Field(strict=True, allow_inf_nan=False)]

ArrayItem = Union[
    StrictInt,
    FiniteFloat,
    Annotated[str, StringConstraints(max_length=MAX_ARRAY_ITEM_CHARS)],
]
LiteralValue = Union[
    StrictBool,
    StrictInt,
    FiniteFloat,
    Annotated[str, StringConstraints(max_length=MAX_STRING_LITERAL_CHARS)],
    conlist(ArrayItem, max_length=MAX_ARRAY_ITEMS),
]

_FROZEN = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# ── Value objects ────────────────────────────────────────

class RelativeTimeValue(BaseModel):
    """A rolling window such as "last 30 days" (``past``) or "next 2 weeks"."""

    model_config = _FROZEN

    kind: Literal["relative_time"] = "relative_time"
    unit: TimeUnit
    amount: int = Field(..., gt=0, le=MAX_RELATIVE_AMOUNT, strict=True)
    direction: Literal["past", "future"]


FilterValue = Union[RelativeTimeValue, LiteralValue]


class FilterExpr(BaseModel):
    """``column op value`` -- one conjunct of a WHERE clause."""

    model_config = _FROZEN

    column: ColumnName
    op: Operator
    value: FilterValue


class MetricDefinition(BaseModel):
    model_config = _FROZEN

    label: str = Field(..., min_length=1, max_length=MAX_LABEL_CHARS)
    aggregation: Aggregation
    column: ColumnName | None = None
    where: list[FilterExpr] | None = Field(None, max_length=MAX_METRIC_WHERE)

    @model_validator(mode="after")
    def _column_required(self) -> "MetricDefinition":
        if self.aggregation != "count" and not self.column:
            raise ValueError('Column is required for aggregations other than "count"')
        return self


class FieldMapping(BaseModel):
    """Explicit semantic-role → physical-column bindings."""

    model_config = _FROZEN

    order_id_column: ColumnName | None = Field(None, alias="orderIdColumn")
    user_id_column: ColumnName | None = Field(None, alias="userIdColumn")
    time_column: ColumnName | None = Field(None, alias="timeColumn")
    amount_column: ColumnName | None = Field(None, alias="amountColumn")

    def present(self) -> list[tuple[str, str]]:
        """(role label, column) pairs for the slots that are filled, in fixed order."""
        pairs = [
            ("orderId", self.order_id_column),
            ("userId", self.user_id_column),
            ("time", self.time_column),
            ("amount", self.amount_column),
        ]
        return [(role, col) for role, col in pairs if col]


class TableSkillConfig(BaseModel):
    """Per-table configuration.  ``industry`` selects the downstream skill pack."""

    model_config = _FROZEN

    industry: str = Field(..., min_length=1, max_length=MAX_INDUSTRY_CHARS)
    field_mapping: FieldMapping | None = Field(None, alias="fieldMapping")
    default_filters: list[FilterExpr] | None = Field(
        None, alias="defaultFilters", max_length=MAX_DEFAULT_FILTERS
    )
    metrics: dict[str, MetricDefinition] | None = Field(None, max_length=MAX_METRICS)


class UserSkillConfig(BaseModel):
    """Root of the persisted user configuration.  Only ``v1`` is understood."""

    model_config = _FROZEN

    version: Literal["v1"]
    tables: dict[TableName, TableSkillConfig] = Field(..., max_length=MAX_TABLES)

    def table(self, name: str | None) -> TableSkillConfig | None:
        if not name:
            return None
        return self.tables.get(name)

    def to_raw(self) -> dict:
        """Serialise back to the persisted camelCase form."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
