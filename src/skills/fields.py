"""
Field resolver -- decides which physical column plays which semantic role.

Resolution ladder (first success wins):
  1. explicit ``fieldMapping`` entry, used verbatim
  2. a schema column the question mentions by name (dimension role only;
     ASCII names must appear as whole words, and columns that are mapped or
     named like a time / amount / id column are skipped)
  3. ranked naming conventions over the schema's column names
     (exact name first, then substring)

When every step fails the result is an unresolved ``FieldResolution``; the
assembler turns that into a clarification request for roles the query shape
cannot do without.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from src.governance.skill_schema import FieldMapping
from src.core.logging import get_logger

logger = get_logger(__name__)


class FieldRole(str, Enum):
    ORDER_ID = "order_id"
    USER_ID = "user_id"
    TIME = "time"
    AMOUNT = "amount"
    DIMENSION = "dimension"


@dataclass(frozen=True)
class FieldResolution:
    role: FieldRole
    column: str | None = None
    source: str | None = None  # mapping | question | inferred

    @property
    def resolved(self) -> bool:
        return self.column is not None


_MAPPING_ATTRS: dict[FieldRole, str] = {
    FieldRole.ORDER_ID: "order_id_column",
    FieldRole.USER_ID: "user_id_column",
    FieldRole.TIME: "time_column",
    FieldRole.AMOUNT: "amount_column",
}

# Ranked: earlier names are stronger signals.
_CANDIDATES: dict[FieldRole, list[str]] = {
    FieldRole.TIME: [
        "下单时间", "支付时间", "创建时间", "order_time", "order_date", "created_at", "create_at",
        "create_time", "pay_time", "paid_at", "timestamp", "datetime", "date", "time", "时间", "日期",
    ],
    FieldRole.AMOUNT: [
        "实付金额", "支付金额", "订单金额", "amount", "total_amount", "pay_amount", "price",
        "total", "revenue", "金额", "价格",
    ],
    FieldRole.ORDER_ID: ["订单号", "订单编号", "订单id", "order_id", "order_no", "order_number", "id"],
    FieldRole.USER_ID: ["用户id", "买家id", "会员id", "user_id", "customer_id", "buyer_id", "member_id", "uid"],
    FieldRole.DIMENSION: [
        "渠道", "地区", "区域", "省份", "城市", "类目", "品类", "category", "channel", "region",
        "province", "city", "country", "brand", "status",
    ],
}

_MIN_ASCII_SUBSTRING = 4  # "id" / "uid" only match exactly

_TABLE_RE = re.compile(r"Table:\s*[^\s(]+\s*\(([^)]*)\)", re.IGNORECASE)
_COLUMNS_RE = re.compile(r"^\s*Columns?:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*[-*]\s*[\"`]?([A-Za-z0-9_一-龥]+)", re.MULTILINE)


# ── Schema digest parsing ────────────────────────────────

def _column_from_fragment(fragment: str) -> str | None:
    parts = fragment.strip().split()
    if not parts:
        return None
    return parts[0].strip("\"`[]:") or None


def parse_schema_columns(schema_digest: str) -> list[str]:
    """Extract column names from a schema digest.

    Understands ``Table: orders (id, amount DOUBLE, ...)``, ``Columns: a, b``
    and bulleted ``- name: TYPE`` lines.
    """
    found: list[str] = []
    for m in _TABLE_RE.finditer(schema_digest):
        found.extend(filter(None, (_column_from_fragment(p) for p in m.group(1).split(","))))
    if not found:
        for m in _COLUMNS_RE.finditer(schema_digest):
            found.extend(filter(None, (_column_from_fragment(p) for p in m.group(1).split(","))))
    if not found:
        found.extend(m.group(1) for m in _BULLET_RE.finditer(schema_digest))

    columns: list[str] = []
    for name in found:
        if name not in columns:
            columns.append(name)
    return columns


# ── Strategies ───────────────────────────────────────────

_Strategy = Callable[[FieldRole, FieldMapping | None, list[str], str], "str | None"]


def _from_mapping(role: FieldRole, mapping: FieldMapping | None, columns: list[str], question: str) -> str | None:
    attr = _MAPPING_ATTRS.get(role)
    if mapping is None or attr is None:
        return None
    return getattr(mapping, attr)


def _mentions(text: str, column: str) -> bool:
    """CJK names match as substrings; ASCII names match whole words (plural allowed)."""
    name = column.lower()
    if not name.isascii():
        return name in text
    return re.search(rf"(?<![a-z0-9_]){re.escape(name)}(?:s|es)?(?![a-z0-9_])", text) is not None


def _reserved_columns(mapping: FieldMapping | None, columns: list[str]) -> set[str]:
    reserved: set[str] = set()
    if mapping is not None:
        reserved.update(filter(None, (getattr(mapping, attr) for attr in _MAPPING_ATTRS.values())))
    for role in _MAPPING_ATTRS:
        names = {cand.lower() for cand in _CANDIDATES[role]}
        reserved.update(col for col in columns if col.lower() in names)
    return reserved


def _from_question(role: FieldRole, mapping: FieldMapping | None, columns: list[str], question: str) -> str | None:
    if role is not FieldRole.DIMENSION or not question:
        return None
    text = question.lower()
    reserved = _reserved_columns(mapping, columns)
    for col in columns:
        if len(col) >= 2 and col not in reserved and _mentions(text, col):
            return col
    return None


def _substring_ok(candidate: str) -> bool:
    return not candidate.isascii() or len(candidate) >= _MIN_ASCII_SUBSTRING


def _from_conventions(role: FieldRole, mapping: FieldMapping | None, columns: list[str], question: str) -> str | None:
    candidates = _CANDIDATES.get(role, [])
    lowered = {col: col.lower() for col in columns}
    for cand in candidates:
        for col, low in lowered.items():
            if low == cand.lower():
                return col
    for cand in candidates:
        if not _substring_ok(cand):
            continue
        for col, low in lowered.items():
            if cand.lower() in low:
                return col
    return None


_STRATEGIES: list[tuple[str, _Strategy]] = [
    ("mapping", _from_mapping),
    ("question", _from_question),
    ("inferred", _from_conventions),
]


# ── Public API ───────────────────────────────────────────

def resolve_field(
    role: FieldRole,
    field_mapping: FieldMapping | None,
    schema_columns: list[str],
    question: str = "",
    exclude: Iterable[str] = (),
) -> FieldResolution:
    """Run the resolution ladder for one role."""
    excluded = set(exclude)
    candidates = [c for c in schema_columns if c not in excluded]
    for source, strategy in _STRATEGIES:
        column = strategy(role, field_mapping, candidates, question)
        if column:
            logger.debug("Resolved %s -> %s (%s)", role.value, column, source)
            return FieldResolution(role, column, source)
    logger.debug("Could not resolve %s", role.value)
    return FieldResolution(role)


def resolve_fields(
    roles: Iterable[FieldRole],
    field_mapping: FieldMapping | None,
    schema_columns: list[str],
    question: str = "",
) -> dict[FieldRole, FieldResolution]:
    """Resolve several roles; the dimension never reuses a column bound to another role."""
    ordered = sorted(set(roles), key=lambda r: r is FieldRole.DIMENSION)
    out: dict[FieldRole, FieldResolution] = {}
    for role in ordered:
        taken = [r.column for r in out.values() if r.column] if role is FieldRole.DIMENSION else []
        out[role] = resolve_field(role, field_mapping, schema_columns, question, exclude=taken)
    return out
