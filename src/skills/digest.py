"""
Digest builder -- renders a trusted user-skill config as compact prompt text.

The digest is what the language model sees of the user's configuration, so it
has to stay small.  Two limits apply:

  per-section  keep the first N filters / metrics, then ``+K more <section>``
  global       after rendering, cut to ``user_skill_digest_max_chars`` and
               append ``TRUNCATION_MARKER``

A truncated digest is therefore at most ``budget + len(TRUNCATION_MARKER)``
characters long.

Example::

    Active table: orders
    Field mapping:
    - time: order_time
    Default filters:
    - status = "completed"
    Metrics overrides:
    - gmv: sum(amount)
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field

from src.governance.skill_schema import (
    FilterExpr,
    MetricDefinition,
    RelativeTimeValue,
    TableSkillConfig,
    UserSkillConfig,
)
from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

TRUNCATION_MARKER = "\n...[truncated]"
DEFAULT_MAX_FILTERS = 5
DEFAULT_MAX_METRICS = 5


@dataclass(frozen=True)
class DigestBudget:
    """Character budgets for the prompt sections the engine contributes."""

    schema_digest_max_chars: int = 4000
    user_skill_digest_max_chars: int = 1200
    system_skill_pack_max_chars: int = 2000


DEFAULT_DIGEST_BUDGET = DigestBudget()


@dataclass(frozen=True)
class DigestOptions:
    budget: DigestBudget = field(default_factory=DigestBudget)
    max_filters: int = DEFAULT_MAX_FILTERS
    max_metrics: int = DEFAULT_MAX_METRICS


@dataclass(frozen=True)
class DigestStats:
    chars: int
    lines: int


@dataclass(frozen=True)
class BudgetCheck:
    within_budget: bool
    chars: int
    limit: int


def options_from_settings() -> DigestOptions:
    """Digest options with budgets taken from Settings (env / .env)."""
    settings = get_settings()
    budget = DigestBudget(
        schema_digest_max_chars=settings.schema_digest_max_chars,
        user_skill_digest_max_chars=settings.user_skill_digest_max_chars,
    )
    return DigestOptions(budget=budget)


# ── Rendering helpers ────────────────────────────────────

def _render_value(value: object) -> str:
    if isinstance(value, RelativeTimeValue):
        word = "last" if value.direction == "past" else "next"
        unit = value.unit if value.amount == 1 else f"{value.unit}s"
        return f"{word} {value.amount} {unit}"
    return json.dumps(value, ensure_ascii=False)


def render_filter(expr: FilterExpr) -> str:
    return f"{expr.column} {expr.op} {_render_value(expr.value)}"


def render_metric(name: str, metric: MetricDefinition) -> str:
    return f"{name}: {metric.aggregation}({metric.column or '*'})"


def _section(title: str, items: list[str], limit: int, noun: str) -> list[str]:
    """Top-N rendering of one section; empty sections render nothing."""
    if not items:
        return []
    shown = items[: max(limit, 0)]
    lines = [f"{title}:"] + [f"- {item}" for item in shown]
    hidden = len(items) - len(shown)
    if hidden > 0:
        lines.append(f"- +{hidden} more {noun}")
    return lines


def trim_to_budget(text: str, max_chars: int) -> str:
    """Hard-cut *text* to *max_chars* and mark the cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + TRUNCATION_MARKER


# ── Public API ───────────────────────────────────────────

def build_table_digest(
    table_name: str,
    config: TableSkillConfig,
    options: DigestOptions | None = None,
) -> str:
    """Render one table's configuration (no global budget applied)."""
    options = options or DigestOptions()
    lines = [f"Active table: {table_name}"]

    if config.field_mapping is not None:
        mapping = [f"{role}: {column}" for role, column in config.field_mapping.present()]
        lines += _section("Field mapping", mapping, len(mapping), "mappings")

    filters = [render_filter(f) for f in config.default_filters or []]
    lines += _section("Default filters", filters, options.max_filters, "filters")

    metrics = [render_metric(name, m) for name, m in (config.metrics or {}).items()]
    lines += _section("Metrics overrides", metrics, options.max_metrics, "metrics")

    return "\n".join(lines)


def build_user_digest(
    config: UserSkillConfig | None,
    active_table: str | None,
    options: DigestOptions | None = None,
) -> str:
    """Digest for *active_table*, or ``""`` when there is nothing to describe."""
    if config is None or not active_table:
        return ""
    table_config = config.table(active_table)
    if table_config is None:
        return ""

    options = options or options_from_settings()
    digest = build_table_digest(active_table, table_config, options)
    budget = options.budget.user_skill_digest_max_chars
    if len(digest) > budget:
        logger.warning(
            "User skill digest for %s is %d chars, truncating to %d",
            active_table, len(digest), budget,
        )
        digest = trim_to_budget(digest, budget)
    return digest


def get_digest_stats(digest: str) -> DigestStats:
    lines = digest.count("\n") + 1 if digest else 0
    return DigestStats(chars=len(digest), lines=lines)


def check_digest_budget(
    digest: str,
    limit: int = DEFAULT_DIGEST_BUDGET.user_skill_digest_max_chars,
) -> BudgetCheck:
    return BudgetCheck(within_budget=len(digest) <= limit, chars=len(digest), limit=limit)
