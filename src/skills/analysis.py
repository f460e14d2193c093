"""
Analysis skill -- orchestrates classify -> resolve -> assemble -> policy -> execute.

Deterministic end to end unless the router falls back to the model client.
Every run ends in exactly one ``SkillStopReason``:

  SUCCESS             plan built (and executed, when an executor is supplied)
  NEED_CLARIFICATION  a field the query shape needs could not be resolved
  POLICY_DENIED       the assembled SQL failed the policy gate
  TOOL_ERROR          the query executor raised
  ERROR               untrusted input or an internal inconsistency
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from src.governance.skill_schema import UserSkillConfig
from src.governance.sql_policy import check_sql_policy
from src.skills.assembler import MAX_ROW_CAP, REQUIRED_ROLES, AssemblyStatus, assemble
from src.skills.digest import build_user_digest, trim_to_budget
from src.skills.fields import parse_schema_columns, resolve_fields
from src.skills.router import classify_query_type
from src.core.config import get_settings
from src.core.logging import bind, get_logger, preview
from src.core.utils import timer

logger = get_logger(__name__)

QueryExecutor = Callable[[str], dict]


class SkillStopReason(str, Enum):
    SUCCESS = "SUCCESS"
    NEED_CLARIFICATION = "NEED_CLARIFICATION"
    POLICY_DENIED = "POLICY_DENIED"
    TOOL_ERROR = "TOOL_ERROR"
    ERROR = "ERROR"


@dataclass
class SkillContext:
    user_input: str
    schema_digest: str
    max_rows: int
    active_table: str | None = None
    user_skill_config: UserSkillConfig | None = None
    industry: str | None = None
    execute_query: QueryExecutor | None = None
    llm_provider: str | None = None  # None = settings, "mock" = no model calls


@dataclass
class SkillResult:
    stop_reason: SkillStopReason
    message: str | None = None
    tool: str | None = None
    params: dict[str, Any] | None = None
    result: list[dict[str, Any]] | None = None
    schema: list[dict[str, Any]] | None = None
    thought: str | None = None
    query_type: str | None = None
    confidence: float | None = None
    bindings: dict[str, str] = field(default_factory=dict)
    llm_duration_ms: float = 0.0
    query_duration_ms: float = 0.0

    @property
    def sql(self) -> str | None:
        return (self.params or {}).get("query")


def run_analysis(ctx: SkillContext) -> SkillResult:
    """Compile the question in *ctx* into a governed query and optionally run it."""
    config = ctx.user_skill_config
    if config is not None and not isinstance(config, UserSkillConfig):
        logger.error("Refusing unvalidated user skill configuration (%s)", type(config).__name__)
        return SkillResult(
            SkillStopReason.ERROR,
            message="User skill configuration must be validated before analysis.",
        )

    table_config = config.table(ctx.active_table) if config else None
    industry = ctx.industry or (table_config.industry if table_config else None)
    log = bind(logger, table=ctx.active_table, industry=industry)
    log.info("Analysis started: %s", preview(ctx.user_input))

    try:
        return _run(ctx, config, table_config, log)
    except Exception as exc:
        log.exception("Analysis failed unexpectedly")
        return SkillResult(SkillStopReason.ERROR, message=f"Analysis failed: {exc}")


def _run(ctx: SkillContext, config, table_config, log) -> SkillResult:
    settings = get_settings()

    # ── 1. Classify ──────────────────────────────────
    user_digest = build_user_digest(config, ctx.active_table)
    schema_digest = trim_to_budget(ctx.schema_digest, settings.schema_digest_max_chars)
    with timer() as t:
        classification = classify_query_type(
            ctx.user_input, schema_digest, user_digest, provider=ctx.llm_provider,
        )
    llm_ms = t["elapsed_ms"] if classification.method == "llm" else 0.0
    qtype = classification.query_type
    log.info("Query type %s (%.2f via %s)", qtype.value, classification.confidence, classification.method)

    # ── 2. Resolve fields ────────────────────────────
    columns = parse_schema_columns(ctx.schema_digest)
    mapping = table_config.field_mapping if table_config else None
    resolutions = resolve_fields(REQUIRED_ROLES[qtype], mapping, columns, ctx.user_input)

    # ── 3. Assemble ──────────────────────────────────
    outcome = assemble(
        qtype,
        resolutions,
        ctx.active_table,
        table_config.default_filters if table_config else None,
        ctx.max_rows,
        question=ctx.user_input,
        metrics=table_config.metrics if table_config else None,
    )
    common = dict(
        query_type=qtype.value,
        confidence=classification.confidence,
        llm_duration_ms=llm_ms,
    )
    if outcome.status is AssemblyStatus.NEED_CLARIFICATION:
        return SkillResult(SkillStopReason.NEED_CLARIFICATION, message=outcome.message, **common)
    if outcome.status is AssemblyStatus.ERROR or outcome.plan is None:
        return SkillResult(SkillStopReason.ERROR, message=outcome.message, **common)

    plan = outcome.plan
    common.update(tool=plan.tool, params=plan.params, bindings=plan.bindings)

    # ── 4. Policy gate ───────────────────────────────
    violations = check_sql_policy(plan.sql, allowed_tables=[plan.table_name], max_rows=MAX_ROW_CAP)
    if violations:
        return SkillResult(
            SkillStopReason.POLICY_DENIED,
            message="SQL rejected by policy:\n- " + "\n- ".join(violations),
            **common,
        )

    thought = f"Classified as {qtype.value}, built template SQL"
    if ctx.execute_query is None:
        return SkillResult(SkillStopReason.SUCCESS, thought=thought, **common)

    # ── 5. Execute ───────────────────────────────────
    error: Exception | None = None
    response: dict = {}
    with timer() as q:
        try:
            response = ctx.execute_query(plan.sql) or {}
        except Exception as exc:
            log.warning("Query execution failed: %s", exc)
            error = exc
    if error is not None:
        return SkillResult(
            SkillStopReason.TOOL_ERROR,
            message=f"Query execution failed: {error}",
            query_duration_ms=q["elapsed_ms"],
            **common,
        )

    rows = response.get("data") or []
    log.info("Query returned %d rows in %.1f ms", len(rows), q["elapsed_ms"])
    return SkillResult(
        SkillStopReason.SUCCESS,
        result=rows,
        schema=response.get("schema") or [],
        thought=f"Classified as {qtype.value}, executed template SQL",
        query_duration_ms=q["elapsed_ms"],
        **common,
    )
