"""POST /ask -- compile a question into governed SQL and optionally run it."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from fastapi import APIRouter, Depends, HTTPException

from src.api.routers.skills import get_store
from src.db.executor import execute_readonly
from src.skills.analysis import SkillContext, run_analysis
from src.skills.store import UserSkillStore
from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=500, description="Natural-language business question")
    schema_digest: str = Field("", max_length=20_000, description="Compact description of the table's columns")
    active_table: str | None = Field(None, description="Table the question is about")
    max_rows: int = Field(default_factory=lambda: get_settings().sql_row_limit, ge=1, le=500)
    mode: str = Field("mock", description="mock | openai | anthropic")
    execute: bool = Field(False, description="If true, run the SQL and return rows")


class AskResponse(BaseModel):
    question: str
    stop_reason: str
    message: str | None
    query_type: str | None
    confidence: float | None
    sql: str | None
    bindings: dict[str, str]
    rows: list[dict[str, Any]]
    columns: list[dict[str, Any]]
    thought: str | None
    llm_duration_ms: float
    query_duration_ms: float


@router.post("", response_model=AskResponse)
def ask_endpoint(req: AskRequest, store: UserSkillStore = Depends(get_store)):
    """Full pipeline: question -> query type -> fields -> SQL -> policy -> execute."""
    ctx = SkillContext(
        user_input=req.question,
        schema_digest=req.schema_digest,
        max_rows=req.max_rows,
        active_table=req.active_table,
        user_skill_config=store.load(),
        execute_query=execute_readonly if req.execute else None,
        llm_provider=req.mode,
    )
    try:
        result = run_analysis(ctx)
    except Exception as exc:
        logger.exception("Analysis failed")
        raise HTTPException(status_code=500, detail=str(exc))

    return AskResponse(
        question=req.question,
        stop_reason=result.stop_reason.value,
        message=result.message,
        query_type=result.query_type,
        confidence=result.confidence,
        sql=result.sql,
        bindings=result.bindings,
        rows=result.result or [],
        columns=result.schema or [],
        thought=result.thought,
        llm_duration_ms=result.llm_duration_ms,
        query_duration_ms=result.query_duration_ms,
    )
