"""
GET/PUT/DELETE /skills -- user-skill configuration endpoints.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from src.governance.validator import (
    UserSkillValidationError,
    validate_table_skill_config,
    validate_user_skill_config,
)
from src.skills.digest import build_user_digest, check_digest_budget, get_digest_stats
from src.skills.store import UserSkillStore
from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


def get_store() -> UserSkillStore:
    return UserSkillStore(get_settings().user_skill_path)


class ValidationResponse(BaseModel):
    valid: bool
    errors: list[str]


class DigestResponse(BaseModel):
    table: str
    digest: str
    chars: int
    lines: int
    within_budget: bool
    limit: int


def _reject(errors: list[str]) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"code": UserSkillValidationError.code, "errors": errors},
    )


@router.get("")
def get_skills(store: UserSkillStore = Depends(get_store)) -> dict:
    """Return the stored configuration (empty v1 document when none)."""
    config = store.load()
    return config.to_raw() if config else {"version": "v1", "tables": {}}


@router.get("/digest", response_model=DigestResponse)
def get_digest(table: str, store: UserSkillStore = Depends(get_store)) -> DigestResponse:
    """Prompt digest for one table, with its budget check."""
    settings = get_settings()
    digest = build_user_digest(store.load(), table)
    stats = get_digest_stats(digest)
    check = check_digest_budget(digest, settings.user_skill_digest_max_chars)
    return DigestResponse(
        table=table,
        digest=digest,
        chars=stats.chars,
        lines=stats.lines,
        within_budget=check.within_budget,
        limit=check.limit,
    )


@router.post("/validate", response_model=ValidationResponse)
def validate_skills(payload: dict[str, Any]) -> ValidationResponse:
    """Dry-run validation of a full configuration; nothing is saved."""
    _, errors = validate_user_skill_config(payload)
    return ValidationResponse(valid=not errors, errors=errors)


@router.put("/tables/{name}")
def put_table(name: str, payload: dict[str, Any], store: UserSkillStore = Depends(get_store)) -> dict:
    """Validate and store one table's configuration."""
    _, errors = validate_table_skill_config(payload)
    if errors:
        raise _reject(errors)
    try:
        saved = store.update_table(name, payload)
    except UserSkillValidationError as exc:
        raise _reject(exc.errors)
    return saved.to_raw()


@router.delete("/tables/{name}")
def delete_table(name: str, store: UserSkillStore = Depends(get_store)) -> dict:
    if not store.delete_table(name):
        raise HTTPException(status_code=404, detail=f"No configuration for table '{name}'")
    return {"deleted": name}
