"""
Validates raw user-skill configuration into the trusted ``UserSkillConfig``.

This is the only trust boundary between externally supplied configuration
(persisted JSON/YAML, API payloads) and the SQL-generating components.  The
assembler and the digest builder accept ``UserSkillConfig`` instances only,
so nothing reaches them without passing through here.

Checks performed (all collected in one pass, never repaired):
  1. ``version`` is exactly "v1"
  2. At most 10 tables; table names are safe identifiers
  3. Every table declares an ``industry``
  4. Column names contain only letters, digits, underscore or CJK ideographs
  5. String literals ≤ 1000 chars; arrays ≤ 1000 items of ≤ 500 chars
  6. Relative-time amounts are positive and ≤ 3650
  7. sum / avg / min / max / count_distinct metrics name a column
  8. ≤ 10 WHERE filters per metric, ≤ 20 default filters, ≤ 50 metrics per table
"""
from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from src.governance.skill_schema import (
    FilterExpr,
    MetricDefinition,
    TableSkillConfig,
    UserSkillConfig,
)
from src.core.logging import get_logger

logger = get_logger(__name__)

_M = TypeVar("_M", bound=BaseModel)


class UserSkillValidationError(ValueError):
    """Raised when a user-skill configuration is rejected.

    ``errors`` carries every violation, not just the first one.
    """

    code = "USER_SKILL_VALIDATION_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = errors
        summary = "; ".join(errors[:3])
        if len(errors) > 3:
            summary += f" (+{len(errors) - 3} more)"
        super().__init__(f"User skill configuration validation failed: {summary}")


def _format_errors(exc: ValidationError) -> list[str]:
    """Flatten pydantic errors into ``"<location>: <reason>"`` messages."""
    messages: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        msg = f"{loc}: {err['msg']}"
        if msg not in messages:
            messages.append(msg)
    return messages


def _validate(model: type[_M], raw: Any) -> tuple[_M | None, list[str]]:
    try:
        return model.model_validate(raw), []
    except ValidationError as exc:
        errors = _format_errors(exc)
        logger.warning("%s rejected with %d error(s)", model.__name__, len(errors))
        return None, errors


# ── Public API ───────────────────────────────────────────

def validate_user_skill_config(raw: Any) -> tuple[UserSkillConfig | None, list[str]]:
    """Return ``(config, [])`` on success or ``(None, errors)`` on rejection."""
    return _validate(UserSkillConfig, raw)


def validate_table_skill_config(raw: Any) -> tuple[TableSkillConfig | None, list[str]]:
    return _validate(TableSkillConfig, raw)


def validate_filter_expr(raw: Any) -> tuple[FilterExpr | None, list[str]]:
    return _validate(FilterExpr, raw)


def validate_metric_definition(raw: Any) -> tuple[MetricDefinition | None, list[str]]:
    return _validate(MetricDefinition, raw)


def parse_user_skill_config(raw: Any) -> UserSkillConfig:
    """Like ``validate_user_skill_config`` but raises on rejection."""
    config, errors = validate_user_skill_config(raw)
    if config is None:
        raise UserSkillValidationError(errors)
    return config
