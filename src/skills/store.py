"""
User-skill store -- YAML-file persistence for ``UserSkillConfig``.

Everything written is validated first; everything read is validated again,
so a hand-edited file can never smuggle an unchecked identifier into SQL.
A file that fails validation loads as ``None`` (logged), which the engine
treats the same as "no configuration".
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from src.governance.skill_schema import TableSkillConfig, UserSkillConfig
from src.governance.validator import UserSkillValidationError, parse_user_skill_config
from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_EMPTY: dict[str, Any] = {"version": "v1", "tables": {}}


class UserSkillStore:
    """CRUD over a single YAML document."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path or get_settings().user_skill_path)

    # ── Read ─────────────────────────────────────────

    def load(self) -> UserSkillConfig | None:
        if not self.path.exists():
            logger.info("No user skill configuration at %s", self.path)
            return None

        try:
            with open(self.path, encoding="utf-8") as fh:
                raw = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            logger.error("User skill file %s is not valid YAML: %s", self.path, exc)
            return None

        if not raw:
            return None
        try:
            config = parse_user_skill_config(raw)
        except UserSkillValidationError as exc:
            logger.error("Stored user skill configuration rejected: %s", exc.errors)
            return None
        logger.info("User skill configuration loaded (%d tables)", len(config.tables))
        return config

    def get_table(self, table_name: str) -> TableSkillConfig | None:
        config = self.load()
        return config.table(table_name) if config else None

    # ── Write ────────────────────────────────────────

    def save(self, config: UserSkillConfig | dict[str, Any]) -> UserSkillConfig:
        """Validate then persist.  Raises ``UserSkillValidationError``."""
        raw = config.to_raw() if isinstance(config, UserSkillConfig) else config
        validated = parse_user_skill_config(raw)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(validated.to_raw(), fh, allow_unicode=True, sort_keys=False)
        logger.info("User skill configuration saved to %s", self.path)
        return validated

    def update_table(
        self, table_name: str, table_config: TableSkillConfig | dict[str, Any]
    ) -> UserSkillConfig:
        current = self.load()
        raw = current.to_raw() if current else dict(_EMPTY, tables={})
        if isinstance(table_config, TableSkillConfig):
            table_config = table_config.model_dump(by_alias=True, exclude_none=True, mode="json")
        raw["tables"][table_name] = table_config
        saved = self.save(raw)
        logger.info("Table skill updated for: %s", table_name)
        return saved

    def delete_table(self, table_name: str) -> bool:
        """Remove one table's config; False when there was nothing to remove."""
        current = self.load()
        if current is None or table_name not in current.tables:
            return False
        raw = current.to_raw()
        del raw["tables"][table_name]
        self.save(raw)
        logger.info("Table skill deleted for: %s", table_name)
        return True

    def reset(self, table_name: str | None = None) -> None:
        if table_name:
            self.delete_table(table_name)
            return
        self.save(dict(_EMPTY, tables={}))
        logger.info("All user skill configuration reset to default")
