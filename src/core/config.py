"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_USER_SKILL_PATH = Path(__file__).resolve().parents[2] / "user_skills" / "user_skill.yml"


class Settings(BaseSettings):
    # ── Query executor ───────────────────────────────────
    database_url: str = "sqlite:///:memory:"
    query_timeout_ms: int = 10_000

    # ── LLM ──────────────────────────────────────────────
    llm_provider: str = "mock"  # mock | openai | anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-3-haiku-20240307"
    llm_timeout_seconds: float = 10.0
    classifier_confidence_threshold: float = 0.7

    # ── Skill compilation ────────────────────────────────
    sql_row_limit: int = 100
    user_skill_digest_max_chars: int = 1200
    schema_digest_max_chars: int = 4000
    user_skill_path: str = str(_DEFAULT_USER_SKILL_PATH)

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
