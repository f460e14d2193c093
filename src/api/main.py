"""
FastAPI application entry-point.

Routers:
  /ask      compile (and optionally run) a question
  /skills   read, validate and edit the user-skill configuration
"""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import ask, skills
from src.core.config import get_settings

app = FastAPI(
    title="Skill Compilation Engine",
    version="0.1.0",
    description="Compiles questions into governed SQL using validated user-skill configuration",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ask.router, prefix="/ask", tags=["Analysis"])
app.include_router(skills.router, prefix="/skills", tags=["User skills"])


@app.get("/health")
def health():
    settings = get_settings()
    return {
        "status": "ok",
        "llm_provider": settings.llm_provider,
        "sql_row_limit": settings.sql_row_limit,
        "user_skill_digest_max_chars": settings.user_skill_digest_max_chars,
    }
