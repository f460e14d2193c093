"""SQLAlchemy engine factory.

Single shared engine built from ``database_url``.  Every statement the
engine emits runs through `readonly_connection`, which pins the transaction
to READ ONLY on back-ends that support it (PostgreSQL).
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def build_engine(url: str) -> Engine:
    """Create an engine with pool settings appropriate for the dialect."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        # in-memory SQLite must share one connection across the pool
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            echo=False,
        )
    logger.info("DB engine created  backend=%s  db=%s", parsed.get_backend_name(), parsed.database)
    return engine


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


@contextmanager
def readonly_connection(engine: Engine | None = None) -> Generator[Connection, None, None]:
    """Yield a connection inside a read-only transaction.

    On PostgreSQL the transaction is declared READ ONLY, so no writes can
    happen even if a statement slips past the policy gate.  The transaction
    is always rolled back on exit.
    """
    engine = engine or get_engine()
    with engine.connect() as conn:
        trans = conn.begin()
        try:
            if is_postgres(engine):
                conn.execute(text("SET TRANSACTION READ ONLY"))
            yield conn
        finally:
            trans.rollback()
