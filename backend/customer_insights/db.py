"""
db.py
=====
Engine, declarative `Base` and per-request sessions for customer-insights.

The URL and SQL echo come from `settings` (see config.py). Every reader and
the snapshot store receive a session from `get_db()`; tests swap the URL for
a temporary SQLite file before this module is imported.
"""

from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from .config import settings


def _make_engine(url: str) -> Engine:
    """SQLite connections are shared across uvicorn threads, so same-thread checks are off."""
    connect_args = {}

    if url.startswith("sqlite:"):
        connect_args["check_same_thread"] = False

    return create_engine(url, echo=settings.ECHO_SQL, pool_pre_ping=True, connect_args=connect_args)


engine: Engine = _make_engine(settings.DATABASE_URL.strip())

# models.py subclasses this
Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """One session per request, closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
