"""Engine and unit-of-work sessions for schedule storage.

Nothing connects at import time; the engine and session factory are built on
first use so tests can swap `_engine` for an in-memory database.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from coachplan.config.settings import settings

_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def _engine_options(url: str) -> dict:
    if url.lower().startswith("sqlite"):
        logger.warning("Schedule storage is SQLite; fine for local runs, not for shared deployments")
        # FastAPI may hand the session to a worker thread
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


def _get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = settings.database_url
        _engine = create_engine(url, echo=False, **_engine_options(url))
        logger.info("Schedule database engine ready", dialect=_engine.dialect.name)
    return _engine


def get_engine() -> Engine:
    """Shared engine, created on first call."""
    return _get_engine()


def _get_session_local() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=_get_engine(), autoflush=False)
    return _SessionLocal


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """One transaction per `with` block.

    The block's writes are committed together when it exits cleanly. On any
    exception everything is rolled back and the exception propagates, so a
    lost version compare-and-swap leaves no item changes behind.
    """
    session = _get_session_local()()
    try:
        yield session
        session.commit()
    except Exception as exc:
        logger.debug("Rolling back schedule transaction", error=type(exc).__name__)
        session.rollback()
        raise
    finally:
        session.close()
