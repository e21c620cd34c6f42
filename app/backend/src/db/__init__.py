"""Database session helpers for the API, scripts and tests."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from ..models.base import Base

from .session import SessionLocal, engine as _engine

LOGGER = structlog.get_logger(__name__)


def get_engine() -> Engine:
    """Return the configured SQLAlchemy engine."""

    return _engine


def create_schema(engine: Engine | None = None) -> None:
    """Create every invoice engine table that does not exist yet."""

    # Registers the mapped classes on ``Base.metadata``.
    from .. import models  # noqa: F401

    engine = engine or _engine
    Base.metadata.create_all(bind=engine)
    LOGGER.info("database_schema_created", tables=sorted(Base.metadata.tables))


def get_session_dependency() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session.

    Services commit their own work; anything left open when the request
    fails is rolled back here.
    """

    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope for scripts and tests."""

    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "SessionLocal",
    "create_schema",
    "get_engine",
    "get_session_dependency",
    "session_scope",
]
