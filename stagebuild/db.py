"""Database engine and session management for stagebuild.

The cache store keeps its manifest (one row per cache key) in a SQLite
database under the cache root. This module provides the engine and session
helpers plus the declarative base for ORM models.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

MANIFEST_FILENAME = "manifest.sqlite"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def manifest_url(cache_root: Path) -> str:
    """Return the database URL of the manifest for a cache root."""
    return f"sqlite:///{cache_root / MANIFEST_FILENAME}"


def get_engine(db_url: str) -> Any:
    """Create and return a SQLAlchemy engine.

    Args:
        db_url: Database URL.

    Returns:
        SQLAlchemy Engine instance.
    """
    # SQLite-specific connect args; the store is used from worker threads
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30

    return create_engine(
        db_url,
        connect_args=connect_args,
        echo=False,
    )


def get_session_factory(engine: Any) -> sessionmaker[Session]:
    """Create and return a session factory bound to an engine."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Session factory.

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any) -> None:
    """Create all tables defined by ORM models.

    Args:
        engine: SQLAlchemy engine.
    """
    # Import models so they are registered on the metadata
    from stagebuild.cache import models as cache_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


__all__ = [
    "MANIFEST_FILENAME",
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "manifest_url",
]
