"""Database session configuration."""

from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from parley.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import parley.models  # noqa: E402,F401


def make_session_factory(bind: Engine) -> sessionmaker[Session]:
    """Return a session factory configured like ``SessionLocal`` for ``bind``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=bind, expire_on_commit=False)


def make_engine(database_url: str, echo: bool = False) -> Engine:
    return create_engine(database_url, pool_pre_ping=True, echo=echo)


engine = make_engine(settings.database_url, echo=settings.sql_debug)

SessionLocal = make_session_factory(engine)


def create_tables(bind: Engine | None = None) -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind: Engine | None = None) -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=bind or engine)
