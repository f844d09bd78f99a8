"""Database configuration and base setup for the workspace engine."""

import logging
import os
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# Local SQLite file used when nothing else is configured.
DEFAULT_DATABASE_URL = "sqlite:///./workspace-engine.db"


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Return the database URL, falling back to DATABASE_URL and the default."""
    url = make_url(raw_url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)
    if url.drivername.startswith("sqlite+"):
        url = url.set(drivername="sqlite")
    return url.render_as_string(hide_password=False)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite shares a single connection across threads."""
    if database_url.startswith("sqlite"):
        database = make_url(database_url).database
        if database and database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True, pool_recycle=3600)


def get_session_local(engine: Engine) -> sessionmaker:
    """Get a sessionmaker bound to the given engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_database(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    # Import all models to ensure they're registered with Base
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")
