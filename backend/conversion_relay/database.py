"""Database engine and session factory construction.

WHAT:
    Builds the sync SQLAlchemy engine and session factory used by the
    Integration Directory.

WHY:
    - Workers construct the factory once at startup and pass it explicitly
      into `IntegrationDirectory` (no module-level engine import side effects)
    - Tests build the same factory against a SQLite file

USAGE:
    from conversion_relay.database import create_session_factory

    SessionLocal = create_session_factory()
    db = SessionLocal()
    try:
        ...
    finally:
        db.close()
"""

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base  # noqa: F401  (single registry for metadata.create_all)


def get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from conversion_relay.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """Create the engine and return a configured session factory.

    NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
    """
    database_url = database_url or get_database_url()

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            database_url,
            pool_size=5,            # One connection per concurrent delivery job
            max_overflow=5,
            pool_recycle=3600,      # Recycle connections every hour
            pool_pre_ping=True,     # Validate connections before use
        )

    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

