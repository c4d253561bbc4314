"""
UI Analyzer — Database Layer
SQLAlchemy engine + session management for accounts and subscriptions.
"""

import os
import logging
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)


# Build the connection URL from separate components to safely handle
# special characters in the password
def build_db_url(override: Optional[str] = None):
    if override:
        return override   # custom override, pass through

    return URL.create(
        drivername="postgresql+psycopg2",
        username=os.getenv("POSTGRES_USER", "uianalyzer"),
        password=os.getenv("POSTGRES_PASSWORD", "uianalyzer"),
        host=os.getenv("POSTGRES_HOST", "localhost"),
        port=int(os.getenv("POSTGRES_PORT", "5432")),
        database=os.getenv("POSTGRES_DB", "uianalyzer"),
    )


class Base(DeclarativeBase):
    pass


def create_db_engine(db_url) -> Engine:
    if str(db_url).startswith("sqlite"):
        return create_engine(db_url, connect_args={"check_same_thread": False})
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def init_db(db_url=None, engine: Optional[Engine] = None) -> sessionmaker:
    """Initialise the engine, create tables and return a session factory.

    The caller owns the returned factory; nothing is stored at module level.
    """
    # Register the ORM models on Base.metadata before create_all.
    import user_db  # noqa: F401

    try:
        if engine is None:
            engine = create_db_engine(build_db_url(db_url))
        Base.metadata.create_all(bind=engine)
        logger.info("✅ Database connected and tables created.")
    except OperationalError as e:
        logger.error(f"Database unavailable: {e}")
        raise
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_db(request: Request):
    """FastAPI dependency — yields a session from the app's session factory."""
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise HTTPException(status_code=503, detail="Database unavailable.")
    db = factory()
    try:
        yield db
    finally:
        db.close()
