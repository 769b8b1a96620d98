"""Database connection and session management using SQLAlchemy.

Provides:
- Engine: SQLAlchemy engine for the log store
- SessionLocal: Session factory for ORM operations
- Base: Declarative base for all ORM models
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import Config

# Initialize configuration
config = Config()


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite connections may be used from the event loop thread pool."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        echo=False,  # Set to True for SQL debugging
        connect_args=connect_args,
    )


# Create SQLAlchemy engine
engine = make_engine(config.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

# Create declarative base for all models
Base = declarative_base()


def init_db(bind: Engine = engine) -> None:
    """Create missing tables (development; production runs Alembic migrations)."""
    from . import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind=bind)
