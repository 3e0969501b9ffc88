"""Database configuration and session management."""

from sqlalchemy import BigInteger, Integer, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from fhir_omop.core.config import settings

# BIGINT surrogate keys; sqlite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

# Lazy initialized sync engine
_sync_engine: Engine | None = None
_session_maker: sessionmaker[Session] | None = None


def get_sync_engine() -> Engine:
    """Get or create the sync engine.

    Lazily creates the engine on first use to avoid import errors
    when psycopg2 is not installed (e.g., in test environments).
    """
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            future=True,
        )
    return _sync_engine


def get_session_maker() -> sessionmaker[Session]:
    """Get or create the session factory bound to the sync engine."""
    global _session_maker
    if _session_maker is None:
        _session_maker = sessionmaker(
            bind=get_sync_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_maker


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models.

    OMOP tables bring their own surrogate primary keys, so the base adds
    no common columns.
    """


def init_db(engine: Engine | None = None) -> None:
    """Create all tables.

    For development and tests only - use Alembic migrations in production.
    """
    # Register every mapped table on Base.metadata
    import fhir_omop.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_sync_engine())


def close_db() -> None:
    """Dispose the engine and drop the cached session factory."""
    global _sync_engine, _session_maker
    if _sync_engine is not None:
        _sync_engine.dispose()
    _sync_engine = None
    _session_maker = None
