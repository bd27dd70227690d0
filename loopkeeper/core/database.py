"""Database configuration and session management."""

from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from loopkeeper.core.config import settings

_engine = None
_session_maker = None


def get_engine():
    """Get or create the engine."""
    global _engine, _session_maker

    if _engine is None:
        database_url = settings.database_url

        engine_kwargs = {}
        if settings.env == "test":
            engine_kwargs["poolclass"] = NullPool
        if database_url.startswith("sqlite"):
            # Pump and watcher threads write task state too
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        _engine = create_engine(database_url, echo=False, **engine_kwargs)

        _session_maker = sessionmaker(
            bind=_engine,
            class_=Session,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    return _engine


@contextmanager
def get_session():
    """Get database session."""
    get_engine()  # Ensure engine is initialized

    with _session_maker() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def create_tables() -> None:
    """Create all database tables."""
    import loopkeeper.models  # noqa: F401  registers the tables

    engine = get_engine()
    SQLModel.metadata.create_all(engine)


def clean_database() -> None:
    """Clean all tables before each test."""
    engine = get_engine()
    tables = list(reversed(SQLModel.metadata.sorted_tables))
    if not tables:
        return

    with get_session() as session:
        if engine.dialect.name == "postgresql":
            table_names = [f'"{table.name}"' for table in tables]
            session.execute(
                text(
                    "TRUNCATE " + ", ".join(table_names) + " RESTART IDENTITY CASCADE"
                )
            )
        else:
            for table in tables:
                session.execute(table.delete())


def close_db() -> None:
    """Close database connections."""
    global _engine, _session_maker

    if _engine:
        _engine.dispose()
        _engine = None
        _session_maker = None
