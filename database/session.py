"""Engine and session factory for the submissions database.

Production points ``DATABASE_URL`` at the Supabase Postgres instance (direct
connection on 5432 or the transaction pooler on 6543). Without it the service
falls back to a local SQLite file; tests use ``sqlite://`` in memory.
"""
import os
from contextlib import contextmanager
from typing import Any, Dict, Generator, Tuple

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Every module below reads its configuration from the environment at import time.
load_dotenv()

SUPABASE_POOLER_PORT = 6543
DEFAULT_SQLITE_URL = "sqlite:///./notary.db"


def _resolve_database_url(raw_url: str | None) -> Tuple[URL, Dict[str, Any]]:
    """Return the SQLAlchemy URL and driver ``connect_args`` for ``DATABASE_URL``.

    Supabase hands out ``postgres://`` strings; they run on psycopg 3 with
    ``sslmode=require``. Through the transaction pooler a connection may change
    backend between statements, so server-side prepared statements are off.
    """
    url = make_url(raw_url or DEFAULT_SQLITE_URL)
    if url.drivername.startswith("sqlite"):
        # FastAPI serves sync endpoints from a thread pool.
        return url, {"check_same_thread": False}

    if url.drivername in {"postgres", "postgresql"}:
        url = url.set(drivername="postgresql+psycopg")

    query = dict(url.query)
    if "sslmode" not in query:
        url = url.set(query={**query, "sslmode": "require"})

    connect_args: Dict[str, Any] = {}
    if url.port == SUPABASE_POOLER_PORT:
        connect_args["prepare_threshold"] = None
    return url, connect_args


def _create_engine() -> Engine:
    url, connect_args = _resolve_database_url(os.getenv("DATABASE_URL"))
    if url.drivername.startswith("sqlite"):
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every session sees an empty schema.
            return create_engine(url, future=True, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(url, future=True, connect_args=connect_args)
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DATABASE_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DATABASE_MAX_OVERFLOW", "10")),
        connect_args=connect_args,
    )


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI dependencies. Services commit themselves."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """Session for scripts and jobs: commit on success, roll back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
