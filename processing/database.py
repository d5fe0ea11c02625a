"""
Database connection and session management.

Components never reach for a shared engine: callers build a session factory
here and hand a Session to each component's constructor.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from processing.models import Base


def make_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine, creating the SQLite data directory if needed."""
    url = database_url or settings.DATABASE_URL
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url.replace("sqlite:///", "", 1)).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        url,
        echo=settings.DEBUG if echo is None else echo,
        future=True,
    )
    if url.startswith("sqlite"):
        enable_sqlite_savepoints(engine)
    return engine


def enable_sqlite_savepoints(engine: Engine):
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT / begin_nested() work.

    Per-row isolation in the bulk passes relies on savepoints.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(engine: Engine):
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Yield a session, rolling back on error and always closing it."""
    db = factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
