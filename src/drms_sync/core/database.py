"""Local database connection and session management.

The device keeps its sync queue and conflict mirror in a SQLite file so that
pending work survives restarts and power loss.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from drms_sync.models.base import Base


def _is_memory_url(database_url: str) -> bool:
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def create_local_engine(database_url: str, echo: bool = False) -> Engine:
    """Create the SQLAlchemy engine for the local store.

    Args:
        database_url: SQLAlchemy URL; file-backed SQLite in production
        echo: Echo SQL statements

    Returns:
        Configured engine
    """
    url = make_url(database_url)
    kwargs: Dict[str, Any] = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_url(database_url):
            # One shared connection, otherwise every session sees an empty db
            kwargs["poolclass"] = StaticPool
        elif url.database:
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, **kwargs)

    if url.get_backend_name() == "sqlite":
        event.listen(engine, "connect", _set_sqlite_pragmas)

    return engine


def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to the local engine."""
    return sessionmaker(
        bind=engine,
        class_=Session,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """Initialize database with tables."""
    # Import models so their tables are registered on the metadata
    from drms_sync.models import conflict, sync_queue, sync_state  # noqa: F401

    Base.metadata.create_all(bind=engine)
