"""Engines and sessions for the conversation log.

Engines are cached per database URL, so stores built from different settings
(one per test database, for example) never share a connection pool.
"""

import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session as DBSession, sessionmaker

from assistant.config import Settings
from assistant.db.models import Base


_lock = threading.Lock()
_engines: Dict[str, Engine] = {}
_factories: Dict[str, sessionmaker] = {}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # Message rows rely on ON DELETE CASCADE; SQLite ignores it unless asked.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(settings: Settings) -> Engine:
    url = settings.database_url
    with _lock:
        engine = _engines.get(url)
        if engine is None:
            if url.startswith("sqlite"):
                # Request threads and producer threads share the pool.
                engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
                event.listen(engine, "connect", _enable_sqlite_foreign_keys)
            else:
                engine = create_engine(url, pool_pre_ping=True)
            _engines[url] = engine
        return engine


def get_session_factory(settings: Settings) -> sessionmaker:
    url = settings.database_url
    engine = get_engine(settings)
    with _lock:
        factory = _factories.get(url)
        if factory is None:
            # Turns are read after commit, so keep loaded attributes.
            factory = sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
            _factories[url] = factory
        return factory


@contextmanager
def get_db(settings: Settings) -> Generator[DBSession, None, None]:
    """One unit of work: commit on success, roll back on any error."""
    session = get_session_factory(settings)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """Dispose every cached engine."""
    with _lock:
        engines = list(_engines.values())
        _engines.clear()
        _factories.clear()
    for engine in engines:
        engine.dispose()


def init_db(settings: Settings) -> None:
    """Create the conversations and messages tables if missing."""
    Base.metadata.create_all(bind=get_engine(settings))
