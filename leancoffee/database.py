import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, TypeVar
import uuid

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from leancoffee.config.loader import (
    get_database_url,
    get_pool_settings,
    get_sqlite_settings,
)

logger = logging.getLogger("database")

R = TypeVar("R")

_sqlite_settings = get_sqlite_settings()
# One writer at a time per process; SQLite serializes writers anyway.
_write_lock = threading.RLock()


def _prepare_sqlite_file(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return
    path = Path(url.database)
    if not path.is_absolute():
        path = Path.cwd() / path
    path.parent.mkdir(parents=True, exist_ok=True)


def create_session_engine(database_url: str, **overrides: Any) -> Engine:
    """
    Build an engine for ``database_url``.

    SQLite gets a busy timeout and cross-thread access; any other backend
    gets the pool settings from config.yaml. ``overrides`` are passed to
    ``create_engine`` as-is (tests pass ``poolclass``).
    """
    if database_url.startswith("sqlite"):
        _prepare_sqlite_file(database_url)
        options: Dict[str, Any] = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": max(1, _sqlite_settings["busy_timeout_ms"] / 1000),
            }
        }
    else:
        pool = get_pool_settings()
        options = {
            "pool_size": pool["pool_size"],
            "max_overflow": pool["max_overflow"],
            "pool_timeout": pool["pool_timeout"],
            "pool_recycle": pool["pool_recycle"],
            "pool_pre_ping": True,
            "pool_use_lifo": True,
        }
    options.update(overrides)
    return create_engine(database_url, **options)


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    pragmas = (
        f"journal_mode={_sqlite_settings['journal_mode']}",
        f"synchronous={_sqlite_settings['synchronous']}",
        "foreign_keys=ON",
        f"busy_timeout={_sqlite_settings['busy_timeout_ms']}",
    )
    cursor = dbapi_connection.cursor()
    for pragma in pragmas:
        cursor.execute(f"PRAGMA {pragma}")
    cursor.close()


def _is_locked(exc: OperationalError) -> bool:
    text = str(exc).lower()
    return "database is locked" in text or "database table is locked" in text


class QueuedSession(Session):
    """ORM session that queues SQLite writes behind one lock and retries lock errors."""

    def _on_sqlite(self) -> bool:
        return self.get_bind().dialect.name == "sqlite"

    def _retrying(self, write: Callable[[], R]) -> R:
        attempts = max(1, _sqlite_settings["write_retries"])
        backoff = max(1, _sqlite_settings["retry_backoff_ms"]) / 1000
        attempt = 1
        with _write_lock:
            while True:
                try:
                    return write()
                except OperationalError as exc:
                    if not _is_locked(exc) or attempt >= attempts:
                        raise
                    super().rollback()
                    logger.warning(
                        "SQLite busy on commit, retry %s of %s", attempt, attempts - 1
                    )
                    time.sleep(backoff * attempt)
                    attempt += 1

    def commit(self) -> None:
        if not self._on_sqlite():
            return super().commit()
        return self._retrying(super().commit)

    def flush(self, objects=None) -> None:
        if not self._on_sqlite():
            return super().flush(objects)
        with _write_lock:
            return super().flush(objects)


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by every component; objects stay readable after commit."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
        class_=QueuedSession,
    )


DATABASE_URL = get_database_url()
engine = create_session_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a request-scoped ORM session."""
    request_tag = uuid.uuid4().hex[:8]
    db = SessionLocal()
    logger.debug("[db:%s] session opened", request_tag)
    try:
        yield db
    finally:
        db.close()
        logger.debug("[db:%s] session closed", request_tag)
