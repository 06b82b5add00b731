"""
DocVault Database Session Management.

Single entry point for engine initialisation plus the ``transaction()``
context manager every service uses. Transactions are explicit: the caller
opens one, passes the Session to the stores, and the context manager commits
or rolls back. An optional deadline (seconds) bounds the whole transaction;
once it passes the transaction is rolled back and TransactionTimeoutError is
raised, so no partial Grant/Document mutation survives.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Generator, Optional

import sqlalchemy
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from docvault.db.base import Base
from docvault.engine.errors import TransactionTimeoutError

logger = logging.getLogger("docvault.db.session")

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def init_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> sessionmaker:
    """
    Create the engine and return a ``sessionmaker`` bound to it.

    SQLite URLs get ``check_same_thread=False``, a busy timeout and
    ``PRAGMA foreign_keys=ON`` on every connection; pool sizing only applies
    to server databases.

    Args:
        db_url:        SQLAlchemy URL (postgresql://..., sqlite:///...).
        create_tables: Run Base.metadata.create_all() (dev / ``docvault init``).
    """
    global _engine, _session_factory

    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @sqlalchemy.event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(
            db_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            pool_pre_ping=pool_pre_ping,
        )

    if create_tables:
        Base.metadata.create_all(engine)

    _engine = engine
    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    logger.info(f"Database initialised ({engine.dialect.name})")
    return _session_factory


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


def check_deadline(session: Session) -> None:
    """Raise TransactionTimeoutError if the session's deadline has passed."""
    expires_at = session.info.get("expires_at")
    if expires_at is not None and time.monotonic() > expires_at:
        raise TransactionTimeoutError(
            "Transaction deadline exceeded",
            deadline_seconds=session.info.get("deadline"),
        )


@contextmanager
def transaction(
    session_factory: Any,
    deadline: Optional[float] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for one database transaction with commit/rollback.

    Usage:
        with transaction(factory, deadline=5) as session:
            documents.soft_delete(session, document_id)
    """
    session: Session = session_factory()
    if deadline is not None:
        session.info["deadline"] = deadline
        session.info["expires_at"] = time.monotonic() + deadline
    try:
        if deadline is not None and session.get_bind().dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL statement_timeout = {max(int(deadline * 1000), 1)}"))
        yield session
        check_deadline(session)
        session.commit()
    except TransactionTimeoutError:
        session.rollback()
        logger.warning(f"Transaction rolled back after exceeding {deadline}s deadline")
        raise
    except DBAPIError as e:
        session.rollback()
        expires_at = session.info.get("expires_at")
        if expires_at is not None and time.monotonic() > expires_at:
            raise TransactionTimeoutError(
                "Transaction deadline exceeded",
                deadline_seconds=deadline,
            ) from e
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_db() -> None:
    """Dispose the engine. Used during shutdown and in tests."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
