"""
Module: mda_kernel.db.engine
Responsibility: Engine and session lifecycle for the posting engine.
Architecture position: Kernel > DB.  Used by the composition root, scripts
    and the test suite; services never create engines themselves.

Invariants enforced:
    - A single module-level engine and session factory per process.
    - PostgreSQL runs at READ COMMITTED; row locks (SELECT ... FOR UPDATE)
      provide the stronger guarantees where the period service needs them.
    - SQLite connections emit their own BEGIN so SAVEPOINT works, which the
      atomic posting step and create-if-absent period insert depend on.
    - Every storage call is bounded: pool checkout, connect and statement
      (PostgreSQL) or lock wait (SQLite) all use the configured timeout.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
"""

import atexit
import math
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from mda_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_savepoint_support(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def engine_options(
    database_url: str,
    *,
    timeout: float = 5.0,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
) -> dict:
    """
    Keyword arguments for create_engine().

    *timeout* (seconds) bounds every storage call: waiting for a pooled
    connection, opening one, and each statement (PostgreSQL) or lock wait
    (SQLite).  Callers pass the retry deadline so a hung call surfaces as a
    timeout the retry policy can classify.
    """
    if timeout <= 0:
        raise ValueError(f"timeout must be positive: {timeout}")

    if database_url.startswith("sqlite"):
        options: dict = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            options["poolclass"] = StaticPool
        return options

    return {
        "poolclass": QueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_timeout": timeout,
        "pool_recycle": pool_recycle,
        "isolation_level": "READ COMMITTED",
        "connect_args": {
            "connect_timeout": max(2, math.ceil(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        },
    }


def init_engine_from_url(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    timeout: float = 5.0,
    echo: bool = False,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    Postconditions: subsequent get_engine()/get_session() calls use this
        engine until reset_engine() is called.
    """
    global _engine, _SessionFactory

    options = engine_options(
        database_url, timeout=timeout, pool_size=pool_size, max_overflow=max_overflow
    )
    _engine = create_engine(database_url, echo=echo, **options)
    if _engine.dialect.name == "sqlite":
        _install_sqlite_savepoint_support(_engine)

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "timeout": timeout},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on normal exit, rolls back and re-raises on exception, and
    always closes the session.

    Usage:
        with session_scope() as session:
            orchestrator = PostingOrchestrator(session, snapshot)
            orchestrator.post_event(event, actor_id)
    """
    session = get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create every table registered on Base.metadata."""
    from mda_kernel.db.base import Base
    import mda_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop all tables. Primarily for testing."""
    from mda_kernel.db.base import Base
    import mda_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None


def _atexit_dispose() -> None:
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)


def is_postgres() -> bool:
    if _engine is None:
        return False
    return _engine.dialect.name == "postgresql"
