from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from loguru import logger
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.errors import StoreConflict

T = TypeVar("T")

Base = declarative_base()

# SQLSTATEs Postgres uses for serialization failures and deadlocks.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return

    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return

    path = Path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def build_engine(url: str, *, echo: bool = False, statement_timeout: float = 15.0) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": echo,
        "future": True,
        "pool_pre_ping": True,
    }

    parsed = make_url(url)
    backend = parsed.get_backend_name()
    driver = parsed.get_driver_name()

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        # busy timeout: how long a writer waits on the database lock
        connect_args["timeout"] = statement_timeout
        _ensure_sqlite_path(url)
    else:
        engine_kwargs["pool_recycle"] = 300

        if backend.startswith("postgresql"):
            connect_args.setdefault("keepalives", 1)
            connect_args.setdefault("keepalives_idle", 120)
            connect_args.setdefault("keepalives_interval", 30)
            connect_args.setdefault("keepalives_count", 5)
            connect_args.setdefault(
                "options", f"-c statement_timeout={int(statement_timeout * 1000)}"
            )
            if driver == "psycopg":
                connect_args.setdefault("prepare_threshold", None)

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    engine = create_engine(url, **engine_kwargs)
    if backend == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit=False lets pipelines hand detached rows to callers after
    # the unit of work closes, without holding a session across I/O.
    return sessionmaker(
        bind=engine, autoflush=True, autocommit=False, expire_on_commit=False, future=True
    )


def _ensure_column(engine: Engine, table: str, column: str, definition: str) -> None:
    inspector = inspect(engine)
    columns = {col["name"] for col in inspector.get_columns(table)}
    if column in columns:
        return
    with engine.begin() as connection:
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {definition}"))


def _apply_schema_updates(engine: Engine) -> None:
    dialect_name = engine.dialect.name
    boolean_default = "BOOLEAN DEFAULT FALSE" if dialect_name == "postgresql" else "BOOLEAN DEFAULT 0"
    timestamp_type = "TIMESTAMP WITH TIME ZONE" if dialect_name == "postgresql" else "TIMESTAMP"
    # Columns added after the first production deployment.
    _ensure_column(engine, "cycles", "parked", boolean_default)
    _ensure_column(engine, "cycles", "last_error", "TEXT")
    _ensure_column(engine, "cycles", "evaluated_at", timestamp_type)
    _ensure_column(engine, "slips", "prize_eligible", boolean_default)
    _ensure_column(engine, "fixtures", "last_read_ok_at", timestamp_type)
    _ensure_column(engine, "fixtures", "last_read_error", "VARCHAR(32)")
    _ensure_column(engine, "fixtures", "last_read_error_at", timestamp_type)
    with engine.begin() as connection:
        connection.execute(
            text("CREATE INDEX IF NOT EXISTS ix_cycles_status_cycle_id ON cycles (status, cycle_id)")
        )


def init_db(engine: Engine) -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    _apply_schema_updates(engine)


@contextmanager
def session_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _is_retryable(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return sqlstate in _RETRYABLE_SQLSTATES


def run_in_transaction(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    *,
    attempts: int = 3,
    backoff: tuple[float, ...] = (1.0, 2.0, 4.0),
    label: str = "store transaction",
) -> T:
    """Run ``work`` in its own transaction, retrying lock and serialization conflicts."""

    last_error: DBAPIError | None = None
    for attempt in range(1, attempts + 1):
        try:
            with session_scope(session_factory) as session:
                return work(session)
        except DBAPIError as exc:
            if not _is_retryable(exc):
                raise
            last_error = exc
            if attempt >= attempts:
                break
            delay = backoff[min(attempt - 1, len(backoff) - 1)] if backoff else 0.0
            logger.warning(
                "{} conflicted (attempt {}/{}): {}; retrying in {}s",
                label,
                attempt,
                attempts,
                exc.__class__.__name__,
                delay,
            )
            if delay:
                time.sleep(delay)
    raise StoreConflict(f"{label} failed after {attempts} attempts") from last_error


class _LocalCycleLocks:
    """Per-cycle locks for dialects without advisory locks (SQLite)."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def get(self, cycle_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(cycle_id, threading.Lock())


_local_cycle_locks = _LocalCycleLocks()


def acquire_cycle_lock(session: Session, cycle_id: int) -> None:
    """Take a transaction-scoped lock keyed by ``cycle_id``.

    PostgreSQL uses ``pg_advisory_xact_lock`` which is released at commit or
    rollback. Other dialects fall back to an in-process lock released when the
    session's transaction ends, which is sufficient for the single-process engine.
    """

    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": int(cycle_id)})
        return

    # begin the transaction now so its end event is guaranteed to fire
    session.connection()
    lock = _local_cycle_locks.get(int(cycle_id))
    lock.acquire()
    released = False

    def _release(_session, transaction) -> None:
        nonlocal released
        if released or transaction.parent is not None:
            return
        released = True
        lock.release()

    event.listen(session, "after_transaction_end", _release)
