"""
Database connection, initialization and transaction boundaries.
"""
from __future__ import annotations

import itertools
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from squadmarket.config import get_settings

from .schema import all_schema_sql

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MESSAGES = ("database is locked", "database is busy", "database table is locked")


class StoreUnavailable(RuntimeError):
    """Transient store failures persisted past the retry budget."""


_db_path: Path | None = None


def set_db_path(path: str | Path) -> None:
    """Set the database path. Call before first get_connection if not using the configured one."""
    global _db_path
    _db_path = Path(path)


def get_db_path() -> Path:
    """Return the current database path."""
    if _db_path is not None:
        return _db_path
    return get_settings().db_path


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """
    Return a new SQLite connection in autocommit mode.
    Writes must go through transaction(); use as context manager or ensure close() is called.
    """
    path = Path(db_path) if db_path else get_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(path),
        timeout=get_settings().db_busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def init_db(db_path: str | Path | None = None) -> None:
    """Create or ensure all tables exist."""
    conn = get_connection(db_path)
    try:
        conn.executescript(all_schema_sql())
    finally:
        conn.close()


_savepoint_ids = itertools.count(1)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Atomic unit of work.

    Outermost: BEGIN IMMEDIATE ... COMMIT, so the write lock is taken up front and
    reads inside the block see the state the writes apply to.
    Nested: SAVEPOINT ... RELEASE (ROLLBACK TO on error).
    Any exception, including cancellation, rolls the whole unit back.
    """
    if conn.in_transaction:
        name = f"sp_{next(_savepoint_ids)}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def is_transient(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return any(m in msg for m in _TRANSIENT_MESSAGES)


def run_in_transaction(
    conn: sqlite3.Connection,
    fn: Callable[[], T],
    attempts: int | None = None,
    backoff: float | None = None,
) -> T:
    """
    Run fn inside transaction(conn), retrying the whole unit on transient lock errors
    with exponential backoff. fn must re-read everything it depends on.
    Business exceptions raised by fn propagate immediately (after rollback).
    """
    settings = get_settings()
    attempts = attempts if attempts is not None else settings.tx_retries
    backoff = backoff if backoff is not None else settings.tx_backoff
    for attempt in range(max(1, attempts)):
        try:
            with transaction(conn):
                return fn()
        except sqlite3.OperationalError as e:
            if not is_transient(e):
                raise
            if attempt + 1 >= attempts:
                raise StoreUnavailable(f"store busy after {attempts} attempts: {e}") from e
            delay = backoff * (2 ** attempt)
            logger.warning("transient store error (attempt %d/%d), retrying in %.3fs: %s", attempt + 1, attempts, delay, e)
            time.sleep(delay)
    raise StoreUnavailable("no attempts made")
