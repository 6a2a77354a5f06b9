"""
Database connection management.

Provides SQLite connections and the transactional unit of work that every
engine write goes through.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from fulfillment_engine.core.errors import Contended

DEFAULT_DB_PATH = "fulfillment_engine.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; transactions are opened
    explicitly by ``transaction``.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for the database write lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


@contextmanager
def transaction(
    db_path: str = DEFAULT_DB_PATH,
    conn: Optional[sqlite3.Connection] = None,
    timeout: float = 5.0,
) -> Iterator[sqlite3.Connection]:
    """Run a block inside one atomic unit of work.

    When ``conn`` is given the block joins the caller's transaction and
    commit/rollback stay with the caller. Otherwise a new connection is
    opened with ``BEGIN IMMEDIATE`` so the write lock is held for the whole
    block; the block commits on success and rolls back on any exception.

    Raises:
        Contended: If the write lock cannot be acquired within ``timeout``
    """
    if conn is not None:
        yield conn
        return

    own = get_connection(db_path, timeout=timeout)
    try:
        try:
            own.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise Contended(f"Timed out waiting for database write lock: {db_path}") from e
            raise
        try:
            yield own
        except BaseException:
            own.execute("ROLLBACK")
            raise
        try:
            own.execute("COMMIT")
        except sqlite3.OperationalError as e:
            own.execute("ROLLBACK")
            if _is_lock_error(e):
                raise Contended(f"Timed out committing to {db_path}") from e
            raise
    finally:
        own.close()
