"""SQLite helpers shared by the persistent stores.

Every store opens a short-lived connection per logical operation; there
is no in-process connection sharing.  Writes that must be atomic run
inside ``transaction()``, which takes the database write lock up front
(``BEGIN IMMEDIATE``) so that read-then-write sequences cannot interleave
across processes.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path


class PersistenceError(RuntimeError):
    """Raised when the persistent store fails; always propagated."""


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=False,
        timeout=30.0,
        isolation_level=None,  # explicit BEGIN/COMMIT only
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


@contextmanager
def transaction(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Run a block inside one IMMEDIATE transaction.

    Commits on success, rolls back on any exception.  ``sqlite3.Error``
    is re-raised as ``PersistenceError`` with the database path attached.
    """
    conn: sqlite3.Connection | None = None
    try:
        conn = connect(db_path)
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        raise PersistenceError(f"SQLite failure on {db_path}: {exc}") from exc
    finally:
        if conn is not None:
            conn.close()


@contextmanager
def reading(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection for read-only queries."""
    conn: sqlite3.Connection | None = None
    try:
        conn = connect(db_path)
        yield conn
    except sqlite3.Error as exc:
        raise PersistenceError(f"SQLite failure on {db_path}: {exc}") from exc
    finally:
        if conn is not None:
            conn.close()


def iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
