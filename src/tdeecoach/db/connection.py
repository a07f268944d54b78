"""SQLite connections, one transaction per context."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from tdeecoach.db.schema import get_schema_sql

# Seconds a connection waits on another writer before failing
DEFAULT_BUSY_TIMEOUT = 5.0


class DatabaseConnection:
    """Opens SQLite connections for one database file."""

    def __init__(self, db_path: Path, timeout: float = DEFAULT_BUSY_TIMEOUT):
        """
        Args:
            db_path: Path to the SQLite database file (parents are created)
            timeout: Busy timeout in seconds when another connection writes
        """
        self.db_path = db_path
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_connection(
        self, immediate: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for a single transaction.

        Commits on clean exit and rolls back everything written through the
        connection if the block raises.

        With ``immediate`` the write lock is taken before the first read, so
        a read-compute-write sequence cannot interleave with another process
        writing the same database.

        Example:
            with db.get_connection(immediate=True) as conn:
                ComputedStateQueries.upsert_states(conn, user_id, states)
        """
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create all tables if they don't exist."""
        with self.get_connection() as conn:
            conn.executescript(get_schema_sql())


_db: Optional[DatabaseConnection] = None


def get_db() -> DatabaseConnection:
    """Shared database for the configured path, created on first use."""
    global _db
    if _db is None:
        from tdeecoach.config import get_settings

        database = get_settings().database
        _db = DatabaseConnection(database.path, database.timeout_seconds)
    return _db


def set_db(db: Optional[DatabaseConnection]) -> None:
    """Replace the shared database (tests point it at a temporary file)."""
    global _db
    _db = db
