"""
Database connection management.

Provides SQLite connections for request and event persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "otw_dispatch.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    Transactions are managed explicitly by the caller.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for another writer's lock

    Returns:
        SQLite connection in autocommit mode with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
