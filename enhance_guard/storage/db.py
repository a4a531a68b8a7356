"""
Database connection management.

Provides SQLite connection for usage persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "enhance_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection using write-ahead logging for file databases
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    return conn
