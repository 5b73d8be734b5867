"""
Database connection management.

Provides SQLite connections for the quota counters and service configs.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "api_cache_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    A busy timeout is set so concurrent increments from several request
    handlers wait for the write lock instead of failing immediately.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=10.0)
    conn.execute("PRAGMA busy_timeout = 10000")
    return conn
