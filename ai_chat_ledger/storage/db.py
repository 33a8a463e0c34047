"""
Database connection management.

Every repository call opens its own short-lived SQLite connection, so
connections are never shared between the threads that run concurrent
usage queries.
"""

import sqlite3
from pathlib import Path

from ai_chat_ledger.config.loader import DEFAULT_DB_PATH

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = BUSY_TIMEOUT) -> sqlite3.Connection:
    """Open a SQLite connection with foreign keys enabled.

    The parent directory is created on first use.

    Args:
        db_path: Path to SQLite database file
        timeout: Busy timeout in seconds

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
