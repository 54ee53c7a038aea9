"""
Database connection management.

Provides SQLite connections for the idempotency and spend tables.
"""

import sqlite3
from pathlib import Path

from ai_batch_guard.core.errors import StoreUnavailableError

DEFAULT_DB_PATH = ".ai-batch-guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Connections wait on a locked database instead of failing immediately,
    so concurrent writers from several processes serialize.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection

    Raises:
        StoreUnavailableError: If the database cannot be opened
    """
    path = Path(db_path)
    try:
        if path.parent != Path("."):
            path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), timeout=5.0)
    except (sqlite3.Error, OSError) as e:
        raise StoreUnavailableError(f"Cannot open database {db_path}: {e}") from e
    return conn
