"""
Database connection management.

Provides SQLite connections for data persistence. Each operation opens its
own connection; the database runs in WAL mode so concurrent pollers do not
queue behind a single writer connection.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

# Milliseconds a writer waits for a competing write transaction
BUSY_TIMEOUT_MS = 5000


@asynccontextmanager
async def get_connection(db_path: str = "ai_usage_monitor.db") -> AsyncIterator[aiosqlite.Connection]:
    """Open a SQLite connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Yields:
        aiosqlite connection with row access by column name
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(str(path), timeout=BUSY_TIMEOUT_MS / 1000)
    conn.row_factory = aiosqlite.Row
    try:
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        yield conn
    finally:
        await conn.close()
