"""Async SQLite database layer for the wallet bridge.

Uses ``aiosqlite`` for non-blocking database access with WAL mode and
dictionary-style row results.  Every write commits before returning, so a
statement that returned is durable.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite


class Database:
    """Thin async wrapper around an SQLite database.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  The file (and any
        intermediate directories) will be created automatically on
        :meth:`connect` if they do not already exist.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database connection, enable WAL mode, and run migrations."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))

        # WAL lets the CLI and the server share the file.
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute("PRAGMA busy_timeout=5000;")

        self._conn.row_factory = sqlite3.Row

        await self._migrate()

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement and commit.

        Returns the raw ``aiosqlite.Cursor`` so callers can inspect
        ``lastrowid``, ``rowcount``, etc.
        """
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        """Execute a query and return the first row as a dict, or ``None``."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        async with self._conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a query and return all rows as a list of dicts."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def fetch_value(self, sql: str, params: tuple = ()):
        """Execute a query and return the first column of the first row."""
        row = await self.fetch_one(sql, params)
        if row is None:
            return None
        return next(iter(row.values()))

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        """Create all required tables if they do not already exist."""
        assert self._conn is not None

        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS pending_actions (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                method TEXT NOT NULL,
                request_id TEXT,
                origin TEXT DEFAULT '',
                payload_json TEXT DEFAULT '{}',
                status TEXT DEFAULT 'pending',
                result_json TEXT,
                error TEXT,
                created_at REAL NOT NULL,
                resolved_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_pending_actions_status
                ON pending_actions(status, created_at);

            CREATE TABLE IF NOT EXISTS connections (
                origin TEXT PRIMARY KEY,
                name TEXT DEFAULT '',
                icon TEXT DEFAULT '',
                account TEXT NOT NULL,
                chain_id INTEGER NOT NULL,
                permissions_json TEXT DEFAULT '[]',
                connected_at REAL NOT NULL,
                last_used_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS networks (
                chain_id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                rpc_url TEXT NOT NULL,
                native_symbol TEXT DEFAULT 'ETH',
                explorer_url TEXT DEFAULT '',
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
            """
        )
        await self._conn.commit()


# ------------------------------------------------------------------
# Convenience factory
# ------------------------------------------------------------------

def get_database(profile_dir: Path) -> Database:
    """Return a :class:`Database` instance pointing at ``profile_dir/wallet.db``.

    The caller is responsible for calling :meth:`Database.connect` before
    using the returned instance.
    """
    return Database(Path(profile_dir) / "wallet.db")
