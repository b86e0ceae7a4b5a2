"""Per-origin connection state (which pages may see which account)."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable

from wallet_bridge.storage.database import Database
from wallet_bridge.storage.models import ConnectionRecord

logger = logging.getLogger("wallet_bridge.wallet.connections")

DEFAULT_PERMISSIONS = ["eth_accounts"]


class ConnectionStore:
    """Persisted connections, one row per page origin."""

    def __init__(self, db: Database, now_fn: Callable[[], float] = time.time) -> None:
        self.db = db
        self._now = now_fn

    async def get(self, origin: str) -> ConnectionRecord | None:
        row = await self.db.fetch_one(
            "SELECT * FROM connections WHERE origin = ?", (origin,)
        )
        return ConnectionRecord.from_row(row) if row else None

    async def is_connected(self, origin: str) -> bool:
        return await self.get(origin) is not None

    async def list_all(self) -> list[ConnectionRecord]:
        rows = await self.db.fetch_all("SELECT * FROM connections ORDER BY connected_at")
        return [ConnectionRecord.from_row(r) for r in rows]

    async def connect(
        self,
        origin: str,
        account: str,
        chain_id: int,
        *,
        name: str = "",
        icon: str = "",
        permissions: list[str] | None = None,
    ) -> ConnectionRecord:
        """Record (or refresh) a connection for *origin*."""
        now = self._now()
        record = ConnectionRecord(
            origin=origin,
            name=name,
            icon=icon,
            account=account,
            chain_id=chain_id,
            permissions=permissions or list(DEFAULT_PERMISSIONS),
            connected_at=now,
            last_used_at=now,
        )
        await self.db.execute(
            "INSERT OR REPLACE INTO connections "
            "(origin, name, icon, account, chain_id, permissions_json, connected_at, last_used_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.origin,
                record.name,
                record.icon,
                record.account,
                record.chain_id,
                json.dumps(record.permissions),
                record.connected_at,
                record.last_used_at,
            ),
        )
        logger.info(f"Origin connected: {origin} -> {account}")
        return record

    async def touch(self, origin: str) -> None:
        await self.db.execute(
            "UPDATE connections SET last_used_at = ? WHERE origin = ?",
            (self._now(), origin),
        )

    async def set_chain(self, chain_id: int) -> None:
        """Point every connection at *chain_id* (the wallet switched networks)."""
        await self.db.execute("UPDATE connections SET chain_id = ?", (chain_id,))

    async def disconnect(self, origin: str) -> bool:
        """Forget *origin*. Returns False if it was not connected."""
        cursor = await self.db.execute(
            "DELETE FROM connections WHERE origin = ?", (origin,)
        )
        removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Origin disconnected: {origin}")
        return removed

    async def cleanup_inactive(self, max_inactive_seconds: float) -> list[str]:
        """Drop connections unused for longer than *max_inactive_seconds*."""
        cutoff = self._now() - max_inactive_seconds
        rows = await self.db.fetch_all(
            "SELECT origin FROM connections WHERE last_used_at < ?", (cutoff,)
        )
        origins = [r["origin"] for r in rows]
        if origins:
            await self.db.execute(
                "DELETE FROM connections WHERE last_used_at < ?", (cutoff,)
            )
            logger.info(f"Removed {len(origins)} inactive connection(s)")
        return origins
