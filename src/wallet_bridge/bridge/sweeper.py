"""Periodic maintenance of the pending-action queue."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from wallet_bridge.approvals.badge import BadgeCounter
from wallet_bridge.approvals.queue import PendingActionQueue
from wallet_bridge.bridge.dispatcher import Dispatcher
from wallet_bridge.config import QueueConfig
from wallet_bridge.wallet.connections import ConnectionStore

logger = logging.getLogger("wallet_bridge.sweeper")


@dataclass
class SweepReport:
    expired: list[str] = field(default_factory=list)
    reconciled: int = 0
    purged: int = 0
    badge: int = 0
    disconnected: list[str] = field(default_factory=list)


class Sweeper:
    """Expires stale actions, delivers replies for out-of-process approvals,
    purges old history and drops idle connections.
    """

    def __init__(
        self,
        queue: PendingActionQueue,
        dispatcher: Dispatcher,
        badge: BadgeCounter,
        settings: QueueConfig | None = None,
        *,
        connections: ConnectionStore | None = None,
        inactive_seconds: float | None = None,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.badge = badge
        self.settings = settings or QueueConfig()
        self.connections = connections
        self.inactive_seconds = inactive_seconds
        self._task: asyncio.Task | None = None

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        expired = await self.queue.expire_stale(self.settings.expiry_seconds)
        report.expired = [a.id for a in expired]
        report.reconciled = await self.dispatcher.reconcile()
        report.purged = await self.queue.purge(self.settings.retention_seconds)
        report.badge = await self.badge.refresh()
        if self.connections is not None and self.inactive_seconds:
            report.disconnected = await self.connections.cleanup_inactive(self.inactive_seconds)
        return report

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        interval = self.settings.sweep_interval_seconds
        logger.info(f"Sweeper started (every {interval:g}s)")
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(interval)
