"""Badge counter mirroring the number of pending actions."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from wallet_bridge.approvals.queue import PendingActionQueue

logger = logging.getLogger("wallet_bridge.approvals.badge")

Notifier = Callable[[int], Awaitable[None]]


class BadgeCounter:
    """Derived count of pending actions, pushed to notifiers on every change.

    The count is never stored on its own: it is whatever the queue reported
    after its latest committed write (or after :meth:`refresh`).
    """

    def __init__(self, queue: PendingActionQueue) -> None:
        self.queue = queue
        self.count = 0
        self._notifiers: list[Notifier] = []
        queue.on_changed(self._on_queue_changed)

    def subscribe(self, notifier: Notifier) -> None:
        self._notifiers.append(notifier)

    def unsubscribe(self, notifier: Notifier) -> None:
        if notifier in self._notifiers:
            self._notifiers.remove(notifier)

    async def refresh(self) -> int:
        """Recount from storage (picks up writes made by other processes)."""
        await self._on_queue_changed(await self.queue.pending_count())
        return self.count

    @property
    def text(self) -> str:
        """Badge label: empty when nothing is pending."""
        return str(self.count) if self.count else ""

    async def _on_queue_changed(self, pending_count: int) -> None:
        changed = pending_count != self.count
        self.count = pending_count
        if not changed:
            return
        logger.debug(f"Badge count is now {pending_count}")
        for notifier in list(self._notifiers):
            try:
                await notifier(pending_count)
            except Exception as e:
                logger.error(f"Badge notifier error: {e}")
