"""Relay: store-and-forward hop between the page and the privileged process.

The relay checks envelope *shape* and direction, and withholds events aimed
at another origin.  It keeps no per-request state; a message in flight
when the relay dies is simply lost and the page-side timeout covers it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field

from wallet_bridge.bridge.channel import ChannelClosed, Endpoint
from wallet_bridge.bridge.envelope import MessageType, validate_envelope
from wallet_bridge.errors import InvalidEnvelope

logger = logging.getLogger("wallet_bridge.relay")

# Which envelope types may travel in each direction.
_UPSTREAM = frozenset({MessageType.REQUEST})
_DOWNSTREAM = frozenset({MessageType.REPLY, MessageType.EVENT})

MAX_REJECTED_REASONS = 20


@dataclass
class RelayStats:
    forwarded_up: int = 0
    forwarded_down: int = 0
    rejected: int = 0
    withheld: int = 0
    # most recent reasons only
    rejected_reasons: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_REJECTED_REASONS))


class Relay:
    """Pumps messages between a page endpoint and a privileged endpoint.

    Parameters
    ----------
    page:
        Endpoint facing the untrusted page.
    privileged:
        Endpoint facing the dispatcher.
    origin:
        The page origin as observed by the relay.  When set it is stamped
        on every upstream request, replacing whatever the page claimed.
        Events targeted at any other origin never reach this page.
    """

    def __init__(self, page: Endpoint, privileged: Endpoint, *, origin: str | None = None) -> None:
        self.page = page
        self.privileged = privileged
        self.origin = origin
        self.stats = RelayStats()
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._pump(self.page, self.privileged, _UPSTREAM, up=True)),
            asyncio.create_task(self._pump(self.privileged, self.page, _DOWNSTREAM, up=False)),
        ]

    async def run(self) -> None:
        """Forward until either side closes, then close the other side."""
        self.start()
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                logger.error(f"Relay pump failed: {task.exception()}")
        await self.stop()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.page.close()
        await self.privileged.close()

    async def _pump(
        self,
        source: Endpoint,
        target: Endpoint,
        allowed: frozenset[MessageType],
        *,
        up: bool,
    ) -> None:
        async for delivery in source:
            message = delivery.message
            try:
                kind = validate_envelope(message)
                if kind not in allowed:
                    raise InvalidEnvelope(f"{kind.value} envelope not allowed {'upstream' if up else 'downstream'}")
            except InvalidEnvelope as e:
                self.stats.rejected += 1
                self.stats.rejected_reasons.append(e.message)
                logger.warning(f"Relay rejected message from {delivery.source}: {e.message}")
                continue

            if not up and kind is MessageType.EVENT and not self._for_this_page(message):
                self.stats.withheld += 1
                logger.debug(f"Relay withheld {message.get('event')!r} event aimed at {message.get('origin')}")
                continue

            if up and self.origin:
                message = {**message, "origin": self.origin}
            try:
                await target.send(message)
            except ChannelClosed:
                logger.info(f"Relay target {target.name} closed; stopping")
                return
            if up:
                self.stats.forwarded_up += 1
            else:
                self.stats.forwarded_down += 1

    def _for_this_page(self, message: dict) -> bool:
        target = message.get("origin")
        return not target or target == self.origin
