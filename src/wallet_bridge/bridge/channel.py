"""Duplex message channels connecting the three execution contexts.

A channel is a pair of endpoints.  Whatever one endpoint sends, its peer
receives as a :class:`Delivery` stamped with the sender's name, which lets
a receiver tell its own channel partner apart from foreign writers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger("wallet_bridge.bridge.channel")


class ChannelClosed(Exception):
    """Raised by ``receive`` once the endpoint (or its peer) has closed."""


@dataclass(frozen=True)
class Delivery:
    source: str
    message: Any


@runtime_checkable
class Endpoint(Protocol):
    name: str
    peer: str

    async def send(self, message: Any) -> None: ...

    async def receive(self) -> Delivery: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Delivery]: ...


_CLOSED = object()


class MemoryEndpoint:
    """In-process endpoint backed by an ``asyncio.Queue`` inbox."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.peer = ""
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._peer_endpoint: MemoryEndpoint | None = None
        self._closed = False

    def _bind(self, other: MemoryEndpoint) -> None:
        self._peer_endpoint = other
        self.peer = other.name

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: Any) -> None:
        if self._closed or self._peer_endpoint is None or self._peer_endpoint.closed:
            raise ChannelClosed(f"{self.name} -> {self.peer} is closed")
        await self._peer_endpoint._inbox.put(Delivery(source=self.name, message=message))

    def inject(self, message: Any, source: str) -> None:
        """Deliver *message* as if written by *source* (a foreign sender)."""
        self._inbox.put_nowait(Delivery(source=source, message=message))

    async def receive(self) -> Delivery:
        if self._closed and self._inbox.empty():
            raise ChannelClosed(self.name)
        item = await self._inbox.get()
        if item is _CLOSED:
            self._closed = True
            raise ChannelClosed(self.name)
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_CLOSED)
        peer = self._peer_endpoint
        if peer is not None and not peer.closed:
            peer._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Delivery]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Delivery]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosed:
                return


def channel_pair(a: str, b: str) -> tuple[MemoryEndpoint, MemoryEndpoint]:
    """Create two connected in-process endpoints named *a* and *b*."""
    left, right = MemoryEndpoint(a), MemoryEndpoint(b)
    left._bind(right)
    right._bind(left)
    return left, right


class WebSocketEndpoint:
    """Endpoint over an accepted FastAPI ``WebSocket`` carrying JSON text frames.

    Frames that are not valid JSON are delivered as the raw string so the
    relay can reject them like any other malformed envelope.
    """

    def __init__(self, ws: WebSocket, name: str, peer: str) -> None:
        self.ws = ws
        self.name = name
        self.peer = peer
        self._closed = False

    async def send(self, message: Any) -> None:
        if self._closed:
            raise ChannelClosed(self.name)
        try:
            await self.ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise ChannelClosed(self.name) from exc

    async def receive(self) -> Delivery:
        if self._closed:
            raise ChannelClosed(self.name)
        try:
            text = await self.ws.receive_text()
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise ChannelClosed(self.name) from exc
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            message = text
        return Delivery(source=self.peer, message=message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.ws.close()
        except RuntimeError:
            # Already closed by the client.
            logger.debug(f"WebSocket {self.name} was already closed")

    def __aiter__(self) -> AsyncIterator[Delivery]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Delivery]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosed:
                return
