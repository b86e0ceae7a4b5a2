"""Page-side wallet client (the injected provider).

Turns ``await client.request(method, params)`` into a REQUEST envelope and
settles the call when the correlated REPLY arrives or the timeout fires.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from pydantic import ValidationError

from wallet_bridge.bridge import methods as m
from wallet_bridge.bridge.channel import ChannelClosed, Delivery, Endpoint
from wallet_bridge.bridge.envelope import MessageType, ReplyEnvelope, RequestEnvelope, new_request_id
from wallet_bridge.config import TimeoutConfig
from wallet_bridge.errors import InternalError, RequestTimeout, error_from_reply

logger = logging.getLogger("wallet_bridge.client")

EventHandler = Callable[[Any], Any]


class WalletClient:
    """Correlates requests and replies over a single endpoint.

    Only messages whose source is the endpoint's own peer are considered;
    anything else written into the channel is ignored.  A reply settles
    at most one call, and only while that call is still waiting.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        *,
        origin: str = "",
        timeouts: TimeoutConfig | None = None,
        id_factory: Callable[[], str] = new_request_id,
    ) -> None:
        self.endpoint = endpoint
        self.origin = origin
        self.timeouts = timeouts or TimeoutConfig()
        self._new_id = id_factory
        self._pending: dict[str, asyncio.Future] = {}
        self._handlers: dict[str, list[EventHandler]] = {}
        self._listener: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())

    async def close(self) -> None:
        """Stop listening; calls still in flight fail like a page reload."""
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(InternalError("Wallet client closed"))
        self._pending.clear()
        await self.endpoint.close()

    async def __aenter__(self) -> WalletClient:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: list[Any] | None = None, *, timeout: float | None = None) -> Any:
        """Send one request and wait for its reply.

        Raises the typed :class:`~wallet_bridge.errors.BridgeError` carried by
        a failed reply, or :class:`RequestTimeout` if none arrives in time.
        """
        self.start()
        if timeout is None:
            timeout = self.timeouts.for_method(method, m.is_interactive(method))

        request_id = self._new_id()
        while request_id in self._pending:
            request_id = self._new_id()

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        envelope = RequestEnvelope(
            request_id=request_id,
            method=method,
            params=list(params or []),
            origin=self.origin,
        )
        try:
            await self.endpoint.send(envelope.to_wire())
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.info(f"Request {request_id} ({method}) timed out after {timeout}s")
            raise RequestTimeout(f"{method} timed out after {timeout:g}s") from None
        except ChannelClosed as exc:
            raise InternalError("Wallet channel closed") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _listen(self) -> None:
        async for delivery in self.endpoint:
            await self.receive(delivery)

    async def receive(self, delivery: Delivery) -> bool:
        """Process one incoming delivery. Returns True if it settled a call."""
        if delivery.source != self.endpoint.peer:
            logger.debug(f"Ignoring message from foreign source {delivery.source!r}")
            return False
        message = delivery.message
        if not isinstance(message, dict):
            return False

        kind = message.get("type")
        if kind == MessageType.EVENT.value:
            await self._dispatch_event(message)
            return False
        if kind != MessageType.REPLY.value:
            return False

        future = self._pending.get(message.get("requestId"))
        if future is None or future.done():
            logger.debug(f"Discarding reply for unknown or settled request {message.get('requestId')!r}")
            return False
        try:
            reply = ReplyEnvelope.model_validate(message)
        except ValidationError:
            logger.warning(f"Discarding malformed reply for {message.get('requestId')!r}")
            return False

        self._pending.pop(reply.request_id, None)
        if reply.success:
            future.set_result(reply.data)
        else:
            future.set_exception(error_from_reply(reply.code, reply.error))
        return True

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _dispatch_event(self, message: dict) -> None:
        target = message.get("origin")
        if target and target != self.origin:
            return
        event = message.get("event")
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(message.get("data"))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler for {event!r} failed: {e}")

    # ------------------------------------------------------------------
    # Convenience API
    # ------------------------------------------------------------------

    async def connect(self, name: str | None = None, icon: str | None = None) -> dict:
        meta = {k: v for k, v in (("name", name), ("icon", icon)) if v}
        return await self.request(m.CONNECT, [meta] if meta else [])

    async def is_connected(self) -> bool:
        data = await self.request(m.CONNECT_STATUS)
        return bool(data["connected"])

    async def get_account(self) -> str:
        data = await self.request(m.GET_ACCOUNT)
        return data["address"]

    async def get_chain_id(self) -> str:
        data = await self.request(m.GET_CHAIN_ID)
        return data["chainId"]

    async def disconnect(self) -> None:
        await self.request(m.DISCONNECT)

    async def sign_message(self, message: str) -> str:
        data = await self.request(m.SIGN_MESSAGE, [{"message": message}])
        return data["signedMessage"]

    async def sign_typed_data(self, typed_data: dict) -> str:
        data = await self.request(m.SIGN_TYPED_DATA, [{"typedData": typed_data}])
        return data["signature"]

    async def send_transaction(self, transaction: dict) -> str:
        data = await self.request(m.SEND_TRANSACTION, [transaction])
        return data["transactionHash"]

    async def switch_chain(self, chain_id: int | str) -> str:
        value = hex(chain_id) if isinstance(chain_id, int) else chain_id
        data = await self.request(m.SWITCH_CHAIN, [{"chainId": value}])
        return data["chainId"]

    async def add_chain(self, chain: dict) -> str:
        data = await self.request(m.ADD_CHAIN, [chain])
        return data["chainId"]
