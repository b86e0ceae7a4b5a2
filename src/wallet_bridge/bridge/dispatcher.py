"""Privileged dispatcher: the only component that executes wallet logic.

Non-interactive methods are answered straight away.  Interactive methods are
parked in the :class:`PendingActionQueue` and their reply is deferred until
the action reaches a terminal state (approved, rejected, or expired).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from wallet_bridge.approvals.queue import PendingActionQueue, ResolveOutcome
from wallet_bridge.bridge import methods as m
from wallet_bridge.bridge.channel import ChannelClosed, Endpoint
from wallet_bridge.bridge.envelope import EventEnvelope, ReplyEnvelope, RequestEnvelope, parse_envelope
from wallet_bridge.errors import (
    BridgeError,
    Expired,
    InternalError,
    InvalidEnvelope,
    InvalidParams,
    Unauthorized,
    UserRejected,
)
from wallet_bridge.storage.models import ActionKind, ActionStatus, PendingAction
from wallet_bridge.wallet.chains import Chain, ChainRegistry
from wallet_bridge.wallet.connections import ConnectionStore
from wallet_bridge.wallet.session import WalletSession

logger = logging.getLogger("wallet_bridge.dispatcher")

ReplySink = Callable[[dict], Awaitable[None]]


@dataclass
class _Waiter:
    """A requester still (possibly) listening for a deferred reply."""

    request_id: str
    origin: str
    sink: ReplySink


@dataclass(eq=False)
class _Attachment:
    """An endpoint served by the dispatcher and the page origin behind it."""

    endpoint: Endpoint
    origin: str | None


class _Deferred:
    pass


_DEFERRED = _Deferred()


class Dispatcher:
    """Routes page requests to wallet state and the pending-action queue.

    Parameters
    ----------
    queue:
        Durable pending-action queue shared with the approval surface.
    session:
        Active account and signer.
    chains:
        Known chains and the current selection.
    connections:
        Per-origin connection records.
    """

    def __init__(
        self,
        queue: PendingActionQueue,
        session: WalletSession,
        chains: ChainRegistry,
        connections: ConnectionStore,
    ) -> None:
        self.queue = queue
        self.session = session
        self.chains = chains
        self.connections = connections
        self._waiters: dict[str, _Waiter] = {}
        self._attachments: list[_Attachment] = []
        queue.on_resolved(self._on_resolved)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def attach(self, endpoint: Endpoint, origin: str | None = None) -> None:
        """Serve requests arriving on *endpoint* until it closes.

        Replies (immediate or deferred) go back through the same endpoint.
        *origin* is the page behind the endpoint; events targeted at another
        origin are never sent to it.
        """
        attachment = _Attachment(endpoint, origin)
        self._attachments.append(attachment)
        try:
            async for delivery in endpoint:
                try:
                    envelope = parse_envelope(delivery.message)
                except InvalidEnvelope as e:
                    logger.warning(f"Dropping message from {delivery.source}: {e}")
                    continue
                if not isinstance(envelope, RequestEnvelope):
                    logger.warning(f"Dropping {envelope.type} envelope sent to the dispatcher")
                    continue
                await self.handle(envelope, endpoint.send)
        finally:
            if attachment in self._attachments:
                self._attachments.remove(attachment)

    async def _send(self, sink: ReplySink, reply: ReplyEnvelope) -> None:
        try:
            await sink(reply.to_wire())
        except ChannelClosed:
            logger.info(f"Reply for {reply.request_id} dropped: requester channel closed")

    async def emit_event(self, event: str, data: Any, origin: str | None = None) -> None:
        """Push an EVENT envelope to the pages of *origin*, or to every page."""
        message = EventEnvelope(event=event, data=data, origin=origin).to_wire()
        for attachment in list(self._attachments):
            if origin is not None and attachment.origin != origin:
                continue
            try:
                await attachment.endpoint.send(message)
            except ChannelClosed:
                if attachment in self._attachments:
                    self._attachments.remove(attachment)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def handle(self, request: RequestEnvelope, sink: ReplySink) -> None:
        """Answer *request* now, or park it and answer when it is resolved.

        Never raises: every failure becomes a ``success: false`` reply.
        """
        logger.debug(f"Request {request.request_id}: {request.method} from {request.origin or '-'}")
        try:
            data = await self._dispatch(request, sink)
        except BridgeError as e:
            reply = ReplyEnvelope.fail(request.request_id, e)
        except Exception as e:
            logger.exception(f"Request {request.request_id} ({request.method}) failed")
            reply = ReplyEnvelope.fail(request.request_id, InternalError(str(e) or type(e).__name__))
        else:
            if data is _DEFERRED:
                return
            reply = ReplyEnvelope.ok(request.request_id, data)
        await self._send(sink, reply)

    async def _dispatch(self, request: RequestEnvelope, sink: ReplySink) -> Any:
        method, params, origin = request.method, request.params, request.origin

        if method == m.CONNECT_STATUS:
            conn = await self.connections.get(origin)
            return {
                "connected": conn is not None,
                "address": conn.account if conn else None,
                "chainId": self.chains.current.hex_id,
            }

        if method == m.GET_ACCOUNT:
            conn = await self.connections.get(origin)
            if conn is None:
                raise Unauthorized("not connected")
            await self.connections.touch(origin)
            return {"address": conn.account, "account": conn.account}

        if method == m.GET_CHAIN_ID:
            return {"chainId": self.chains.current.hex_id}

        if method == m.DISCONNECT:
            await self.revoke(origin)
            return {"message": "disconnected"}

        if method == m.SWITCH_CHAIN:
            chain = await self.chains.switch(m.parse_switch_chain(params))
            await self.connections.set_chain(chain.chain_id)
            await self.emit_event("chainChanged", chain.hex_id)
            return {"chainId": chain.hex_id}

        if method == m.CONNECT:
            meta = m.parse_connect(params)
            conn = await self.connections.get(origin)
            if conn is not None:
                await self.connections.touch(origin)
                return self._connection_data(conn.account)
            account = self.session.require_account()
            payload = {
                "origin": origin,
                "name": meta.get("name", ""),
                "icon": meta.get("icon", ""),
                "account": account,
                "chainId": self.chains.current.hex_id,
                "permissions": ["eth_accounts"],
            }
            return await self._park(request, payload, sink)

        if method == m.SIGN_MESSAGE:
            p = m.parse_sign_message(params)
            account = self._signing_account(p.address)
            payload = {
                "message": p.message,
                "account": account,
                "origin": origin,
                "connected": await self.connections.is_connected(origin),
            }
            return await self._park(request, payload, sink)

        if method == m.SIGN_TYPED_DATA:
            p = m.parse_sign_typed_data(params)
            account = self._signing_account(p.address)
            payload = {
                "typedData": p.typed_data,
                "account": account,
                "origin": origin,
                "connected": await self.connections.is_connected(origin),
            }
            return await self._park(request, payload, sink)

        if method == m.SEND_TRANSACTION:
            tx = m.parse_transaction(params)
            account = self._signing_account(tx.from_)
            transaction = tx.model_dump(by_alias=True, exclude_none=True)
            transaction["from"] = account
            payload = {
                "transaction": transaction,
                "chainId": self.chains.current.hex_id,
                "origin": origin,
                "connected": await self.connections.is_connected(origin),
            }
            return await self._park(request, payload, sink)

        if method == m.ADD_CHAIN:
            p = m.parse_add_chain(params)
            if self.chains.has(p.chain_id):
                return {"chainId": hex(p.chain_id)}
            payload = {
                "chainId": hex(p.chain_id),
                "chainName": p.chain_name,
                "rpcUrl": p.rpc_urls[0],
                "nativeSymbol": p.native_currency.symbol,
                "explorerUrl": p.block_explorer_urls[0] if p.block_explorer_urls else "",
                "origin": origin,
            }
            return await self._park(request, payload, sink)

        raise InvalidParams(f"unsupported method: {method}")

    def _signing_account(self, requested: str | None) -> str:
        account = self.session.require_account()
        if requested and requested != account:
            raise InvalidParams(f"Address {requested} is not the active account")
        return account

    def _connection_data(self, account: str) -> dict:
        return {
            "address": account,
            "account": account,
            "accounts": [account],
            "chainId": self.chains.current.hex_id,
        }

    async def _park(
        self,
        request: RequestEnvelope,
        payload: dict,
        sink: ReplySink,
    ) -> _Deferred:
        # The waiter exists before the action is visible to any approver.
        action_id = PendingAction.new_id()
        self._waiters[action_id] = _Waiter(request.request_id, request.origin, sink)
        try:
            await self.queue.append(
                m.INTERACTIVE_KINDS[request.method],
                request.method,
                payload,
                origin=request.origin,
                request_id=request.request_id,
                action_id=action_id,
            )
        except Exception:
            self._waiters.pop(action_id, None)
            raise
        return _DEFERRED

    # ------------------------------------------------------------------
    # Approval surface
    # ------------------------------------------------------------------

    async def list_pending(self) -> list[PendingAction]:
        return await self.queue.list_pending()

    async def approve(self, action_id: str, result: Any = None) -> ResolveOutcome:
        """Approve a pending action.

        Without *result* the wallet produces it (signature, connected
        account, chain id).  Approving an action that is already terminal
        is a no-op that reports the committed state.
        """
        action = await self.queue.get(action_id)
        if not action.is_pending:
            return ResolveOutcome(action=action, applied=False)
        if result is None:
            result = self._default_result(action)
        return await self.queue.approve(action_id, result)

    async def reject(self, action_id: str, reason: str | None = None) -> ResolveOutcome:
        return await self.queue.reject(action_id, reason)

    async def revoke(self, origin: str) -> bool:
        """Drop the connection of *origin* and tell its pages."""
        if not await self.connections.disconnect(origin):
            return False
        await self.emit_event("accountsChanged", [], origin=origin)
        await self.emit_event("disconnect", {"code": 1000, "message": "Wallet disconnected"}, origin=origin)
        return True

    def _default_result(self, action: PendingAction) -> Any:
        payload = action.payload
        if action.method == m.SIGN_MESSAGE:
            return self.session.signer.sign(payload["message"], payload["account"])
        if action.method == m.SIGN_TYPED_DATA:
            return self.session.signer.sign_typed_data(payload["typedData"], payload["account"])
        if action.kind is ActionKind.CONNECTION:
            return {"account": payload.get("account") or self.session.require_account()}
        if action.kind is ActionKind.CHAIN:
            return {"chainId": payload["chainId"]}
        raise InvalidParams("Approving a transaction requires the broadcast transaction hash")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _on_resolved(self, action: PendingAction) -> None:
        """Queue listener: apply approval side effects, then send the deferred reply."""
        reply: ReplyEnvelope | None = None
        if action.status is ActionStatus.APPROVED:
            try:
                await self._apply_approval(action)
            except Exception as e:
                logger.exception(f"Applying approval of {action.id} failed")
                reply = ReplyEnvelope.fail(action.request_id or "-", InternalError(str(e)))

        waiter = self._waiters.pop(action.id, None)
        if waiter is None:
            logger.info(f"No requester waiting for action {action.id}; reply dropped")
            return
        await self._send(waiter.sink, reply or self._reply_for(action, waiter.request_id))

    async def _apply_approval(self, action: PendingAction) -> None:
        if action.kind is ActionKind.CONNECTION:
            account = self._result_account(action)
            payload = action.payload
            await self.connections.connect(
                action.origin,
                account,
                self.chains.current.chain_id,
                name=payload.get("name", ""),
                icon=payload.get("icon", ""),
                permissions=payload.get("permissions"),
            )
            await self.emit_event("connect", {"chainId": self.chains.current.hex_id}, origin=action.origin)
            await self.emit_event("accountsChanged", [account], origin=action.origin)
        elif action.kind is ActionKind.CHAIN:
            payload = action.payload
            await self.chains.add(
                Chain(
                    name=payload["chainName"],
                    chain_id=m.parse_chain_id(payload["chainId"]),
                    rpc_url=payload["rpcUrl"],
                    native_symbol=payload.get("nativeSymbol", "ETH"),
                    explorer_url=payload.get("explorerUrl", ""),
                )
            )

    @staticmethod
    def _result_account(action: PendingAction) -> str:
        result = action.result
        if isinstance(result, dict):
            return result.get("account") or action.payload["account"]
        return result or action.payload["account"]

    def _reply_for(self, action: PendingAction, request_id: str) -> ReplyEnvelope:
        if action.status is ActionStatus.REJECTED:
            return ReplyEnvelope.fail(request_id, UserRejected(action.error or "User rejected the request"))
        if action.status is ActionStatus.EXPIRED:
            return ReplyEnvelope.fail(request_id, Expired(action.error or "Request expired"))

        if action.method == m.SIGN_MESSAGE:
            data: Any = {"signedMessage": action.result}
        elif action.method == m.SIGN_TYPED_DATA:
            data = {"signature": action.result}
        elif action.method == m.SEND_TRANSACTION:
            data = {"transactionHash": action.result}
        elif action.method == m.CONNECT:
            data = self._connection_data(self._result_account(action))
        elif action.method == m.ADD_CHAIN:
            data = {"chainId": action.payload["chainId"]}
        else:
            data = action.result
        return ReplyEnvelope.ok(request_id, data)

    async def reconcile(self) -> int:
        """Send deferred replies for actions resolved by another process.

        Polling fallback for approvals made through a separate connection
        to the same database (e.g. the CLI). Returns the number of replies
        sent.
        """
        sent = 0
        for action_id in list(self._waiters):
            action = await self.queue.find(action_id)
            if action is None:
                self._waiters.pop(action_id, None)
                continue
            if action.is_pending:
                continue
            waiter = self._waiters.pop(action_id, None)
            if waiter is None:
                continue
            if action.status is ActionStatus.APPROVED:
                if action.kind is ActionKind.CHAIN:
                    await self.chains.load()
                elif action.kind is ActionKind.CONNECTION:
                    account = self._result_account(action)
                    await self.emit_event("connect", {"chainId": self.chains.current.hex_id}, origin=action.origin)
                    await self.emit_event("accountsChanged", [account], origin=action.origin)
            await self._send(waiter.sink, self._reply_for(action, waiter.request_id))
            sent += 1
        if sent:
            logger.info(f"Reconciled {sent} deferred repl{'y' if sent == 1 else 'ies'}")
        return sent

    @property
    def waiting(self) -> int:
        """Number of deferred replies still owed to a requester."""
        return len(self._waiters)
