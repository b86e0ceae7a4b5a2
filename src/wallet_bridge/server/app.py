"""FastAPI server: page WebSocket, approval surface and REST API."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Body, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from wallet_bridge.bridge.channel import WebSocketEndpoint, channel_pair
from wallet_bridge.bridge.relay import Relay
from wallet_bridge.errors import BridgeError, Unauthorized
from wallet_bridge.runtime import WalletBridge
from wallet_bridge.storage.models import PendingAction
from wallet_bridge.wallet.signer import Signer

logger = logging.getLogger("wallet_bridge.server")

_STATUS_CODES = {
    "not_found": 404,
    "invalid_params": 400,
    "unauthorized": 403,
    "user_rejected": 409,
    "expired": 410,
}


def _action_dict(action: PendingAction) -> dict:
    return action.model_dump(mode="json")


def create_app(
    bridge: WalletBridge | None = None,
    *,
    profile: str = "default",
    base_path: Path | None = None,
    signer: Signer | None = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """Build the server app.

    With *bridge* the caller owns the runtime; otherwise the profile is
    loaded on startup and shut down with the app.
    """
    approval_sockets: list[WebSocket] = []

    async def _broadcast_ws(event: str, data: Any) -> None:
        """Send an event to all connected approval clients."""
        payload = json.dumps({"event": event, "data": data})
        disconnected = []
        for ws in approval_sockets:
            try:
                await ws.send_text(payload)
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            approval_sockets.remove(ws)

    async def _on_badge(count: int) -> None:
        await _broadcast_ws("badge", {"count": count})

    async def _on_resolved(action: PendingAction) -> None:
        await _broadcast_ws("action.resolved", _action_dict(action))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = bridge or await WalletBridge.load(base_path, profile, signer=signer)
        app.state.bridge = runtime
        runtime.badge.subscribe(_on_badge)
        runtime.queue.on_resolved(_on_resolved)
        if run_sweeper:
            runtime.sweeper.start()
        logger.info(f"Wallet bridge server started for '{runtime.config.name}'")
        try:
            yield
        finally:
            runtime.badge.unsubscribe(_on_badge)
            if bridge is None:
                await runtime.shutdown()
            else:
                await runtime.sweeper.stop()

    app = FastAPI(title="Wallet Bridge", lifespan=lifespan)

    def _bridge(request: Request | WebSocket) -> WalletBridge:
        return request.app.state.bridge

    def _trusted(conn: Request | WebSocket) -> bool:
        """Pages may only use /ws/page; browser origins elsewhere must be allow-listed."""
        origin = conn.headers.get("origin")
        return not origin or origin in _bridge(conn).config.server.approval_origins

    async def approval_surface(request: Request) -> None:
        if not _trusted(request):
            raise Unauthorized(f"Origin {request.headers.get('origin')} may not use the approval surface")

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        return JSONResponse(
            status_code=_STATUS_CODES.get(exc.code, 500),
            content={"error": exc.message, "code": exc.code},
        )

    # ------------------------------------------------------------------
    # Pending actions
    # ------------------------------------------------------------------

    @app.get("/api/actions")
    async def api_actions(request: Request, status: str | None = Query(None)):
        actions = await _bridge(request).queue.list_actions(status)
        return [_action_dict(a) for a in actions]

    @app.get("/api/actions/pending")
    async def api_pending(request: Request):
        return [_action_dict(a) for a in await _bridge(request).dispatcher.list_pending()]

    @app.get("/api/actions/{action_id}")
    async def api_action(request: Request, action_id: str):
        return _action_dict(await _bridge(request).queue.get(action_id))

    @app.post("/api/actions/{action_id}/approve", dependencies=[Depends(approval_surface)])
    async def api_approve(request: Request, action_id: str, body: dict | None = Body(None)):
        result = (body or {}).get("result")
        outcome = await _bridge(request).dispatcher.approve(action_id, result)
        return {"applied": outcome.applied, "action": _action_dict(outcome.action)}

    @app.post("/api/actions/{action_id}/reject", dependencies=[Depends(approval_surface)])
    async def api_reject(request: Request, action_id: str, body: dict | None = Body(None)):
        reason = (body or {}).get("reason")
        outcome = await _bridge(request).dispatcher.reject(action_id, reason)
        return {"applied": outcome.applied, "action": _action_dict(outcome.action)}

    @app.get("/api/badge")
    async def api_badge(request: Request):
        badge = _bridge(request).badge
        await badge.refresh()
        return {"count": badge.count, "text": badge.text}

    # ------------------------------------------------------------------
    # Connections and wallet
    # ------------------------------------------------------------------

    @app.get("/api/connections")
    async def api_connections(request: Request):
        return [c.model_dump(mode="json") for c in await _bridge(request).connections.list_all()]

    @app.delete("/api/connections/{origin:path}", dependencies=[Depends(approval_surface)])
    async def api_revoke(request: Request, origin: str):
        return {"revoked": await _bridge(request).dispatcher.revoke(origin)}

    @app.get("/api/wallet")
    async def api_wallet(request: Request):
        return _bridge(request).status()

    @app.post("/api/wallet/unlock", dependencies=[Depends(approval_surface)])
    async def api_unlock(request: Request, body: dict = Body(...)):
        session = _bridge(request).session
        try:
            address = session.unlock(body.get("password", ""))
        except Unauthorized as e:
            return JSONResponse(status_code=401, content={"error": e.message, "code": e.code})
        return {"address": address, "unlocked": True}

    @app.post("/api/wallet/lock", dependencies=[Depends(approval_surface)])
    async def api_lock(request: Request):
        _bridge(request).session.lock()
        return {"unlocked": False}

    # ------------------------------------------------------------------
    # WebSockets
    # ------------------------------------------------------------------

    @app.websocket("/ws/page")
    async def page_socket(ws: WebSocket):
        """One page: socket -> relay -> in-process channel -> dispatcher."""
        await ws.accept()
        runtime = _bridge(ws)
        origin = ws.headers.get("origin") or ws.query_params.get("origin") or ""
        relay_side, dispatcher_side = channel_pair("relay", "dispatcher")
        serving = asyncio.create_task(runtime.dispatcher.attach(dispatcher_side, origin=origin or None))
        relay = Relay(WebSocketEndpoint(ws, "relay", "page"), relay_side, origin=origin or None)
        logger.info(f"Page connected: {origin or '-'}")
        try:
            await relay.run()
        finally:
            await dispatcher_side.close()
            await asyncio.gather(serving, return_exceptions=True)
            logger.info(f"Page disconnected: {origin or '-'}")

    @app.websocket("/ws/approvals")
    async def approvals_socket(ws: WebSocket):
        if not _trusted(ws):
            logger.warning(f"Refused approval socket from {ws.headers.get('origin')}")
            await ws.close(code=1008)
            return
        await ws.accept()
        runtime = _bridge(ws)
        await ws.send_text(json.dumps({"event": "badge", "data": {"count": await runtime.badge.refresh()}}))
        approval_sockets.append(ws)
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            if ws in approval_sockets:
                approval_sockets.remove(ws)

    return app


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def run_server(host: str = "127.0.0.1", port: int = 8430, profile: str = "default", base_path: Path | None = None) -> None:
    uvicorn.run(create_app(profile=profile, base_path=base_path), host=host, port=port, log_level="info")
