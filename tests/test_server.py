from __future__ import annotations

import time

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from conftest import ADDRESS, ORIGIN, FakeSigner
from wallet_bridge.config import BridgeConfig, get_profile_dir, save_config
from wallet_bridge.server.app import create_app


@pytest.fixture
def app(tmp_path):
    save_config(BridgeConfig(name="test"), get_profile_dir("default", tmp_path) / "config.yaml")
    return create_app(profile="default", base_path=tmp_path, signer=FakeSigner(), run_sweeper=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        app.state.bridge.session.unlock_with_key(b"\x01" * 32)
        yield c


def _request(request_id: str, method: str, params=None, origin: str = "") -> dict:
    return {"type": "REQUEST", "requestId": request_id, "method": method, "params": params or [], "origin": origin}


def _pending(client: TestClient, count: int = 1) -> list[dict]:
    for _ in range(100):
        pending = client.get("/api/actions/pending").json()
        if len(pending) >= count:
            return pending
        time.sleep(0.01)
    raise AssertionError("no pending action appeared")


def test_wallet_status(client: TestClient) -> None:
    status = client.get("/api/wallet").json()
    assert status["address"] == ADDRESS
    assert status["unlocked"] is True
    assert status["chain"] == "sepolia"
    assert status["pending"] == 0


def test_page_socket_answers_queries(client: TestClient) -> None:
    with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
        ws.send_json(_request("r1", "get-chain-id"))
        assert ws.receive_json() == {
            "type": "REPLY",
            "requestId": "r1",
            "success": True,
            "data": {"chainId": "0xaa36a7"},
        }

        ws.send_json(_request("r2", "get-account"))
        reply = ws.receive_json()
        assert reply["success"] is False
        assert reply["error"] == "not connected"
        assert reply["code"] == "unauthorized"


def test_sign_message_approved_over_rest(client: TestClient) -> None:
    with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
        ws.send_json(_request("r1", "sign-message", [{"message": "hello"}], origin="https://spoofed.example"))

        [action] = _pending(client)
        assert action["kind"] == "signature"
        assert action["origin"] == ORIGIN
        assert action["request_id"] == "r1"
        assert client.get("/api/badge").json() == {"count": 1, "text": "1"}

        resp = client.post(f"/api/actions/{action['id']}/approve", json={"result": "0xsig"})
        assert resp.json()["applied"] is True

        assert ws.receive_json() == {
            "type": "REPLY",
            "requestId": "r1",
            "success": True,
            "data": {"signedMessage": "0xsig"},
        }

    again = client.post(f"/api/actions/{action['id']}/approve", json={"result": "0xother"}).json()
    assert again["applied"] is False
    assert again["action"]["result"] == "0xsig"
    assert client.get("/api/badge").json()["count"] == 0


def test_reject_over_rest(client: TestClient) -> None:
    with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
        ws.send_json(_request("r1", "sign-message", ["hello"]))
        [action] = _pending(client)

        client.post(f"/api/actions/{action['id']}/reject", json={"reason": "nope"})

        reply = ws.receive_json()
        assert reply["success"] is False
        assert reply["error"] == "nope"
        assert reply["code"] == "user_rejected"

    history = client.get("/api/actions", params={"status": "rejected"}).json()
    assert [a["id"] for a in history] == [action["id"]]


def test_malformed_frames_are_dropped(client: TestClient) -> None:
    with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
        ws.send_text("not json")
        ws.send_json({"type": "REPLY", "requestId": "x", "success": True})
        ws.send_json(_request("r1", "get-chain-id"))
        assert ws.receive_json()["requestId"] == "r1"


def test_connection_flow_and_revoke(client: TestClient) -> None:
    with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
        ws.send_json(_request("r1", "connect", [{"name": "dApp"}]))
        [action] = _pending(client)
        client.post(f"/api/actions/{action['id']}/approve")

        messages = [ws.receive_json() for _ in range(3)]
        events = [m["event"] for m in messages if m["type"] == "EVENT"]
        [reply] = [m for m in messages if m["type"] == "REPLY"]
        assert events == ["connect", "accountsChanged"]
        assert reply["data"]["address"] == ADDRESS

        [conn] = client.get("/api/connections").json()
        assert conn["origin"] == ORIGIN
        assert conn["name"] == "dApp"

        assert client.delete(f"/api/connections/{ORIGIN}").json() == {"revoked": True}
        assert ws.receive_json()["event"] == "accountsChanged"
        assert ws.receive_json()["event"] == "disconnect"

    assert client.get("/api/connections").json() == []
    assert client.delete(f"/api/connections/{ORIGIN}").json() == {"revoked": False}


def test_approvals_socket_streams_badge(client: TestClient) -> None:
    with client.websocket_connect("/ws/approvals") as approvals:
        assert approvals.receive_json() == {"event": "badge", "data": {"count": 0}}
        with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
            ws.send_json(_request("r1", "sign-message", ["hello"]))
            assert approvals.receive_json() == {"event": "badge", "data": {"count": 1}}

            [action] = _pending(client)
            client.post(f"/api/actions/{action['id']}/approve", json={"result": "0xsig"})
            assert approvals.receive_json() == {"event": "badge", "data": {"count": 0}}
            resolved = approvals.receive_json()
            assert resolved["event"] == "action.resolved"
            assert resolved["data"]["status"] == "approved"
            assert ws.receive_json()["success"] is True


def test_approval_surface_refuses_foreign_origins(client: TestClient) -> None:
    evil = {"origin": "https://evil.example"}
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/approvals", headers=evil) as ws:
            ws.receive_json()

    with client.websocket_connect("/ws/approvals", headers={"origin": "http://127.0.0.1:8430"}) as ws:
        assert ws.receive_json()["event"] == "badge"

    resp = client.post("/api/actions/missing/reject", headers=evil)
    assert resp.status_code == 403
    assert resp.json()["code"] == "unauthorized"
    assert client.delete(f"/api/connections/{ORIGIN}", headers=evil).status_code == 403
    assert client.post("/api/wallet/unlock", json={"password": "x"}, headers=evil).status_code == 403


def test_errors_map_to_http_status(client: TestClient) -> None:
    resp = client.get("/api/actions/missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"

    assert client.post("/api/actions/missing/approve").status_code == 404
    assert client.post("/api/wallet/unlock", json={"password": "x"}).status_code == 401


def test_transaction_approval_needs_hash(client: TestClient) -> None:
    with client.websocket_connect("/ws/page", headers={"origin": ORIGIN}) as ws:
        ws.send_json(_request("r1", "send-transaction", [{"to": ADDRESS, "value": "0x1"}]))
        [action] = _pending(client)

        resp = client.post(f"/api/actions/{action['id']}/approve")
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_params"

        client.post(f"/api/actions/{action['id']}/approve", json={"result": "0xabc"})
        assert ws.receive_json()["data"] == {"transactionHash": "0xabc"}
