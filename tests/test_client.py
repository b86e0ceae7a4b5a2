from __future__ import annotations

import asyncio

import pytest

from wallet_bridge.bridge.channel import Delivery, channel_pair
from wallet_bridge.bridge.client import WalletClient
from wallet_bridge.config import TimeoutConfig
from wallet_bridge.errors import InternalError, InvalidParams, RequestTimeout, UserRejected


def _ids(*values: str):
    it = iter(values)
    return lambda: next(it)


async def _next_request(privileged) -> dict:
    delivery = await asyncio.wait_for(privileged.receive(), 1)
    return delivery.message


@pytest.mark.asyncio
async def test_request_envelope_shape() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, origin="https://a.example", id_factory=_ids("r1"))

    call = asyncio.create_task(client.request("get-chain-id"))
    message = await _next_request(privileged)
    assert message == {
        "type": "REQUEST",
        "requestId": "r1",
        "method": "get-chain-id",
        "params": [],
        "origin": "https://a.example",
    }

    await privileged.send({"type": "REPLY", "requestId": "r1", "success": True, "data": {"chainId": "0x1"}})
    assert await call == {"chainId": "0x1"}
    await client.close()


@pytest.mark.asyncio
async def test_duplicate_reply_settles_once() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, id_factory=_ids("r1"))
    client.start()

    call = asyncio.create_task(client.request("get-account"))
    await _next_request(privileged)
    reply = {"type": "REPLY", "requestId": "r1", "success": True, "data": {"address": "0xA"}}
    await privileged.send(reply)
    await privileged.send({**reply, "data": {"address": "0xB"}})

    assert await call == {"address": "0xA"}
    await asyncio.sleep(0.01)
    assert client.in_flight == 0
    await client.close()


@pytest.mark.asyncio
async def test_receive_reports_whether_reply_was_consumed() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, id_factory=_ids("r1"))
    # Stand-in listener so deliveries can be fed by hand.
    client._listener = asyncio.create_task(asyncio.sleep(3600))

    call = asyncio.create_task(client.request("get-account"))
    await _next_request(privileged)

    reply = {"type": "REPLY", "requestId": "r1", "success": True, "data": 1}
    assert await client.receive(Delivery(source="privileged", message=reply)) is True
    assert await client.receive(Delivery(source="privileged", message=reply)) is False
    assert await call == 1
    await client.close()


@pytest.mark.asyncio
async def test_foreign_source_is_ignored() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, id_factory=_ids("r1"))
    client.start()

    call = asyncio.create_task(client.request("sign-message", [{"message": "hi"}]))
    await _next_request(privileged)

    page.inject({"type": "REPLY", "requestId": "r1", "success": True, "data": {"signedMessage": "0xevil"}}, "evil-frame")
    await asyncio.sleep(0.01)
    assert not call.done()

    await privileged.send({"type": "REPLY", "requestId": "r1", "success": True, "data": {"signedMessage": "0xok"}})
    assert await call == {"signedMessage": "0xok"}
    await client.close()


@pytest.mark.asyncio
async def test_wrong_type_and_unknown_id_are_ignored() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, id_factory=_ids("r1"))
    client.start()

    call = asyncio.create_task(client.request("get-account"))
    await _next_request(privileged)
    await privileged.send({"type": "REQUEST", "requestId": "r1", "method": "x", "params": []})
    await privileged.send({"type": "REPLY", "requestId": "r2", "success": True, "data": 2})
    await privileged.send("not even json")
    await asyncio.sleep(0.01)
    assert not call.done()

    await privileged.send({"type": "REPLY", "requestId": "r1", "success": True, "data": 1})
    assert await call == 1
    await client.close()


@pytest.mark.asyncio
async def test_timeout_then_late_reply_is_discarded() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, timeouts=TimeoutConfig(query_seconds=0.05), id_factory=_ids("r1", "r2"))
    client.start()

    with pytest.raises(RequestTimeout):
        await client.request("get-account")
    assert client.in_flight == 0

    await privileged.send({"type": "REPLY", "requestId": "r1", "success": True, "data": "late"})
    call = asyncio.create_task(client.request("get-account", timeout=1))
    await _next_request(privileged)
    await _next_request(privileged)
    await privileged.send({"type": "REPLY", "requestId": "r2", "success": True, "data": "fresh"})
    assert await call == "fresh"
    await client.close()


@pytest.mark.asyncio
async def test_interactive_methods_use_longer_timeout() -> None:
    page, _ = channel_pair("page", "privileged")
    timeouts = TimeoutConfig(query_seconds=0.01, interactive_seconds=5, methods={"connect": 0.02})
    client = WalletClient(page, timeouts=timeouts)

    assert timeouts.for_method("get-account", False) == 0.01
    assert timeouts.for_method("sign-message", True) == 5
    with pytest.raises(RequestTimeout, match="connect"):
        await client.request("connect")
    await client.close()


@pytest.mark.asyncio
async def test_failed_reply_raises_typed_error() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, id_factory=_ids("r1", "r2", "r3"))
    client.start()

    replies = [
        {"success": False, "error": "nope", "code": "user_rejected"},
        {"success": False, "error": "bad", "code": "invalid_params"},
        {"success": False, "error": "???"},
    ]
    expected = [UserRejected, InvalidParams, InternalError]
    for rid, reply, exc in zip(("r1", "r2", "r3"), replies, expected):
        call = asyncio.create_task(client.request("get-account"))
        await _next_request(privileged)
        await privileged.send({"type": "REPLY", "requestId": rid, **reply})
        with pytest.raises(exc):
            await call
    await client.close()


@pytest.mark.asyncio
async def test_independent_request_ids() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page)
    client.start()

    first = asyncio.create_task(client.request("get-account"))
    second = asyncio.create_task(client.request("get-account"))
    a = await _next_request(privileged)
    b = await _next_request(privileged)
    assert a["requestId"] != b["requestId"]

    await privileged.send({"type": "REPLY", "requestId": b["requestId"], "success": True, "data": "b"})
    await privileged.send({"type": "REPLY", "requestId": a["requestId"], "success": True, "data": "a"})
    assert await first == "a"
    assert await second == "b"
    await client.close()


@pytest.mark.asyncio
async def test_events_filtered_by_origin() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page, origin="https://a.example")
    client.start()
    seen: list = []

    async def handler(data) -> None:
        seen.append(data)

    client.on("chainChanged", handler)
    await privileged.send({"type": "EVENT", "event": "chainChanged", "data": "0x1"})
    await privileged.send({"type": "EVENT", "event": "chainChanged", "data": "0x2", "origin": "https://b.example"})
    await privileged.send({"type": "EVENT", "event": "chainChanged", "data": "0x3", "origin": "https://a.example"})
    await asyncio.sleep(0.02)

    assert seen == ["0x1", "0x3"]
    client.off("chainChanged", handler)
    await client.close()


@pytest.mark.asyncio
async def test_close_fails_in_flight_calls() -> None:
    page, privileged = channel_pair("page", "privileged")
    client = WalletClient(page)
    client.start()

    call = asyncio.create_task(client.request("sign-message", ["hi"]))
    await _next_request(privileged)
    await client.close()

    with pytest.raises(InternalError):
        await call
