from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from wallet_bridge.approvals import BadgeCounter, PendingActionQueue
from wallet_bridge.bridge.channel import channel_pair
from wallet_bridge.bridge.client import WalletClient
from wallet_bridge.bridge.dispatcher import Dispatcher
from wallet_bridge.bridge.relay import Relay
from wallet_bridge.config import TimeoutConfig
from wallet_bridge.errors import Unauthorized
from wallet_bridge.storage.database import Database
from wallet_bridge.wallet.chains import ChainRegistry
from wallet_bridge.wallet.connections import ConnectionStore
from wallet_bridge.wallet.session import WalletSession

# EIP-55 reference addresses (valid checksums).
ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
OTHER_ADDRESS = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
ORIGIN = "https://dapp.example"


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeSigner:
    """Signer double: deterministic 'signatures', no key material."""

    def __init__(self, address: str = ADDRESS) -> None:
        self.address = address
        self.unlocked: set[str] = set()
        self.signed: list[tuple[str, str]] = []

    def derive_account(self, secret: bytes) -> str:
        self.unlocked.add(self.address)
        return self.address

    def _check(self, account: str) -> None:
        if account not in self.unlocked:
            raise Unauthorized(f"Account {account} is locked")

    def sign(self, message: str, account: str) -> str:
        self._check(account)
        self.signed.append((message, account))
        return f"0xsig:{message}"

    def sign_typed_data(self, typed_data: dict[str, Any], account: str) -> str:
        self._check(account)
        return f"0xtyped:{typed_data['primaryType']}"

    def forget(self, account: str) -> None:
        self.unlocked.discard(account)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    database = Database(tmp_path / "wallet.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def queue(db: Database, clock: FakeClock) -> PendingActionQueue:
    return PendingActionQueue(db, now_fn=clock)


@dataclass
class Stack:
    """Page client -> relay -> dispatcher, all over in-process channels."""

    queue: PendingActionQueue
    badge: BadgeCounter
    signer: FakeSigner
    session: WalletSession
    chains: ChainRegistry
    connections: ConnectionStore
    dispatcher: Dispatcher
    relay: Relay
    client: WalletClient
    serving: asyncio.Task

    async def close(self) -> None:
        await self.client.close()
        await self.relay.stop()
        await asyncio.gather(self.serving, return_exceptions=True)


async def build_stack(
    db: Database,
    clock: FakeClock,
    wallet_dir: Path,
    *,
    origin: str = ORIGIN,
    timeouts: TimeoutConfig | None = None,
    unlocked: bool = True,
) -> Stack:
    queue = PendingActionQueue(db, now_fn=clock)
    badge = BadgeCounter(queue)
    signer = FakeSigner()
    session = WalletSession(wallet_dir, signer)
    if unlocked:
        session.unlock_with_key(b"\x01" * 32)
    chains = ChainRegistry(db)
    await chains.load()
    connections = ConnectionStore(db, now_fn=clock)
    dispatcher = Dispatcher(queue, session, chains, connections)

    page, relay_page = channel_pair("page", "relay-page")
    relay_priv, privileged = channel_pair("relay", "dispatcher")
    relay = Relay(relay_page, relay_priv, origin=origin)
    relay.start()
    serving = asyncio.create_task(dispatcher.attach(privileged, origin=origin))
    client = WalletClient(page, origin=origin, timeouts=timeouts)
    client.start()
    return Stack(queue, badge, signer, session, chains, connections, dispatcher, relay, client, serving)


@pytest_asyncio.fixture
async def stack(db: Database, clock: FakeClock, tmp_path: Path):
    s = await build_stack(db, clock, tmp_path / "wallet")
    yield s
    await s.close()


async def wait_for_pending(queue: PendingActionQueue, count: int = 1, attempts: int = 200):
    """Poll until *count* actions are pending (the request crossed two hops)."""
    for _ in range(attempts):
        pending = await queue.list_pending()
        if len(pending) >= count:
            return pending
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} pending action(s)")
