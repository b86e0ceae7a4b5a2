"""Chain definitions for supported EVM networks, plus user-added ones."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from wallet_bridge.errors import NotFound
from wallet_bridge.storage.database import Database

logger = logging.getLogger("wallet_bridge.wallet.chains")

_CURRENT_CHAIN_KEY = "current_chain_id"


@dataclass(frozen=True)
class Chain:
    """An EVM-compatible blockchain network."""

    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str

    @property
    def hex_id(self) -> str:
        return hex(self.chain_id)


BUILTIN_CHAINS: dict[str, Chain] = {
    "ethereum": Chain(
        name="ethereum",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        native_symbol="ETH",
        explorer_url="https://etherscan.io",
    ),
    "sepolia": Chain(
        name="sepolia",
        chain_id=11155111,
        rpc_url="https://rpc.sepolia.org",
        native_symbol="ETH",
        explorer_url="https://sepolia.etherscan.io",
    ),
    "base": Chain(
        name="base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH",
        explorer_url="https://basescan.org",
    ),
    "arbitrum": Chain(
        name="arbitrum",
        chain_id=42161,
        rpc_url="https://arb1.arbitrum.io/rpc",
        native_symbol="ETH",
        explorer_url="https://arbiscan.io",
    ),
    "polygon": Chain(
        name="polygon",
        chain_id=137,
        rpc_url="https://polygon-rpc.com",
        native_symbol="POL",
        explorer_url="https://polygonscan.com",
    ),
}


class ChainRegistry:
    """Known chains and the currently selected one.

    Built-in and config chains live in memory; chains added by pages and the
    current selection are persisted so they survive a restart.
    """

    def __init__(self, db: Database, default_chain: str = "sepolia", extra: list[Chain] | None = None) -> None:
        self.db = db
        self._chains: dict[int, Chain] = {c.chain_id: c for c in BUILTIN_CHAINS.values()}
        for chain in extra or []:
            self._chains[chain.chain_id] = chain
        self._current = self.by_name(default_chain).chain_id

    async def load(self) -> None:
        """Restore user-added chains and the last selected chain."""
        for row in await self.db.fetch_all("SELECT * FROM networks ORDER BY created_at"):
            self._chains[row["chain_id"]] = Chain(
                name=row["name"],
                chain_id=row["chain_id"],
                rpc_url=row["rpc_url"],
                native_symbol=row["native_symbol"],
                explorer_url=row["explorer_url"],
            )
        stored = await self.db.fetch_value(
            "SELECT value FROM settings WHERE key = ?", (_CURRENT_CHAIN_KEY,)
        )
        if stored is not None and int(stored) in self._chains:
            self._current = int(stored)

    @property
    def current(self) -> Chain:
        return self._chains[self._current]

    def get(self, chain_id: int) -> Chain:
        """Get a chain by id. Raises :class:`NotFound` if unknown."""
        if chain_id not in self._chains:
            raise NotFound(f"Unrecognized chain ID {hex(chain_id)}. Add the chain first.")
        return self._chains[chain_id]

    def by_name(self, name: str) -> Chain:
        for chain in self._chains.values():
            if chain.name == name:
                return chain
        raise NotFound(f"Unknown chain '{name}'. Available: {self.names()}")

    def names(self) -> list[str]:
        return [c.name for c in self._chains.values()]

    def has(self, chain_id: int) -> bool:
        return chain_id in self._chains

    async def add(self, chain: Chain) -> Chain:
        """Register (or replace) a chain and persist it."""
        self._chains[chain.chain_id] = chain
        await self.db.execute(
            "INSERT OR REPLACE INTO networks "
            "(chain_id, name, rpc_url, native_symbol, explorer_url, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (chain.chain_id, chain.name, chain.rpc_url, chain.native_symbol, chain.explorer_url, time.time()),
        )
        logger.info(f"Chain added: {chain.name} ({chain.hex_id})")
        return chain

    async def switch(self, chain_id: int) -> Chain:
        chain = self.get(chain_id)
        self._current = chain.chain_id
        await self.db.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            (_CURRENT_CHAIN_KEY, str(chain.chain_id)),
        )
        logger.info(f"Switched to chain {chain.name} ({chain.hex_id})")
        return chain
