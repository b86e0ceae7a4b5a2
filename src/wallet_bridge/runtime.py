"""WalletBridge - wires storage, wallet state and the dispatcher for one profile."""

from __future__ import annotations

import logging
from pathlib import Path

from wallet_bridge.approvals import BadgeCounter, PendingActionQueue
from wallet_bridge.bridge.dispatcher import Dispatcher
from wallet_bridge.bridge.sweeper import Sweeper
from wallet_bridge.config import BridgeConfig, get_profile_dir, load_config, save_config
from wallet_bridge.storage.database import Database, get_database
from wallet_bridge.wallet.chains import Chain, ChainRegistry
from wallet_bridge.wallet.connections import ConnectionStore
from wallet_bridge.wallet.session import WalletSession
from wallet_bridge.wallet.signer import EthSigner, Signer

logger = logging.getLogger("wallet_bridge.runtime")


class WalletBridge:
    """The privileged side of the bridge for a single wallet profile.

    Both the server and the CLI build one of these over the same profile
    directory; they share state only through the SQLite database.
    """

    def __init__(
        self,
        config: BridgeConfig,
        profile_dir: Path,
        db: Database,
        signer: Signer | None = None,
    ):
        self.config = config
        self.profile_dir = profile_dir
        self.db = db

        self.queue = PendingActionQueue(db)
        self.badge = BadgeCounter(self.queue)

        self.wallet_dir = profile_dir / "wallet"
        self.session = WalletSession(self.wallet_dir, signer or EthSigner())

        extra = [
            Chain(
                name=c.name,
                chain_id=c.chain_id,
                rpc_url=c.rpc_url,
                native_symbol=c.native_symbol,
                explorer_url=c.explorer_url,
            )
            for c in config.wallet.chains
        ]
        self.chains = ChainRegistry(db, default_chain=config.wallet.default_chain, extra=extra)
        self.connections = ConnectionStore(db)

        self.dispatcher = Dispatcher(self.queue, self.session, self.chains, self.connections)
        self.sweeper = Sweeper(
            self.queue,
            self.dispatcher,
            self.badge,
            config.queue,
            connections=self.connections,
            inactive_seconds=config.wallet.inactive_connection_days * 86400,
        )

    @classmethod
    async def load(
        cls,
        base_path: Path | None = None,
        profile: str = "default",
        signer: Signer | None = None,
    ) -> WalletBridge:
        """Load an existing profile from a .wallet-bridge directory."""
        profile_dir = get_profile_dir(profile, base_path, create=False)
        config_path = profile_dir / "config.yaml"
        if not config_path.exists():
            raise FileNotFoundError(
                f"No wallet profile found at {profile_dir}. Run 'wallet-bridge init' first."
            )

        config = load_config(config_path)
        return await cls._open(config, profile_dir, signer)

    @classmethod
    async def init(
        cls,
        base_path: Path | None = None,
        profile: str = "default",
        config: BridgeConfig | None = None,
        signer: Signer | None = None,
    ) -> WalletBridge:
        """Create (or overwrite the config of) a profile and open it."""
        profile_dir = get_profile_dir(profile, base_path)
        config = config or BridgeConfig(name=profile)
        save_config(config, profile_dir / "config.yaml")
        return await cls._open(config, profile_dir, signer)

    @classmethod
    async def _open(cls, config: BridgeConfig, profile_dir: Path, signer: Signer | None) -> WalletBridge:
        db = get_database(profile_dir)
        await db.connect()
        bridge = cls(config=config, profile_dir=profile_dir, db=db, signer=signer)
        await bridge.chains.load()
        await bridge.badge.refresh()
        logger.info(
            f"Wallet profile '{config.name}' loaded: account={bridge.session.address or '-'}, "
            f"chain={bridge.chains.current.name}, pending={bridge.badge.count}"
        )
        return bridge

    def status(self) -> dict:
        """Summary used by the dashboard and CLI."""
        chain = self.chains.current
        return {
            "profile": self.config.name,
            "address": self.session.address,
            "unlocked": self.session.unlocked,
            "chain": chain.name,
            "chainId": chain.hex_id,
            "pending": self.badge.count,
        }

    async def shutdown(self) -> None:
        """Stop background work and close the database."""
        await self.sweeper.stop()
        if self.session.unlocked:
            self.session.lock()
        await self.db.close()
        logger.info("Wallet bridge shut down")
