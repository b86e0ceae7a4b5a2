"""Active account of the privileged process and the keystore behind it."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from eth_account import Account
from web3 import Web3

from wallet_bridge.errors import Unauthorized
from wallet_bridge.wallet.signer import Signer

logger = logging.getLogger("wallet_bridge.wallet.session")

KEYSTORE_FILE = "keystore.json"


class WalletSession:
    """The wallet's account: its encrypted keystore, and whether the signer
    currently holds the key.

    The address is read from the keystore without decrypting it; signing
    requires :meth:`unlock` (or :meth:`unlock_with_key`) first.  Every key,
    generated, imported or decrypted, reaches the signer through
    ``derive_account``.
    """

    def __init__(self, wallet_dir: Path, signer: Signer) -> None:
        self.wallet_dir = wallet_dir
        self.signer = signer
        self._address: str | None = self._stored_address()
        self._unlocked = False

    @property
    def keystore_path(self) -> Path:
        return self.wallet_dir / KEYSTORE_FILE

    @property
    def has_keystore(self) -> bool:
        return self.keystore_path.exists()

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def unlocked(self) -> bool:
        return self._unlocked

    def _read_keystore(self) -> dict:
        if not self.has_keystore:
            raise Unauthorized("No wallet keystore. Run 'wallet-bridge wallet create' first.")
        return json.loads(self.keystore_path.read_text(encoding="utf-8"))

    def _stored_address(self) -> str | None:
        if not self.has_keystore:
            return None
        raw = self._read_keystore().get("address", "")
        return Web3.to_checksum_address(raw if raw.startswith("0x") else "0x" + raw)

    def require_account(self) -> str:
        """Return the active address or raise :class:`Unauthorized`."""
        if self._address is None:
            raise Unauthorized("No wallet account. Create or import one first.")
        return self._address

    def create(self, password: str, private_key: bytes | None = None) -> str:
        """Generate (or import *private_key*), encrypt it with *password*, and unlock.

        Raises
        ------
        FileExistsError
            If the keystore already exists.
        """
        if self.has_keystore:
            raise FileExistsError(
                f"Wallet already exists at {self.keystore_path}. "
                "Delete it first if you want to create a new one."
            )
        secret = bytes(private_key or Account.create().key)
        address = self.unlock_with_key(secret)

        self.wallet_dir.mkdir(parents=True, exist_ok=True)
        self.keystore_path.write_text(
            json.dumps(Account.encrypt(secret, password), indent=2), encoding="utf-8"
        )
        logger.info(f"Keystore written for {address}")
        return address

    def unlock(self, password: str) -> str:
        """Decrypt the keystore and hand the key to the signer."""
        data = self._read_keystore()
        try:
            secret = Account.decrypt(data, password)
        except ValueError as exc:
            raise Unauthorized("Wrong wallet password") from exc
        return self.unlock_with_key(bytes(secret))

    def unlock_with_key(self, secret: bytes) -> str:
        self._address = self.signer.derive_account(secret)
        self._unlocked = True
        logger.info(f"Wallet unlocked: {self._address}")
        return self._address

    def lock(self) -> None:
        if self._address is not None:
            self.signer.forget(self._address)
        self._unlocked = False
        logger.info("Wallet locked")
