"""Signing collaborator backed by eth-account.

The dispatcher only ever talks to the :class:`Signer` protocol, so tests can
swap in a double without touching key material.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from wallet_bridge.errors import InternalError, Unauthorized

logger = logging.getLogger("wallet_bridge.wallet.signer")


class Signer(Protocol):
    def derive_account(self, secret: bytes) -> str: ...

    def sign(self, message: str, account: str) -> str: ...

    def sign_typed_data(self, typed_data: dict[str, Any], account: str) -> str: ...

    def forget(self, account: str) -> None: ...


class EthSigner:
    """Holds unlocked keys in memory, keyed by checksummed address."""

    def __init__(self) -> None:
        self._accounts: dict[str, LocalAccount] = {}

    def derive_account(self, secret: bytes) -> str:
        """Register *secret* (a raw private key) and return its address."""
        try:
            acct = Account.from_key(secret)
        except Exception as exc:
            raise InternalError(f"Invalid private key: {exc}") from exc
        self._accounts[acct.address] = acct
        return acct.address

    def has_account(self, account: str) -> bool:
        return Web3.to_checksum_address(account) in self._accounts

    def forget(self, account: str) -> None:
        self._accounts.pop(Web3.to_checksum_address(account), None)

    def _account(self, account: str) -> LocalAccount:
        acct = self._accounts.get(Web3.to_checksum_address(account))
        if acct is None:
            raise Unauthorized(f"Account {account} is locked")
        return acct

    def sign(self, message: str, account: str) -> str:
        """EIP-191 ``personal_sign`` of a UTF-8 (or 0x-hex) message."""
        acct = self._account(account)
        if message.startswith("0x"):
            signable = encode_defunct(hexstr=message)
        else:
            signable = encode_defunct(text=message)
        signed = acct.sign_message(signable)
        return "0x" + signed.signature.hex().removeprefix("0x")

    def sign_typed_data(self, typed_data: dict[str, Any], account: str) -> str:
        """EIP-712 signature over a full typed-data document."""
        acct = self._account(account)
        try:
            signable = encode_typed_data(full_message=typed_data)
        except Exception as exc:
            raise InternalError(f"Cannot encode typed data: {exc}") from exc
        signed = acct.sign_message(signable)
        return "0x" + signed.signature.hex().removeprefix("0x")
