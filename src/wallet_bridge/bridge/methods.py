"""Wallet method catalogue: names, classification, and parameter parsing."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from wallet_bridge.errors import InvalidParams
from wallet_bridge.storage.models import ActionKind

CONNECT = "connect"
CONNECT_STATUS = "connect-status"
GET_ACCOUNT = "get-account"
GET_CHAIN_ID = "get-chain-id"
DISCONNECT = "disconnect"
SIGN_MESSAGE = "sign-message"
SIGN_TYPED_DATA = "sign-typed-data"
SEND_TRANSACTION = "send-transaction"
SWITCH_CHAIN = "switch-chain"
ADD_CHAIN = "add-chain"

# Methods that always park a pending action.  ``connect`` is interactive only
# for origins that are not connected yet; the dispatcher decides that case.
INTERACTIVE_KINDS: dict[str, ActionKind] = {
    SIGN_MESSAGE: ActionKind.SIGNATURE,
    SIGN_TYPED_DATA: ActionKind.SIGNATURE,
    SEND_TRANSACTION: ActionKind.TRANSACTION,
    ADD_CHAIN: ActionKind.CHAIN,
    CONNECT: ActionKind.CONNECTION,
}

NON_INTERACTIVE = frozenset({CONNECT_STATUS, GET_ACCOUNT, GET_CHAIN_ID, DISCONNECT, SWITCH_CHAIN})

ALL_METHODS = frozenset(INTERACTIVE_KINDS) | NON_INTERACTIVE


def is_interactive(method: str) -> bool:
    """Whether the method waits on a human decision."""
    return method in INTERACTIVE_KINDS


def checksum_address(value: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return Web3.to_checksum_address(value)


def parse_chain_id(value: Any) -> int:
    """Accept ``"0xaa36a7"``, ``"11155111"`` or ``11155111``."""
    if isinstance(value, bool):
        raise ValueError("chain id must be a number or hex string")
    if isinstance(value, int):
        chain_id = value
    elif isinstance(value, str):
        text = value.strip().lower()
        chain_id = int(text, 16) if text.startswith("0x") else int(text)
    else:
        raise ValueError("chain id must be a number or hex string")
    if chain_id <= 0:
        raise ValueError("chain id must be positive")
    return chain_id


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class SignMessageParams(BaseModel):
    message: str = Field(min_length=1)
    address: Optional[str] = None

    @field_validator("address")
    @classmethod
    def check_address(cls, v: Optional[str]) -> Optional[str]:
        return checksum_address(v) if v else v


class SignTypedDataParams(BaseModel):
    typed_data: dict[str, Any] = Field(alias="typedData")
    address: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("address")
    @classmethod
    def check_address(cls, v: Optional[str]) -> Optional[str]:
        return checksum_address(v) if v else v

    @field_validator("typed_data")
    @classmethod
    def check_structure(cls, v: dict[str, Any]) -> dict[str, Any]:
        missing = {"types", "primaryType", "domain", "message"} - set(v)
        if missing:
            raise ValueError(f"typed data missing {sorted(missing)}")
        return v


class TransactionParams(BaseModel):
    """Fields a page may put in a transaction request (hex quantities kept as-is)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    to: str
    from_: Optional[str] = Field(default=None, alias="from")
    value: str | int = "0x0"
    data: Optional[str] = None
    gas: Optional[str | int] = None

    @field_validator("to")
    @classmethod
    def check_to(cls, v: str) -> str:
        return checksum_address(v)

    @field_validator("from_")
    @classmethod
    def check_from(cls, v: Optional[str]) -> Optional[str]:
        return checksum_address(v) if v else v


class NativeCurrency(BaseModel):
    name: str = ""
    symbol: str = "ETH"
    decimals: int = 18


class AddChainParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chain_id: int = Field(alias="chainId")
    chain_name: str = Field(alias="chainName", min_length=1)
    rpc_urls: list[str] = Field(alias="rpcUrls", min_length=1)
    native_currency: NativeCurrency = Field(default_factory=NativeCurrency, alias="nativeCurrency")
    block_explorer_urls: list[str] = Field(default_factory=list, alias="blockExplorerUrls")

    @field_validator("chain_id", mode="before")
    @classmethod
    def parse_chain(cls, v: Any) -> int:
        return parse_chain_id(v)

    @field_validator("rpc_urls")
    @classmethod
    def check_rpc_urls(cls, v: list[str]) -> list[str]:
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"rpc url must be http(s): {url}")
        return v


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _first(params: list[Any], method: str) -> Any:
    if not params:
        raise InvalidParams(f"{method} requires at least one parameter")
    return params[0]


def _validate(model: type[BaseModel], raw: Any, method: str) -> Any:
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "params"
        raise InvalidParams(f"{method}: {where}: {first.get('msg')}") from exc


def parse_sign_message(params: list[Any]) -> SignMessageParams:
    """``["hello"]``, ``["hello", "0xabc…"]`` or ``[{"message": "hello"}]``."""
    raw = _first(params, SIGN_MESSAGE)
    if isinstance(raw, str):
        raw = {"message": raw, "address": params[1] if len(params) > 1 else None}
    return _validate(SignMessageParams, raw, SIGN_MESSAGE)


def parse_sign_typed_data(params: list[Any]) -> SignTypedDataParams:
    """``[typedData]``, ``[address, typedData]`` or ``[{"typedData": …}]``."""
    raw = _first(params, SIGN_TYPED_DATA)
    if isinstance(raw, str) and len(params) > 1:
        raw = {"address": raw, "typedData": params[1]}
    elif isinstance(raw, dict) and "typedData" not in raw and "typed_data" not in raw:
        raw = {"typedData": raw}
    return _validate(SignTypedDataParams, raw, SIGN_TYPED_DATA)


def parse_transaction(params: list[Any]) -> TransactionParams:
    return _validate(TransactionParams, _first(params, SEND_TRANSACTION), SEND_TRANSACTION)


def parse_add_chain(params: list[Any]) -> AddChainParams:
    return _validate(AddChainParams, _first(params, ADD_CHAIN), ADD_CHAIN)


def parse_switch_chain(params: list[Any]) -> int:
    """``["0x1"]``, ``[1]`` or ``[{"chainId": "0x1"}]``."""
    raw = _first(params, SWITCH_CHAIN)
    if isinstance(raw, dict):
        raw = raw.get("chainId")
    try:
        return parse_chain_id(raw)
    except (ValueError, TypeError) as exc:
        raise InvalidParams(f"{SWITCH_CHAIN}: {exc}") from exc


def parse_connect(params: list[Any]) -> dict[str, str]:
    """Optional page metadata: ``[{"name": …, "icon": …}]``."""
    if not params:
        return {}
    raw = params[0]
    if not isinstance(raw, dict):
        raise InvalidParams(f"{CONNECT}: metadata must be an object")
    return {k: str(raw[k]) for k in ("name", "icon") if raw.get(k)}
