from __future__ import annotations

import pytest

from conftest import ADDRESS, FakeSigner
from wallet_bridge.config import (
    BridgeConfig,
    ChainConfig,
    WalletConfig,
    get_profile_dir,
    list_profiles,
    load_config,
    load_or_default,
    save_config,
    slugify,
)
from wallet_bridge.runtime import WalletBridge
from wallet_bridge.storage.models import ActionKind


def test_slugify() -> None:
    assert slugify("My Wallet") == "my-wallet"
    assert slugify("  --  ") == "default"


def test_config_expands_env_vars(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DEVNET_RPC", "https://rpc.devnet.example")
    path = tmp_path / "config.yaml"
    path.write_text(
        "name: dev\n"
        "wallet:\n"
        "  default_chain: devnet\n"
        "  chains:\n"
        "    - name: devnet\n"
        "      chain_id: 1337\n"
        "      rpc_url: ${DEVNET_RPC}\n"
        "timeouts:\n"
        "  methods:\n"
        "    sign-message: 30\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.wallet.chains[0].rpc_url == "https://rpc.devnet.example"
    assert config.timeouts.for_method("sign-message", True) == 30
    assert config.timeouts.for_method("send-transaction", True) == 120
    assert config.timeouts.for_method("get-account", False) == 10


def test_unset_env_var_is_left_in_place(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("WALLET_BRIDGE_UNSET", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("name: ${WALLET_BRIDGE_UNSET}\n", encoding="utf-8")

    assert load_config(path).name == "${WALLET_BRIDGE_UNSET}"


def test_save_and_list_profiles(tmp_path) -> None:
    assert list_profiles(tmp_path) == []
    save_config(BridgeConfig(name="main"), get_profile_dir("Main", tmp_path) / "config.yaml")
    get_profile_dir("empty", tmp_path)

    assert list_profiles(tmp_path) == ["main"]
    assert load_or_default(get_profile_dir("main", tmp_path) / "config.yaml").name == "main"
    assert load_or_default(tmp_path / "missing.yaml").name == "default"


@pytest.mark.asyncio
async def test_load_missing_profile(tmp_path) -> None:
    with pytest.raises(FileNotFoundError, match="wallet-bridge init"):
        await WalletBridge.load(tmp_path, "default")


@pytest.mark.asyncio
async def test_init_then_load_keeps_state(tmp_path) -> None:
    config = BridgeConfig(
        name="dev",
        wallet=WalletConfig(
            default_chain="devnet",
            chains=[ChainConfig(name="devnet", chain_id=1337, rpc_url="http://127.0.0.1:8545")],
        ),
    )
    bridge = await WalletBridge.init(tmp_path, "dev", config=config, signer=FakeSigner())
    try:
        assert bridge.chains.current.chain_id == 1337
        await bridge.queue.append(ActionKind.SIGNATURE, "sign-message", {"message": "hi"})
        await bridge.chains.switch(1)
    finally:
        await bridge.shutdown()

    bridge = await WalletBridge.load(tmp_path, "dev", signer=FakeSigner())
    try:
        status = bridge.status()
        assert status["profile"] == "dev"
        assert status["pending"] == 1
        assert status["chain"] == "ethereum"
        assert bridge.chains.has(1337)
        assert status["address"] is None
        assert status["unlocked"] is False
    finally:
        await bridge.shutdown()


@pytest.mark.asyncio
async def test_shutdown_locks_session(tmp_path) -> None:
    signer = FakeSigner()
    bridge = await WalletBridge.init(tmp_path, signer=signer)
    bridge.session.unlock_with_key(b"\x01" * 32)
    assert bridge.status()["address"] == ADDRESS

    await bridge.shutdown()

    assert not bridge.session.unlocked
    assert ADDRESS not in signer.unlocked
