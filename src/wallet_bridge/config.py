"""Configuration system for the wallet bridge.

Loads profile config from `.wallet-bridge/<profile>/config.yaml`, supports
environment variable expansion, and exposes the timeout, queue, server and
wallet settings used by the runtime.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class TimeoutConfig(BaseModel):
    """How long the page-side client waits for a reply, in seconds."""

    query_seconds: float = 10.0        # non-interactive methods
    interactive_seconds: float = 120.0  # methods gated on a human
    methods: dict[str, float] = Field(default_factory=dict)  # per-method override

    def for_method(self, method: str, interactive: bool) -> float:
        if method in self.methods:
            return self.methods[method]
        return self.interactive_seconds if interactive else self.query_seconds


class QueueConfig(BaseModel):
    """Pending-action lifecycle settings."""

    expiry_seconds: float = 300.0        # pending actions older than this expire
    sweep_interval_seconds: float = 5.0  # also the polling period for out-of-process approvals
    retention_seconds: float = 86400.0   # terminal actions kept this long for audit


class ServerConfig(BaseModel):
    """HTTP / WebSocket server settings."""

    port: int = 8430
    host: str = "127.0.0.1"
    # Origins allowed to reach the approval surface (browser requests only;
    # the CLI and other local clients send no Origin header).
    approval_origins: list[str] = Field(
        default_factory=lambda: ["http://127.0.0.1:8430", "http://localhost:8430"]
    )


class ChainConfig(BaseModel):
    """An extra EVM chain declared in config (on top of the built-ins)."""

    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str = "ETH"
    explorer_url: str = ""


class WalletConfig(BaseModel):
    """Wallet and network defaults."""

    default_chain: str = "sepolia"
    chains: list[ChainConfig] = Field(default_factory=list)
    inactive_connection_days: int = 30


class LoggingConfig(BaseModel):
    level: str = "INFO"


class BridgeConfig(BaseModel):
    """Root configuration object for one wallet profile."""

    name: str = "default"
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def slugify(name: str) -> str:
    """Convert a profile name to a filesystem-safe slug.

    ``"My Wallet"`` → ``"my-wallet"``, ``""`` → ``"default"``.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "default"


def get_root_dir(base: Path | None = None) -> Path:
    """Return the ``.wallet-bridge/`` root directory (no auto-create)."""
    if base is None:
        base = Path.cwd()
    return base / ".wallet-bridge"


def get_profile_dir(
    profile: str = "default",
    base: Path | None = None,
    *,
    create: bool = True,
) -> Path:
    """Return the directory for a profile, e.g. ``.wallet-bridge/<slug>/``.

    Parameters
    ----------
    profile:
        Profile slug (e.g. ``"default"``).
    base:
        Parent directory that contains (or will contain) the
        ``.wallet-bridge/`` folder.  Defaults to the current working
        directory.
    create:
        If *True* (default), create the directory tree if it doesn't exist.
    """
    profile_dir = get_root_dir(base) / slugify(profile)
    if create:
        profile_dir.mkdir(parents=True, exist_ok=True)
    return profile_dir


def list_profiles(base: Path | None = None) -> list[str]:
    """Return slugs of all profiles (subdirs containing ``config.yaml``)."""
    root = get_root_dir(base)
    if not root.is_dir():
        return []
    return sorted(
        d.name
        for d in root.iterdir()
        if d.is_dir() and (d / "config.yaml").exists()
    )


def load_config(path: Path) -> BridgeConfig:
    """Load and validate a profile configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.
    """
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return BridgeConfig.model_validate(expanded)


def save_config(config: BridgeConfig, path: Path) -> None:
    """Serialize a :class:`BridgeConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)


def load_or_default(path: Path) -> BridgeConfig:
    """Like :func:`load_config` but returns defaults when *path* is missing."""
    if not path.exists():
        return BridgeConfig()
    return load_config(path)
