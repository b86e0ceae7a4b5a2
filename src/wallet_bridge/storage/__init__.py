"""Wallet bridge storage layer -- async SQLite database and Pydantic models."""

from wallet_bridge.storage.database import Database, get_database
from wallet_bridge.storage.models import (
    ActionKind,
    ActionStatus,
    ConnectionRecord,
    PendingAction,
)

__all__ = [
    "Database",
    "get_database",
    "ActionKind",
    "ActionStatus",
    "ConnectionRecord",
    "PendingAction",
]
