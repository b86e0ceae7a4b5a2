"""Pydantic models mapping to the wallet bridge database tables."""

from __future__ import annotations

import json
import time
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self is not ActionStatus.PENDING


class ActionKind(str, Enum):
    SIGNATURE = "signature"
    CONNECTION = "connection"
    TRANSACTION = "transaction"
    CHAIN = "chain"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate a short hex ID (12 characters)."""
    return uuid.uuid4().hex[:12]


def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class PendingAction(BaseModel):
    """Maps to the ``pending_actions`` table.

    ``request_id`` and ``origin`` link the action back to the page request
    that created it, so the deferred reply can be routed without guessing.
    """

    id: str = Field(default_factory=_new_id)
    kind: ActionKind
    method: str
    request_id: Optional[str] = None
    origin: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus = ActionStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    resolved_at: Optional[float] = None

    @classmethod
    def new_id(cls) -> str:
        return _new_id()

    @classmethod
    def from_row(cls, row: dict) -> PendingAction:
        return cls(
            id=row["id"],
            kind=row["kind"],
            method=row["method"],
            request_id=row.get("request_id"),
            origin=row.get("origin") or "",
            payload=_loads(row.get("payload_json"), {}),
            status=row["status"],
            result=_loads(row.get("result_json")),
            error=row.get("error"),
            created_at=row["created_at"],
            resolved_at=row.get("resolved_at"),
        )

    @property
    def is_pending(self) -> bool:
        return self.status is ActionStatus.PENDING


class ConnectionRecord(BaseModel):
    """Maps to the ``connections`` table (one row per connected origin)."""

    origin: str
    name: str = ""
    icon: str = ""
    account: str
    chain_id: int
    permissions: list[str] = Field(default_factory=list)
    connected_at: float = Field(default_factory=time.time)
    last_used_at: float = Field(default_factory=time.time)

    @classmethod
    def from_row(cls, row: dict) -> ConnectionRecord:
        return cls(
            origin=row["origin"],
            name=row.get("name") or "",
            icon=row.get("icon") or "",
            account=row["account"],
            chain_id=row["chain_id"],
            permissions=_loads(row.get("permissions_json"), []),
            connected_at=row["connected_at"],
            last_used_at=row["last_used_at"],
        )
