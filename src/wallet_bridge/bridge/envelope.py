"""Wire envelopes exchanged between page, relay, and dispatcher."""

from __future__ import annotations

import secrets
import time
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from wallet_bridge.errors import BridgeError, InvalidEnvelope


class MessageType(str, Enum):
    REQUEST = "REQUEST"
    REPLY = "REPLY"
    EVENT = "EVENT"


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_request_id() -> str:
    """Millisecond timestamp plus a random suffix, both base36."""
    return _base36(int(time.time() * 1000)) + _base36(secrets.randbits(40)).rjust(8, "0")


class _Envelope(BaseModel):
    # Method-specific extras ride along untouched.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RequestEnvelope(_Envelope):
    """Page -> privileged: ``{type, requestId, method, params, origin}``."""

    type: Literal["REQUEST"] = "REQUEST"
    request_id: str = Field(alias="requestId", min_length=1)
    method: str = Field(min_length=1)
    params: list[Any] = Field(default_factory=list)
    origin: str = ""


class ReplyEnvelope(_Envelope):
    """Privileged -> page: ``{type, requestId, success, data | error}``."""

    type: Literal["REPLY"] = "REPLY"
    request_id: str = Field(alias="requestId", min_length=1)
    success: bool
    data: Any = None
    error: Optional[str] = None
    code: Optional[str] = None

    @model_validator(mode="after")
    def check_outcome(self) -> ReplyEnvelope:
        if self.success and self.error is not None:
            raise ValueError("successful reply must not carry an error")
        if not self.success:
            if not self.error:
                raise ValueError("failed reply must carry an error")
            if self.data is not None:
                raise ValueError("failed reply must not carry data")
        return self

    @classmethod
    def ok(cls, request_id: str, data: Any = None) -> ReplyEnvelope:
        return cls(request_id=request_id, success=True, data=data)

    @classmethod
    def fail(cls, request_id: str, error: BridgeError) -> ReplyEnvelope:
        return cls(request_id=request_id, success=False, error=error.message, code=error.code)


class EventEnvelope(_Envelope):
    """Privileged -> page push notification (``accountsChanged`` etc.).

    ``origin`` targets a single page; ``None`` broadcasts to every page.
    """

    type: Literal["EVENT"] = "EVENT"
    event: str = Field(min_length=1)
    data: Any = None
    origin: Optional[str] = None


_MODELS: dict[str, type[_Envelope]] = {
    MessageType.REQUEST.value: RequestEnvelope,
    MessageType.REPLY.value: ReplyEnvelope,
    MessageType.EVENT.value: EventEnvelope,
}


def parse_envelope(message: Any) -> _Envelope:
    """Validate *message* and return the matching envelope model.

    Raises :class:`InvalidEnvelope` for anything that is not a dict with a
    known ``type`` and the fields that type requires.
    """
    if not isinstance(message, dict):
        raise InvalidEnvelope(f"Envelope must be an object, got {type(message).__name__}")
    model = _MODELS.get(message.get("type"))
    if model is None:
        raise InvalidEnvelope(f"Unknown envelope type: {message.get('type')!r}")
    try:
        return model.model_validate(message)
    except ValidationError as exc:
        raise InvalidEnvelope(f"Malformed {message['type']} envelope: {exc.error_count()} error(s)") from exc


def validate_envelope(message: Any) -> MessageType:
    """Shape check only; returns the envelope type."""
    return MessageType(parse_envelope(message).type)
