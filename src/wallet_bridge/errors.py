"""Error taxonomy shared by the client, relay, and dispatcher."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error that can cross the message boundary.

    ``code`` is the machine-readable tag carried in a failed reply so the
    page-side client can rebuild the same exception type.
    """

    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class RequestTimeout(BridgeError):
    code = "timeout"


class Unauthorized(BridgeError):
    code = "unauthorized"


class InvalidParams(BridgeError):
    code = "invalid_params"


class NotFound(BridgeError):
    code = "not_found"


class UserRejected(BridgeError):
    code = "user_rejected"


class Expired(BridgeError):
    code = "expired"


class InternalError(BridgeError):
    code = "internal_error"


class InvalidEnvelope(BridgeError):
    """Raised by the relay for messages that do not match any envelope shape."""

    code = "invalid_envelope"


_BY_CODE: dict[str, type[BridgeError]] = {
    cls.code: cls
    for cls in (
        RequestTimeout,
        Unauthorized,
        InvalidParams,
        NotFound,
        UserRejected,
        Expired,
        InternalError,
        InvalidEnvelope,
    )
}


def error_from_reply(code: str | None, message: str | None) -> BridgeError:
    """Rebuild a typed error from the ``code``/``error`` pair of a reply.

    Unknown or missing codes fall back to :class:`InternalError`.
    """
    cls = _BY_CODE.get(code or "", InternalError)
    return cls(message or "Request failed")
