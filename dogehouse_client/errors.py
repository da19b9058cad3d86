from __future__ import annotations

from typing import Optional

from dogehouse_shared.frame import MalformedFrameError

__all__ = [
    "DogehouseError",
    "HandshakeRejectedError",
    "SessionDisplacedError",
    "ConnectionClosedError",
    "NotConnectedError",
    "FetchTimeoutError",
    "MalformedFrameError",
]


class DogehouseError(Exception):
    """Base class for errors raised by the connection core."""
    pass


class ConnectionClosedError(DogehouseError):
    """The transport closed; pending fetches are failed with this."""

    def __init__(self, code: Optional[int], reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"connection closed (code={code}, reason={reason!r})")


class HandshakeRejectedError(ConnectionClosedError):
    """The transport closed (or never opened) before auth-good arrived."""

    def __init__(self, code: Optional[int], reason: str = "") -> None:
        super().__init__(code, reason)
        self.args = (f"handshake rejected (code={code}, reason={reason!r})",)


class SessionDisplacedError(ConnectionClosedError):
    """Another client took over this session."""

    def __init__(self, code: Optional[int], reason: str = "") -> None:
        super().__init__(code, reason)
        self.args = (f"session displaced by another client (code={code})",)


class NotConnectedError(DogehouseError):
    """send() was called while the transport was not open."""
    pass


class FetchTimeoutError(DogehouseError):
    """No matching response arrived within the fetch timeout."""

    def __init__(self, opcode: str, timeout: float) -> None:
        self.opcode = opcode
        self.timeout = timeout
        super().__init__(f"fetch {opcode!r} got no response within {timeout}s")
