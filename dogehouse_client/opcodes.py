from __future__ import annotations

from enum import Enum
from typing import Set


class Opcode(str, Enum):
    """Opcodes the connection core itself understands. Everything else is opaque."""

    AUTH = "auth"                    # Handshake request
    AUTH_GOOD = "auth-good"          # Handshake success, payload carries the user
    FETCH_DONE = "fetch_done"        # Generic fetch completion, correlated by fetchId
    NEW_TOKENS = "new-tokens"        # Server-rotated tokens

    # Pseudo-opcodes reported to the diagnostic hook for keep-alive traffic
    PING = "ping"
    PONG = "pong"


class ConnectionState(str, Enum):
    """Lifecycle of one Connection."""
    PENDING = "pending"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    DISPLACED = "displaced"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATES


# Close code the server uses when another client took over this session
DISPLACED_CLOSE_CODE = 4003
NORMAL_CLOSE_CODE = 1000
# Reported when the transport went away without a close frame
ABNORMAL_CLOSE_CODE = 1006

TERMINAL_STATES: Set[ConnectionState] = {
    ConnectionState.DISPLACED,
    ConnectionState.CLOSED,
}

# States in which the transport is open and the heartbeat runs
OPEN_STATES: Set[ConnectionState] = {
    ConnectionState.AUTHENTICATING,
    ConnectionState.READY,
}
