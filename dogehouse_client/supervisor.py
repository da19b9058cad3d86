from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from dogehouse_client.connection import Connection, Connector, FrameHook, SessionEnd
from dogehouse_client.errors import HandshakeRejectedError
from dogehouse_client.listeners import ListenerHandler
from dogehouse_client.opcodes import ConnectionState, Opcode
from dogehouse_shared.config import ClientSettings
from dogehouse_shared.log import get_logger

logger = get_logger(__name__)

ConnectedHook = Callable[[Connection], Optional[Awaitable[None]]]
TokensHook = Callable[[str, str], None]


def backoff_delay(attempt: int, base: float, cap: float, rng: Callable[[], float] = random.random) -> float:
    """Full-jitter exponential backoff: uniform in [0, min(cap, base * 2**attempt)]."""
    ceiling = min(cap, base * (2 ** attempt))
    return ceiling * rng()


class SessionSupervisor:
    """
    Keeps a session alive across transport drops.

    Every physical connection is a fresh Connection with its own handshake;
    nothing from the previous session's authentication is reused. Listener
    bindings added through the supervisor are installed on every new
    connection. Displacement ends supervision: another client owns the session.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str,
        *,
        settings: Optional[ClientSettings] = None,
        connector: Optional[Connector] = None,
        on_connected: Optional[ConnectedHook] = None,
        on_frame: Optional[FrameHook] = None,
        on_tokens: Optional[TokensHook] = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.settings = settings or ClientSettings()
        self._connector = connector
        self._on_connected = on_connected
        self._on_frame = on_frame
        self._on_tokens = on_tokens
        self._rng = rng
        self._bindings: List[Tuple[str, ListenerHandler]] = []
        self._connection: Optional[Connection] = None
        self._stopping = False
        self._stop_event = asyncio.Event()
        self.sessions = 0
        self.attempts = 0

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    def add_listener(self, opcode: str, handler: ListenerHandler) -> None:
        """Bind on the current connection and on every future one."""
        self._bindings.append((opcode, handler))
        if self._connection is not None and self._connection.state is ConnectionState.READY:
            self._connection.add_listener(opcode, handler)

    def update_tokens(self, access_token: str, refresh_token: str) -> None:
        """Use these tokens for the next handshake."""
        self.access_token = access_token
        self.refresh_token = refresh_token

    async def stop(self) -> None:
        self._stopping = True
        self._stop_event.set()
        if self._connection is not None:
            await self._connection.close()

    async def run(self) -> SessionEnd:
        """
        Connect, wait for the session to end, reconnect with backoff.

        Returns the final SessionEnd when displaced, stopped, or out of
        attempts. The attempt counter resets after every successful handshake.
        """
        max_attempts = self.settings.reconnect_max_attempts
        last_end = SessionEnd(ConnectionState.CLOSED, None, "not connected")

        while not self._stopping:
            connection = Connection(
                self.access_token,
                self.refresh_token,
                settings=self.settings,
                on_displaced=self._report_displaced,
                on_frame=self._on_frame,
            )
            self._connection = connection
            try:
                await connection.establish(self._connector)
            except HandshakeRejectedError as exc:
                last_end = connection.end or last_end
                if self._stopping:
                    break
                self.attempts += 1
                logger.warning(f"Connect attempt {self.attempts} failed: {exc}")
                if max_attempts is not None and self.attempts >= max_attempts:
                    logger.error(f"Giving up after {self.attempts} attempts")
                    return last_end
                await self._sleep_backoff()
                continue

            self.attempts = 0
            self.sessions += 1
            connection.add_listener(Opcode.NEW_TOKENS.value, self._handle_new_tokens)
            for opcode, handler in self._bindings:
                connection.add_listener(opcode, handler)
            await self._notify_connected(connection)

            last_end = await connection.wait_closed()
            if last_end.displaced:
                logger.warning("Session displaced; not reconnecting")
                return last_end
            if self._stopping:
                break
            logger.info("Session ended (code=%s); reconnecting", last_end.code)
            await self._sleep_backoff()

        return last_end

    def _handle_new_tokens(self, payload: Any, _fetch_id: Optional[str]) -> None:
        if not isinstance(payload, dict):
            logger.warning("new-tokens frame without a payload object")
            return
        access = payload.get("accessToken")
        refresh = payload.get("refreshToken")
        if not isinstance(access, str) or not isinstance(refresh, str):
            logger.warning("new-tokens frame missing accessToken/refreshToken")
            return
        self.update_tokens(access, refresh)
        logger.info("Tokens rotated by server")
        if self._on_tokens is not None:
            self._on_tokens(access, refresh)

    async def _sleep_backoff(self) -> None:
        delay = backoff_delay(
            self.attempts,
            self.settings.reconnect_base_delay,
            self.settings.reconnect_max_delay,
            self._rng,
        )
        logger.info(f"Reconnecting in {delay:.2f}s (attempt {self.attempts + 1})")
        # stop() cuts the wait short
        try:
            await asyncio.wait_for(self._stop_event.wait(), delay)
        except asyncio.TimeoutError:
            return

    async def _notify_connected(self, connection: Connection) -> None:
        if self._on_connected is None:
            return
        try:
            result = self._on_connected(connection)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("on_connected hook raised")

    @staticmethod
    def _report_displaced(end: SessionEnd) -> None:
        logger.error("Another client has taken the connection (code=%s)", end.code)
