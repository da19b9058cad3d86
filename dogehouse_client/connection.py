from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dogehouse_client.auth import AuthHandshake
from dogehouse_client.errors import (
    ConnectionClosedError,
    HandshakeRejectedError,
    NotConnectedError,
    SessionDisplacedError,
)
from dogehouse_client.fetch import FetchCorrelator
from dogehouse_client.heartbeat import HeartbeatMonitor
from dogehouse_client.listeners import ListenerHandler, ListenerRegistry
from dogehouse_client.opcodes import (
    ABNORMAL_CLOSE_CODE,
    DISPLACED_CLOSE_CODE,
    NORMAL_CLOSE_CODE,
    ConnectionState,
    Opcode,
)
from dogehouse_shared.config import ClientSettings
from dogehouse_shared.frame import PING, Frame, Heartbeat, MalformedFrameError, decode, encode
from dogehouse_shared.log import get_logger, log_frame

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionEnd:
    """How a session ended."""
    state: ConnectionState
    code: Optional[int]
    reason: str = ""

    @property
    def displaced(self) -> bool:
        return self.state is ConnectionState.DISPLACED


# on_frame(direction, opcode, payload, fetch_id, raw); opcode is None for undecodable input
FrameHook = Callable[[str, Optional[str], Any, Optional[str], Optional[str]], None]
DisplacedHook = Callable[[SessionEnd], None]
Connector = Callable[[ClientSettings], Awaitable[Any]]


async def open_websocket(settings: ClientSettings) -> websockets.ClientConnection:
    """Default transport: one physical websocket, keep-alive handled by the client."""
    return await websockets.connect(
        settings.url,
        ping_interval=None,
        open_timeout=settings.connect_timeout,
        close_timeout=10,
    )


def _report_displaced(end: SessionEnd) -> None:
    logger.error("Another client has taken the connection (code=%s)", end.code)


class Connection:
    """
    One authenticated DogeHouse session.

    PENDING -> AUTHENTICATING on transport open (heartbeat starts, auth sent)
    AUTHENTICATING -> READY on the first auth-good
    AUTHENTICATING -> CLOSED when the transport closes first
    READY -> DISPLACED on close code 4003, READY -> CLOSED on any other close

    DISPLACED and CLOSED are terminal. A new physical connection needs a new
    Connection and a new handshake.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str,
        *,
        settings: Optional[ClientSettings] = None,
        on_displaced: Optional[DisplacedHook] = None,
        on_frame: Optional[FrameHook] = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.listeners = ListenerRegistry()
        self._handshake = AuthHandshake(access_token, refresh_token, platform=self.settings.platform)
        self._fetches = FetchCorrelator(self.listeners, self.send)
        self._heartbeat = HeartbeatMonitor(self._send_ping, self.settings.heartbeat_interval)
        self._on_displaced = on_displaced or _report_displaced
        self._on_frame = on_frame

        self._state = ConnectionState.PENDING
        self._user: Any = None
        self._websocket: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = False
        self._end: Optional[SessionEnd] = None
        self._closed_event = asyncio.Event()

    # ---- read-only views ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def user(self) -> Any:
        """Authenticated user snapshot; None until READY."""
        return self._user

    @property
    def closed(self) -> bool:
        return self._state.is_terminal

    @property
    def end(self) -> Optional[SessionEnd]:
        return self._end

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        return self._heartbeat

    @property
    def pending_fetches(self) -> int:
        return self._fetches.pending

    # ---- lifecycle ----

    async def establish(self, connector: Optional[Connector] = None) -> "Connection":
        """Open the transport, authenticate, and return once READY."""
        if self._state is not ConnectionState.PENDING:
            raise RuntimeError(f"establish() called in state {self._state.value}")

        connector = connector or open_websocket
        logger.info(f"Connecting to {self.settings.url}...")
        try:
            websocket = await connector(self.settings)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.error(f"Transport failed to open: {exc}")
            self._on_close(None, str(exc))
            raise HandshakeRejectedError(None, str(exc)) from exc

        if self._end is not None:
            # close() ran while the transport was still opening
            await websocket.close(code=NORMAL_CLOSE_CODE)
            raise HandshakeRejectedError(self._end.code, self._end.reason)

        ready = self._ready = asyncio.get_running_loop().create_future()
        await self._on_open(websocket)
        try:
            return await ready
        except asyncio.CancelledError:
            ready.cancel()
            await self.close(reason="establishment cancelled")
            raise

    async def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = "") -> SessionEnd:
        """Close the session from this side. Always ends in CLOSED."""
        if self._end is not None:
            return self._end
        self._closing = True
        self._heartbeat.stop()
        if self._websocket is not None:
            try:
                await self._websocket.close(code=code, reason=reason)
            except ConnectionClosed:
                pass
        if self._reader is not None and self._reader is not asyncio.current_task():
            await asyncio.gather(self._reader, return_exceptions=True)
        # Reader may never have started, or been cancelled before it could finish
        self._on_close(code, reason)
        return await self.wait_closed()

    async def wait_closed(self) -> SessionEnd:
        await self._closed_event.wait()
        assert self._end is not None
        return self._end

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ---- public operations ----

    def add_listener(self, opcode: str, handler: ListenerHandler) -> None:
        self.listeners.add(opcode, handler)

    async def send(self, opcode: str, payload: Any, fetch_id: Optional[str] = None) -> None:
        if not self._state.is_open or self._websocket is None:
            raise NotConnectedError(f"cannot send {opcode!r} in state {self._state.value}")
        raw = encode(opcode, payload, fetch_id)
        try:
            await self._websocket.send(raw)
        except ConnectionClosed as exc:
            # The reader has not seen the close yet
            code = exc.rcvd.code if exc.rcvd is not None else None
            reason = exc.rcvd.reason if exc.rcvd is not None else ""
            raise ConnectionClosedError(code, reason) from exc
        # Credentials stay out of the log file
        shown = "<credentials>" if opcode == Opcode.AUTH.value else raw
        log_frame(logger, "debug", f"Sent: {shown}", direction="out", opcode=opcode, fetch_id=fetch_id)
        self._report("out", opcode, payload, fetch_id, raw)

    async def fetch(
        self,
        opcode: str,
        payload: Any,
        done_opcode: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and wait for its response payload.

        Without an explicit timeout the configured fetch_timeout applies; the
        default of None waits until a response arrives or the session ends.
        """
        if timeout is None:
            timeout = self.settings.fetch_timeout
        return await self._fetches.fetch(opcode, payload, done_opcode, timeout=timeout)

    # ---- transport events ----

    async def _on_open(self, websocket: Any) -> None:
        self._websocket = websocket
        self._set_state(ConnectionState.AUTHENTICATING)
        self._heartbeat.start()
        self._reader = asyncio.create_task(self._read_loop())
        try:
            await self._handshake.begin(self.send)
        except (ConnectionClosedError, NotConnectedError) as exc:
            # The reader observes the close and rejects the establishment
            logger.warning(f"Could not send auth: {exc}")

    async def _read_loop(self) -> None:
        websocket = self._websocket
        try:
            async for raw in websocket:
                try:
                    self._handle_raw(raw)
                except Exception as exc:
                    # One bad frame must not end the session
                    logger.exception(f"Error handling inbound frame: {exc}")
        except ConnectionClosed:
            pass
        except Exception as exc:
            logger.exception(f"Receive loop error: {exc}")
        finally:
            code = getattr(websocket, "close_code", None)
            reason = getattr(websocket, "close_reason", None) or ""
            self._on_close(code if code is not None else ABNORMAL_CLOSE_CODE, reason)

    def _handle_raw(self, raw: Union[str, bytes]) -> None:
        text = raw.decode("utf-8", "replace") if isinstance(raw, (bytes, bytearray)) else raw
        try:
            decoded = decode(raw)
        except MalformedFrameError as exc:
            logger.warning(f"Dropping malformed frame: {exc}")
            self._report("in", None, None, None, text)
            return

        if decoded is Heartbeat.PONG:
            logger.debug("Received pong")
            self._report("in", Opcode.PONG.value, None, None, text)
            return

        frame: Frame = decoded
        log_frame(logger, "debug", f"Received: {text}", direction="in",
                  opcode=frame.opcode, fetch_id=frame.fetch_id)
        self._report("in", frame.opcode, frame.payload, frame.fetch_id, text)

        if frame.opcode == Opcode.AUTH_GOOD.value:
            self._accept_auth(frame.payload)
            return
        self.listeners.dispatch(frame.opcode, frame.payload, frame.fetch_id)

    def _accept_auth(self, payload: Any) -> None:
        if self._handshake.completed or self._state is not ConnectionState.AUTHENTICATING:
            logger.debug("Ignoring auth-good in state %s", self._state.value)
            return
        self._user = self._handshake.complete(payload)
        self._set_state(ConnectionState.READY)
        logger.info("✅ Authenticated")
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(self)

    def _on_close(self, code: Optional[int], reason: str) -> None:
        if self._state.is_terminal:
            return
        # Heartbeat goes first so nothing is written after the close
        self._heartbeat.stop()

        previous = self._state
        error: ConnectionClosedError
        if previous is not ConnectionState.READY:
            state = ConnectionState.CLOSED
            error = HandshakeRejectedError(code, reason)
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(error)
        elif code == DISPLACED_CLOSE_CODE and not self._closing:
            state = ConnectionState.DISPLACED
            error = SessionDisplacedError(code, reason)
        else:
            state = ConnectionState.CLOSED
            error = ConnectionClosedError(code, reason)

        self._set_state(state)
        self._end = SessionEnd(state, code, reason)
        self._fetches.fail_all(error)

        if state is ConnectionState.DISPLACED:
            try:
                self._on_displaced(self._end)
            except Exception:
                logger.exception("Displacement hook raised")
        else:
            logger.info(f"Connection closed (code={code}, reason={reason!r})")
        self._closed_event.set()

    # ---- helpers ----

    async def _send_ping(self) -> None:
        await self._websocket.send(PING)
        logger.debug("Sent ping")
        self._report("out", Opcode.PING.value, None, None, PING)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("State %s -> %s", self._state.value, state.value, extra={"state": state.value})
        self._state = state

    def _report(self, direction: str, opcode: Optional[str], payload: Any,
                fetch_id: Optional[str], raw: Optional[str]) -> None:
        if self._on_frame is None:
            return
        try:
            self._on_frame(direction, opcode, payload, fetch_id, raw)
        except Exception:
            logger.exception("Frame hook raised")


async def connect(
    access_token: str,
    refresh_token: str,
    *,
    on_displaced: Optional[DisplacedHook] = None,
    on_frame: Optional[FrameHook] = None,
    settings: Optional[ClientSettings] = None,
    connector: Optional[Connector] = None,
) -> Connection:
    """Open and authenticate a session; resolves once the server sent auth-good."""
    connection = Connection(
        access_token,
        refresh_token,
        settings=settings,
        on_displaced=on_displaced,
        on_frame=on_frame,
    )
    return await connection.establish(connector)
