import asyncio
import json
import os

# Keep test runs from writing logs/dogehouse.log into the working tree
os.environ.setdefault("DOGEHOUSE_LOG_DIR", "")

import pytest
from websockets.exceptions import ConnectionClosedOK

from dogehouse_shared.config import ClientSettings

_CLOSED = object()


class DummyWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent_messages: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._inbound: asyncio.Queue = asyncio.Queue()

    # server side helpers
    def feed(self, raw) -> None:
        self._inbound.put_nowait(raw)

    def feed_frame(self, op: str, d=None, fetch_id: str | None = None) -> None:
        frame = {"op": op, "d": d}
        if fetch_id is not None:
            frame["fetchId"] = fetch_id
        self.feed(json.dumps(frame))

    def server_close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbound.put_nowait(_CLOSED)

    def sent_frames(self) -> list[dict]:
        return [json.loads(m) for m in self.sent_messages if m != "ping"]

    # client side API used by Connection
    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent_messages.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.server_close(code, reason)

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        while True:
            item = await self._inbound.get()
            if item is _CLOSED:
                return
            yield item


@pytest.fixture
def websocket():
    return DummyWebSocket()


@pytest.fixture
def websocket_factory():
    return DummyWebSocket


@pytest.fixture
def connector(websocket):
    async def _connect(settings):
        return websocket
    return _connect


@pytest.fixture
def settings():
    return ClientSettings(url="ws://test.invalid/socket", heartbeat_interval=0.05)

