from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from websockets.exceptions import ConnectionClosed

from dogehouse_shared.log import get_logger

logger = get_logger(__name__)


class HeartbeatMonitor:
    """
    Sends a keep-alive on a fixed period while the link is open.

    The monitor only emits; it does not track pongs or declare the link dead.
    Liveness beyond that is left to the transport's close event.
    """

    def __init__(self, send: Callable[[], Awaitable[None]], interval: float = 8.0) -> None:
        self._send = send
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.beats = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the heartbeat loop; no-op when already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    def stop(self) -> None:
        """
        Cancel the loop. Takes effect before control returns to the event
        loop, so no ping can be sent after this call.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._send()
            except ConnectionClosed:
                logger.debug(f"Heartbeat stopped after {self.beats} beat(s): transport closed")
                return
            self.beats += 1
