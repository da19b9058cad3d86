from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from dogehouse_client.errors import FetchTimeoutError
from dogehouse_client.listeners import ListenerRegistry
from dogehouse_client.opcodes import Opcode
from dogehouse_shared.log import get_logger, log_frame
from dogehouse_shared.utils import new_fetch_id

logger = get_logger(__name__)

SendFn = Callable[[str, Any, Optional[str]], Awaitable[None]]


class FetchCorrelator:
    """
    Request/response on top of the listener registry.

    With a done opcode the first frame carrying that opcode answers the
    fetch, whatever its fetch id; two concurrent fetches sharing a done
    opcode can therefore answer each other. Without one, a fresh fetch id is
    sent along and only the fetch_done frame echoing it is accepted.
    """

    def __init__(self, registry: ListenerRegistry, send: SendFn) -> None:
        self._registry = registry
        self._send = send
        self._pending: Set[asyncio.Future] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def fetch(
        self,
        opcode: str,
        payload: Any,
        done_opcode: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        fetch_id = None if done_opcode else new_fetch_id()

        def on_response(data: Any, arrived_id: Optional[str]) -> bool:
            if fetch_id is not None and arrived_id != fetch_id:
                return False
            if not future.done():
                future.set_result(data)
            return True

        # Registered before the request goes out so an immediate reply is seen
        listener = self._registry.add(done_opcode or Opcode.FETCH_DONE.value, on_response)
        self._pending.add(future)
        try:
            await self._send(opcode, payload, fetch_id)
            log_frame(logger, "debug", "Fetch pending", direction="out",
                      opcode=opcode, fetch_id=fetch_id)
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                raise FetchTimeoutError(opcode, timeout) from None
        finally:
            self._registry.discard(listener)
            self._pending.discard(future)

    def fail_all(self, exc: BaseException) -> int:
        """Reject every pending fetch with ``exc``. Returns how many were failed."""
        failed = 0
        for future in list(self._pending):
            if not future.done():
                future.set_exception(exc)
                failed += 1
        if failed:
            logger.info("Failed %d pending fetch(es): %s", failed, exc)
        return failed
