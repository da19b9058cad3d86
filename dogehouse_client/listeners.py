from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from dogehouse_shared.log import get_logger

logger = get_logger(__name__)

# handler(payload, fetch_id) -> truthy to unregister after this call
ListenerHandler = Callable[[Any, Optional[str]], Any]


@dataclass(eq=False)
class Listener:
    """One (opcode, handler) binding. Compared by identity."""
    opcode: str
    handler: ListenerHandler


class ListenerRegistry:
    """
    Ordered listener bindings keyed by opcode.

    Dispatch fires a snapshot of the bindings for the frame's opcode in
    registration order; bindings whose handler returned a truthy value are
    dropped only after the whole snapshot has fired.
    """

    def __init__(self) -> None:
        self._by_opcode: Dict[str, List[Listener]] = {}

    def add(self, opcode: str, handler: ListenerHandler) -> Listener:
        listener = Listener(opcode, handler)
        self._by_opcode.setdefault(opcode, []).append(listener)
        return listener

    def discard(self, listener: Listener) -> bool:
        """Remove exactly this binding. Returns False if it was already gone."""
        bucket = self._by_opcode.get(listener.opcode)
        if not bucket:
            return False
        for index, candidate in enumerate(bucket):
            if candidate is listener:
                del bucket[index]
                if not bucket:
                    del self._by_opcode[listener.opcode]
                return True
        return False

    def count(self, opcode: Optional[str] = None) -> int:
        if opcode is not None:
            return len(self._by_opcode.get(opcode, ()))
        return sum(len(bucket) for bucket in self._by_opcode.values())

    def dispatch(self, opcode: str, payload: Any, fetch_id: Optional[str] = None) -> int:
        """
        Deliver one inbound frame. Returns the number of handlers invoked.

        A handler that raises is logged and stays registered.
        """
        snapshot = list(self._by_opcode.get(opcode, ()))
        finished: List[Listener] = []

        for listener in snapshot:
            try:
                remove = listener.handler(payload, fetch_id)
            except Exception:
                logger.exception("Listener for %s raised", opcode)
                continue
            if remove:
                finished.append(listener)

        for listener in finished:
            self.discard(listener)
        return len(snapshot)
