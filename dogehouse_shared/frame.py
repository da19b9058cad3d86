from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
import json

# Keep-alive literals. The ping goes out as raw text, the reply comes back
# as a quoted JSON string rather than an object.
PING = "ping"
PONG_RAW = '"pong"'


class MalformedFrameError(Exception):
    """Raised when inbound wire text cannot be decoded into a frame."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class Heartbeat(Enum):
    """Sentinel returned by decode() for the keep-alive reply."""
    PONG = "pong"


@dataclass
class Frame:
    """
    One unit of protocol traffic:
    {
    "op": "STRING",
    "d": <any JSON value>,
    "fetchId": "STRING (optional, only when the sender supplied one)"
    }
    """
    opcode: str
    payload: Any
    fetch_id: Optional[str] = None

    @classmethod
    def from_json(cls, raw: str) -> 'Frame':
        """Parse wire text into a Frame, validating structure"""
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as e:
            # ValueError covers JSONDecodeError and oversized integer literals
            raise MalformedFrameError(f"Invalid JSON: {e}", raw) from e

        if not isinstance(data, dict):
            raise MalformedFrameError(f"Frame must be a JSON object, got {type(data).__name__}", raw)
        return cls.from_dict(data, raw)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], raw: Optional[str] = None) -> 'Frame':
        """Create Frame from a decoded object; 'op' is required, 'd' defaults to None"""
        opcode = data.get('op')
        if not isinstance(opcode, str) or not opcode:
            raise MalformedFrameError("'op' must be a non-empty string", raw)

        fetch_id = data.get('fetchId')
        if fetch_id is not None and not isinstance(fetch_id, str):
            raise MalformedFrameError("'fetchId' must be a string", raw)

        return cls(opcode=opcode, payload=data.get('d'), fetch_id=fetch_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert Frame back to its wire dictionary"""
        result: Dict[str, Any] = {'op': self.opcode, 'd': self.payload}
        if self.fetch_id:
            result['fetchId'] = self.fetch_id
        return result

    def to_json(self) -> str:
        """Convert Frame to compact JSON text"""
        return json.dumps(self.to_dict(), separators=(',', ':'))


def encode(opcode: str, payload: Any, fetch_id: Optional[str] = None) -> str:
    """Encode an outgoing frame into wire text"""
    return Frame(opcode, payload, fetch_id).to_json()


def decode(raw: Union[str, bytes]) -> Union[Frame, Heartbeat]:
    """
    Decode inbound wire text.

    Returns Heartbeat.PONG for the keep-alive reply, a Frame otherwise.
    Raises MalformedFrameError when the text is not a valid frame.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f"Frame is not valid UTF-8: {e}") from e

    if raw == PONG_RAW:
        return Heartbeat.PONG
    return Frame.from_json(raw)
