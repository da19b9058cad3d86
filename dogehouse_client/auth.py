from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional

from dogehouse_client.opcodes import Opcode
from dogehouse_shared.config import DEFAULT_PLATFORM
from dogehouse_shared.log import get_logger

logger = get_logger(__name__)


class AuthHandshake:
    """
    One-time auth exchange for a single physical connection.

    begin() sends the credentials; complete() accepts the first auth-good
    payload and ignores any later one.
    """

    def __init__(self, access_token: str, refresh_token: str, *, platform: str = DEFAULT_PLATFORM) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.platform = platform
        self.sent = False
        self.completed = False

    def request_payload(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "reconnectToVoice": False,
            "currentRoomId": None,
            "muted": False,
            "platform": self.platform,
        }

    async def begin(self, send: Callable[[str, Any], Awaitable[None]]) -> None:
        if self.sent:
            logger.warning("Auth already sent on this connection; not sending again")
            return
        self.sent = True
        await send(Opcode.AUTH.value, self.request_payload())
        logger.info("Sent auth request")

    def complete(self, payload: Any) -> Optional[Any]:
        """Return the user snapshot for the first auth-good, None afterwards."""
        if self.completed:
            logger.debug("Ignoring repeated auth-good")
            return None
        self.completed = True
        user = payload.get("user") if isinstance(payload, dict) else None
        if user is None:
            logger.warning("auth-good carried no user snapshot")
        return user
