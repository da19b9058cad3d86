from __future__ import annotations
import json
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from dogehouse_shared.log import get_logger

logger = get_logger(__name__)


def default_token_path() -> Path:
    return Path(os.getenv("DOGEHOUSE_TOKENS", Path.home() / ".dogehouse" / "tokens.json")).expanduser()


class TokenStore:
    """Access/refresh token pair persisted as JSON (the tokens are issued by the server)."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else default_token_path()
        self._data: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable token file {self.path}: {e}")
            return
        if isinstance(data, dict):
            self._data = {k: v for k, v in data.items() if isinstance(v, str)}

    def save(self, access_token: str, refresh_token: str) -> None:
        self._data = {"accessToken": access_token, "refreshToken": refresh_token}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # tokens are credentials; fchmod also tightens a file that already existed
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(self._data, indent=2))

    def load(self) -> Optional[Tuple[str, str]]:
        access = self._data.get("accessToken")
        refresh = self._data.get("refreshToken")
        if not access or not refresh:
            return None
        return access, refresh

    def clear(self) -> None:
        self._data = {}
        if self.path.exists():
            self.path.unlink()
