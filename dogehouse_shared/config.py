"""
Client settings.

Resolution order (later wins):
- ClientSettings defaults
- YAML file (explicit path, $DOGEHOUSE_CONFIG, or ~/.dogehouse/config.yaml)
- environment overrides ($DOGEHOUSE_API_URL, $DOGEHOUSE_HEARTBEAT_INTERVAL, ...)

Example config.yaml:

    url: wss://api.dogehouse.tv/socket
    heartbeat_interval: 8
    connect_timeout: 15
    reconnect:
      base_delay: 1
      max_delay: 60
      max_attempts: 10
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from dogehouse_shared.log import get_logger

logger = get_logger(__name__)

DEFAULT_API_URL = "wss://api.dogehouse.tv/socket"
DEFAULT_PLATFORM = "dogehouse-py"


@dataclass(frozen=True)
class ClientSettings:
    url: str = DEFAULT_API_URL
    heartbeat_interval: float = 8.0
    connect_timeout: float = 15.0
    platform: str = DEFAULT_PLATFORM
    fetch_timeout: Optional[float] = None
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_max_attempts: Optional[int] = None


# env var -> (field, converter)
_ENV_OVERRIDES = {
    "DOGEHOUSE_API_URL": ("url", str),
    "DOGEHOUSE_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
    "DOGEHOUSE_CONNECT_TIMEOUT": ("connect_timeout", float),
    "DOGEHOUSE_PLATFORM": ("platform", str),
    "DOGEHOUSE_FETCH_TIMEOUT": ("fetch_timeout", float),
}


def default_config_path() -> Path:
    env_path = os.getenv("DOGEHOUSE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".dogehouse" / "config.yaml"


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fold the nested ``reconnect:`` section into reconnect_* keys."""
    flat = {k: v for k, v in data.items() if k != "reconnect"}
    reconnect = data.get("reconnect")
    if isinstance(reconnect, dict):
        for key, value in reconnect.items():
            flat[f"reconnect_{key}"] = value
    return flat


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("No config file at %s; using defaults", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error reading {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping; ignoring it", path)
        return {}
    return _flatten(data)


def load_settings(path: Optional[Union[str, Path]] = None, **overrides: Any) -> ClientSettings:
    """Build ClientSettings from defaults, the YAML file, the environment and ``overrides``."""
    config_path = Path(path).expanduser() if path else default_config_path()
    known = {f.name for f in fields(ClientSettings)}

    values: Dict[str, Any] = {}
    for key, value in _read_yaml(config_path).items():
        if key not in known:
            logger.warning("Ignoring unknown config key %r in %s", key, config_path)
            continue
        values[key] = value

    for env_name, (field_name, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", env_name, raw)

    values.update({k: v for k, v in overrides.items() if v is not None})
    return replace(ClientSettings(), **values)
